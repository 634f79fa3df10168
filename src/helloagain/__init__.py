"""
Hello Again: batch enrichment for LinkedIn connection exports.

Compiles a connections export into an OpenAI Batch job, tracks the job
through its multi-hour lifecycle, and reconciles the results back onto the
original contacts.
"""

__version__ = "0.1.0"
