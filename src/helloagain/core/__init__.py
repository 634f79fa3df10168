# src/helloagain/core/__init__.py
"""Core infrastructure: configuration, logging, durable store, archive access."""
