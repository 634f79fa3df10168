# src/helloagain/batch/__init__.py
"""Batch lifecycle: schema checks, request compilation, the remote client,
the job ledger, result reconciliation and the poll scheduler.

Import from module paths:
    from helloagain.batch.compiler import RequestCompiler
    from helloagain.batch.reconciler import merge
"""
