"""Reconciliation engine and its concurrency primitives.

The engine (reconciler.engine) and the worker pools (reconciler.scheduler)
are imported from their modules directly; only the leaf primitives are
re-exported here so the key manager can use them without import cycles.
"""

from reconciler.lease import Lease, LeaseTable
from reconciler.retry import RetryPolicy
from reconciler.state import JsonStateStore, MemoryStateStore, StateStore

__all__ = [
    "JsonStateStore",
    "Lease",
    "LeaseTable",
    "MemoryStateStore",
    "RetryPolicy",
    "StateStore",
]
