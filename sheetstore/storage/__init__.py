"""
Storage layer: tabular store contracts, cache/etag management, the record
index, and the write, read and reconciliation paths.
"""

from .cache import CacheStore
from .collaborators import (
    AdvisoryLock,
    InMemoryKeyValueCache,
    InMemoryPropertyStore,
    InProcessLock,
    KeyValueCache,
    PropertyStore,
)
from .listing import ListingReader
from .reconcile import IndexReconciler
from .record_index import IndexHandle, RecordIndex
from .services import StoreServices
from .submissions import SubmissionStore
from .tabular import InMemoryTable, InMemoryWorkbook, Table, Workbook

__all__ = [
    "CacheStore",
    "RecordIndex",
    "IndexHandle",
    "SubmissionStore",
    "ListingReader",
    "IndexReconciler",
    "StoreServices",
    "Table",
    "Workbook",
    "InMemoryTable",
    "InMemoryWorkbook",
    "KeyValueCache",
    "PropertyStore",
    "AdvisoryLock",
    "InMemoryKeyValueCache",
    "InMemoryPropertyStore",
    "InProcessLock",
]
