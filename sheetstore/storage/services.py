"""
Wiring of the storage services over one set of collaborators.
"""

from sheetstore.config import StoreSettings
from sheetstore.core.rules import DedupEvaluator

from .cache import CacheStore
from .collaborators import (
    AdvisoryLock,
    InMemoryKeyValueCache,
    InMemoryPropertyStore,
    InProcessLock,
    KeyValueCache,
    PropertyStore,
)
from .connection import DatabaseConnectionPool
from .listing import ListingReader
from .postgres import PostgresAdvisoryLock, PostgresPropertyStore, PostgresWorkbook
from .reconcile import IndexReconciler
from .record_index import RecordIndex
from .submissions import SubmissionStore
from .tabular import InMemoryWorkbook, Workbook


class StoreServices:
    """
    Submission store, listing reader and reconciler sharing one workbook,
    cache, property store and lock.

    Args:
        workbook: Tabular store
        cache: Key/value cache (optional)
        properties: Property store (optional)
        lock: Advisory lock (optional)
        settings: Store settings
    """

    def __init__(
        self,
        workbook: Workbook,
        cache: KeyValueCache | None = None,
        properties: PropertyStore | None = None,
        lock: AdvisoryLock | None = None,
        settings: StoreSettings | None = None,
    ):
        self.settings = settings or StoreSettings()
        self.workbook = workbook
        self.properties = properties
        self.lock = lock
        evaluator = DedupEvaluator()
        self.cache_store = CacheStore(cache, properties, self.settings)
        self.record_index = RecordIndex(workbook, properties, self.settings)
        self.submissions = SubmissionStore(
            workbook, self.cache_store, self.record_index, lock, properties, evaluator, self.settings
        )
        self.listing = ListingReader(workbook, self.cache_store, self.record_index, evaluator, self.settings)
        self.reconciler = IndexReconciler(
            workbook, self.cache_store, self.record_index, lock, evaluator, self.settings
        )

    @classmethod
    def in_memory(cls, settings: StoreSettings | None = None, native_find: bool = True) -> "StoreServices":
        """Services over in-memory collaborators."""
        return cls(
            InMemoryWorkbook(native_find=native_find),
            InMemoryKeyValueCache(),
            InMemoryPropertyStore(),
            InProcessLock(),
            settings,
        )

    @classmethod
    def postgres(
        cls,
        pool: DatabaseConnectionPool,
        settings: StoreSettings | None = None,
        cache: KeyValueCache | None = None,
        lock_name: str = "sheetstore",
    ) -> "StoreServices":
        """
        Services over an open PostgreSQL pool. The cache stays in process
        unless one is given.
        """
        return cls(
            PostgresWorkbook(pool),
            cache if cache is not None else InMemoryKeyValueCache(),
            PostgresPropertyStore(pool),
            PostgresAdvisoryLock(pool, lock_name),
            settings,
        )
