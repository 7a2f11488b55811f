"""
Namespaced TTL cache and per-table etag metadata.

Cache keys live under ``{prefix}:{version}:`` where the version is held in the
property store; rotating it makes every existing entry unreachable without
enumerating anything. Etags are regenerated on writes and whenever the table
shape (row/column counts) differs from the recorded one, so validating a
cached page never needs to read cell contents.
"""

import base64
import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from sheetstore.config import StoreSettings
from sheetstore.core.models import EtagMetadata, Record
from sheetstore.observability.logger import get_logger
from sheetstore.observability.metrics import etag_bumps_total, increment_counter, record_cache_lookup

from .collaborators import KeyValueCache, PropertyStore
from .tabular import Table, cell_text

logger = get_logger(__name__)

CACHE_VERSION_PROPERTY_KEY = "SS_CACHE_VERSION"
DEFAULT_CACHE_VERSION = "v1"
ETAG_PROPERTY_PREFIX = "SS_ETAG:"
MAX_KEY_LENGTH = 250

RECORD_NAMESPACE = "RECORD"
LIST_NAMESPACE = "LIST"


def digest_key(raw: str) -> str:
    """Short, key-safe digest of arbitrary text."""
    digest = hashlib.md5(raw.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_token(prefix: str = "") -> str:
    """Fresh opaque token (etags and cache versions)."""
    return f"{prefix}{int(time.time() * 1000):x}{uuid.uuid4().hex[:8]}"


class CacheStore:
    """
    Cache and etag manager for destination tables.

    Both collaborators are optional: without a cache every lookup misses,
    without a property store etags fall back to a content fingerprint and the
    cache version is fixed.

    Args:
        cache: Key/value cache
        properties: Durable property store
        settings: Store settings (TTL and key prefix)
    """

    def __init__(
        self,
        cache: KeyValueCache | None = None,
        properties: PropertyStore | None = None,
        settings: StoreSettings | None = None,
    ):
        self.cache = cache
        self.properties = properties
        self.settings = settings or StoreSettings()

    # ---------------------------------------------------------------------
    # Versioned key space
    # ---------------------------------------------------------------------

    def cache_version(self) -> str:
        """Current cache version, created on first use."""
        if self.properties is None:
            return DEFAULT_CACHE_VERSION
        try:
            existing = self.properties.get(CACHE_VERSION_PROPERTY_KEY)
            if existing:
                return existing
            fresh = generate_token("v")
            self.properties.set(CACHE_VERSION_PROPERTY_KEY, fresh)
            return fresh
        except Exception as e:
            logger.debug("Cache version unavailable", extra={"error": str(e)})
            return DEFAULT_CACHE_VERSION

    def invalidate_all(self, reason: str = "manual") -> str | None:
        """
        Rotate the cache version so every existing entry becomes unreachable.

        Returns:
            The new version, or None when there is no property store
        """
        if self.properties is None:
            logger.info("Cache invalidation skipped, no property store", extra={"reason": reason})
            return None
        version = generate_token("v")
        self.properties.set(CACHE_VERSION_PROPERTY_KEY, version)
        logger.info("Cache invalidated", extra={"reason": reason, "cache_version": version})
        return version

    def make_cache_key(self, namespace: str, parts: list[str]) -> str:
        """
        Build a versioned cache key.

        Args:
            namespace: Key namespace (RECORD, LIST, ...)
            parts: Components identifying the entry

        Returns:
            Key of at most 250 characters
        """
        digest = digest_key("::".join(str(p or "") for p in parts))
        key = f"{self.settings.cache_prefix}:{self.cache_version()}:{namespace}:{digest}"
        return key[:MAX_KEY_LENGTH]

    def make_list_cache_key(
        self,
        form_key: str,
        etag: str,
        projection: list[str],
        page_size: int,
        page_token: str | None = None,
        hydrate: bool = False,
    ) -> str:
        projection_key = "|".join(p or "" for p in (projection or []))
        return self.make_cache_key(
            LIST_NAMESPACE,
            [form_key, etag, projection_key, str(page_size), page_token or "", "hydrated" if hydrate else "flat"],
        )

    # ---------------------------------------------------------------------
    # Best-effort get/put
    # ---------------------------------------------------------------------

    def get(self, key: str, namespace: str = "default") -> Any | None:
        """
        Read and decode a cached value. Any failure counts as a miss.
        """
        if self.cache is None or not key:
            return None
        try:
            raw = self.cache.get(key)
            value = json.loads(raw) if raw else None
        except Exception as e:
            logger.debug("Cache read failed", extra={"cache_key": key, "error": str(e)})
            record_cache_lookup(namespace, False)
            return None
        record_cache_lookup(namespace, value is not None)
        return value

    def put(self, key: str, value: Any, ttl_seconds: int | None = None) -> bool:
        """
        Encode and store a value. Failures are logged and ignored.

        Returns:
            True when the value was handed to the cache
        """
        if self.cache is None or not key:
            return False
        ttl = ttl_seconds if ttl_seconds is not None else self.settings.cache_ttl_seconds
        try:
            self.cache.put(key, json.dumps(value, default=str), ttl)
            return True
        except Exception as e:
            logger.debug("Cache write failed", extra={"cache_key": key, "error": str(e)})
            return False

    def cache_record(self, form_key: str, etag: str, record: Record) -> bool:
        if not record.id:
            return False
        key = self.make_cache_key(RECORD_NAMESPACE, [form_key, etag, record.id])
        return self.put(key, record.model_dump(mode="json"))

    def get_cached_record(self, form_key: str, etag: str, record_id: str) -> Record | None:
        if not record_id:
            return None
        key = self.make_cache_key(RECORD_NAMESPACE, [form_key, etag, record_id])
        raw = self.get(key, namespace=RECORD_NAMESPACE)
        if raw is None:
            return None
        try:
            return Record.model_validate(raw)
        except ValidationError:
            logger.debug("Discarding malformed cached record", extra={"record_id": record_id})
            return None

    # ---------------------------------------------------------------------
    # Etags
    # ---------------------------------------------------------------------

    def _etag_property_key(self, resource: str) -> str:
        return f"{ETAG_PROPERTY_PREFIX}{resource}"

    def read_etag_metadata(self, resource: str) -> EtagMetadata | None:
        if self.properties is None:
            return None
        raw = self.properties.get(self._etag_property_key(resource))
        if not raw:
            return None
        try:
            return EtagMetadata.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring malformed etag metadata", extra={"resource": resource})
            return None

    def _store_etag(self, resource: str, row_count: int, col_count: int, reason: str) -> str:
        meta = EtagMetadata(
            etag=generate_token("e"),
            last_row_count=row_count,
            last_col_count=col_count,
            reason=reason,
            updated_at=datetime.now(timezone.utc),
        )
        self.properties.set(self._etag_property_key(resource), meta.model_dump_json())
        increment_counter(etag_bumps_total, reason=reason.split(":", 1)[0])
        logger.debug(
            "Etag generated",
            extra={"resource": resource, "etag": meta.etag, "reason": reason,
                   "row_count": row_count, "col_count": col_count},
        )
        return meta.etag

    def get_or_init_etag(self, table: Table, volatile_columns: list[int] | None = None) -> str:
        """
        Current etag of a table.

        With stored metadata of the same shape the stored etag is returned
        without reading any cell. A different shape or missing metadata
        generates and persists a new etag.

        Args:
            table: Destination table
            volatile_columns: 1-based columns hashed by the fingerprint fallback

        Returns:
            The etag
        """
        if self.properties is None:
            return self.fingerprint(table, volatile_columns)
        row_count, col_count = table.row_count(), table.col_count()
        try:
            meta = self.read_etag_metadata(table.name)
            if meta is not None and meta.matches_shape(row_count, col_count):
                return meta.etag
            reason = "init" if meta is None else "shapeChanged"
            return self._store_etag(table.name, row_count, col_count, reason)
        except Exception as e:
            logger.warning(
                "Etag metadata unavailable, using content fingerprint",
                extra={"resource": table.name, "error": str(e)},
            )
            return self.fingerprint(table, volatile_columns)

    def bump(self, table: Table, reason: str = "write", volatile_columns: list[int] | None = None) -> str:
        """
        Generate and persist a new etag. Called after every mutation.

        Raises:
            Exception: Whatever the property store raises; callers treat it
                as a maintenance failure
        """
        if self.properties is None:
            return self.fingerprint(table, volatile_columns)
        return self._store_etag(table.name, table.row_count(), table.col_count(), f"bump:{reason}")

    def fingerprint(self, table: Table, volatile_columns: list[int] | None = None) -> str:
        """
        Content fingerprint: shape summary, the last row's volatile cells and
        a digest of each volatile column.
        """
        row_count, col_count = table.row_count(), table.col_count()
        columns = sorted({c for c in (volatile_columns or []) if c and c <= col_count})
        tokens: list[str] = [table.name, str(row_count), str(col_count)]
        if row_count >= 2 and columns:
            last_row = table.get_range(row_count, 1, 1, col_count)[0]
            tokens.append("|".join(cell_text(last_row[c - 1]) for c in columns))
            for col in columns:
                values = table.get_range(2, col, row_count - 1, 1)
                tokens.append(digest_key("|".join(cell_text(row[0]) for row in values)))
        return digest_key(":".join(tokens))
