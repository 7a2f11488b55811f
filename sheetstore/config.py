"""
Runtime settings for sheetstore.

Settings come from environment variables (optionally seeded from a ``.env``
file) and are passed explicitly to the components that need them.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "SHEETSTORE_"


class DatabaseSettings(BaseModel):
    """Connection settings for the PostgreSQL backend."""

    host: str = "localhost"
    port: int = 5432
    database: str = "sheetstore"
    user: str = "sheetstore"
    password: str | None = None
    min_size: int = Field(2, ge=1)
    max_size: int = Field(10, ge=1)
    timeout: float = Field(30.0, gt=0)


class StoreSettings(BaseModel):
    """
    Tunables for the storage layer.

    Attributes:
        cache_ttl_seconds: TTL for cached pages and records
        cache_prefix: Namespace prefix for every cache key
        lock_timeout_seconds: Bounded wait for the advisory lock before proceeding lock-less
        max_page_size: Hard maximum for a listing page
        max_scan_rows: Upper bound of rows a listing will ever page through
        linear_scan_threshold: Tables with fewer data rows are searched by linear scan
        index_chunk_size: Rows per bulk write when rebuilding an index
        index_prefix: Name prefix of index tables
    """

    cache_ttl_seconds: int = Field(300, ge=1, le=21600)
    cache_prefix: str = "SS_CACHE"
    lock_timeout_seconds: float = Field(10.0, ge=0)
    max_page_size: int = Field(10, ge=1)
    max_scan_rows: int = Field(200, ge=1)
    linear_scan_threshold: int = Field(500, ge=0)
    index_chunk_size: int = Field(500, ge=1)
    index_prefix: str = "__SS_INDEX__"
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "StoreSettings":
        """
        Build settings from the environment.

        Args:
            env_file: Optional dotenv file loaded (without overriding) first

        Returns:
            StoreSettings instance
        """
        if env_file is not None and Path(env_file).exists():
            load_dotenv(env_file, override=False)

        values: dict = {}
        for field_name in (
            "cache_ttl_seconds",
            "cache_prefix",
            "lock_timeout_seconds",
            "max_page_size",
            "max_scan_rows",
            "linear_scan_threshold",
            "index_chunk_size",
            "index_prefix",
        ):
            raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None and raw != "":
                values[field_name] = raw

        db_values: dict = {}
        for field_name, env_name in (
            ("host", "DB_HOST"),
            ("port", "DB_PORT"),
            ("database", "DB_NAME"),
            ("user", "DB_USER"),
            ("password", "DB_PASSWORD"),
        ):
            raw = os.getenv(env_name)
            if raw:
                db_values[field_name] = raw
        values["database"] = DatabaseSettings(**db_values)

        return cls(**values)
