"""
Core data models for the submission storage layer.

All models use Pydantic for runtime validation and type safety.
"""

from .dedup_rule import DedupConflict, DedupRule
from .etag import EtagMetadata
from .form_config import AutoIncrementConfig, FieldConfig, FormConfig
from .index_row import IndexRow
from .record import Record, RecordMeta, normalize_language
from .requests import BatchResult, ListPage, ListRequest, MaintenanceIssue, SaveRequest, SaveResult

__all__ = [
    "Record",
    "RecordMeta",
    "IndexRow",
    "EtagMetadata",
    "DedupRule",
    "DedupConflict",
    "FieldConfig",
    "FormConfig",
    "AutoIncrementConfig",
    "SaveRequest",
    "SaveResult",
    "MaintenanceIssue",
    "ListRequest",
    "ListPage",
    "BatchResult",
    "normalize_language",
]
