"""
Request and response contracts of the save and read paths.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from .record import Record, RecordMeta, normalize_language


class SaveRequest(BaseModel):
    """
    A request to create or update a record.

    Attributes:
        record_id: Existing record id (update) or None (create)
        form_key: Form the record belongs to
        language: Submission language
        values: Field id -> scalar or list value
        client_observed_version: Version the caller last read, enables the stale-write check
        save_mode: "final" for interactive submits, "draft" for background autosaves
        status_override: Status to write; its presence also allows drafts on closed records
    """

    record_id: str | None = None
    form_key: str = Field(..., min_length=1)
    language: str = "EN"
    values: dict[str, Any] = Field(default_factory=dict)
    client_observed_version: int | None = Field(None, ge=0)
    save_mode: Literal["final", "draft"] = "final"
    status_override: str | None = None

    @field_validator("record_id", mode="before")
    @classmethod
    def blank_id_is_none(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("language", mode="before")
    @classmethod
    def normalize(cls, v: Any) -> str:
        return normalize_language(v)


class MaintenanceIssue(BaseModel):
    """
    A swallowed index or cache maintenance failure.

    These never fail a save; they are reported so callers can log or alert.
    """

    component: Literal["index", "cache"]
    operation: str
    message: str


class SaveResult(BaseModel):
    """
    Outcome of a save.

    Attributes:
        success: Whether the main table was written
        message: Human readable outcome
        meta: Record metadata (id is set whenever it is known)
        error_code: Rejection code (STALE_WRITE, DUPLICATE, INDEX_NOT_BUILT, RECORD_CLOSED)
        warnings: Maintenance issues that did not affect the saved row
    """

    success: bool
    message: str
    meta: RecordMeta = Field(default_factory=RecordMeta)
    error_code: str | None = None
    warnings: list[MaintenanceIssue] = Field(default_factory=list)


class ListRequest(BaseModel):
    """A page request."""

    projection: list[str] = Field(default_factory=list)
    page_size: int = 10
    page_token: str | None = None
    hydrate: bool = False


class ListPage(BaseModel):
    """
    A page of listing items.

    Attributes:
        items: Flat item dicts (metadata + projected field values)
        next_page_token: Present iff more rows remain in the scanned window
        total_count: Number of rows in the scanned window
        etag: Etag the page was built against
        records: Full records keyed by id (hydrated pages only)
    """

    items: list[dict[str, Any]] = Field(default_factory=list)
    next_page_token: str | None = None
    total_count: int = 0
    etag: str = ""
    records: dict[str, Record] = Field(default_factory=dict)


class BatchResult(BaseModel):
    """A page plus records explicitly requested by id that the page did not contain."""

    page: ListPage
    records: dict[str, Record] = Field(default_factory=dict)
