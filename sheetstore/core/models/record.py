"""
Record model representing a stored form submission.
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

Language = Literal["EN", "FR", "NL"]
SUPPORTED_LANGUAGES: tuple[str, ...] = ("EN", "FR", "NL")


def normalize_language(raw: Any) -> str:
    """
    Normalize a language value to one of the supported codes.

    Lists (multi-select language widgets) resolve to their last non-empty
    entry. Unknown values fall back to EN.
    """
    if isinstance(raw, (list, tuple)):
        candidates = [str(v) for v in raw if v not in (None, "")]
        raw = candidates[-1] if candidates else ""
    value = str(raw or "EN").strip().upper()
    return value if value in SUPPORTED_LANGUAGES else "EN"


class Record(BaseModel):
    """
    A form submission as stored in a destination table.

    Attributes:
        id: Record id, unique within the destination table
        form_key: Form the record belongs to
        language: Submission language
        values: Field id -> scalar or list value
        status: Workflow status (terminal statuses close the record)
        created_at: ISO timestamp of the first write, never changes afterwards
        updated_at: ISO timestamp of the latest write
        data_version: Optimistic concurrency counter, starts at 1
        pdf_url: Link to the generated document, if any
        row_number: Physical row in the destination table
    """

    id: str = Field(..., min_length=1)
    form_key: str
    language: Language = "EN"
    values: dict[str, Any] = Field(default_factory=dict)
    status: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    data_version: int = Field(1, ge=0)
    pdf_url: str | None = None
    row_number: int | None = Field(None, ge=2)

    class Config:
        json_schema_extra = {
            "example": {
                "id": "4c1f0a52-8a57-4d0a-9a2b-6f0c2a1d7e11",
                "form_key": "meal_orders",
                "language": "EN",
                "values": {"DISH": "Soup", "ALLERGENS": ["gluten", "celery"]},
                "status": "In progress",
                "created_at": "2026-10-01T09:30:00+00:00",
                "updated_at": "2026-10-01T09:45:12+00:00",
                "data_version": 3,
                "row_number": 17,
            }
        }


class RecordMeta(BaseModel):
    """Metadata returned with every save response."""

    id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    data_version: int | None = None
    row_number: int | None = None
