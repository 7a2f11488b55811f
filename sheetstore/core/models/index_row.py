"""
IndexRow model: one row of the secondary record index.
"""

from pydantic import BaseModel, Field


class IndexRow(BaseModel):
    """
    A row of the index table.

    The index row stored at physical row R always describes the record stored
    at row R of the main table, so ``row_number`` doubles as the address of the
    index row itself.

    Attributes:
        record_id: Id of the record at the same row of the main table
        row_number: Physical row number (>= 2, row 1 is the header)
        data_version: Version of the record at the time of the last write
        updated_at_iso: Last write timestamp
        created_at_iso: First write timestamp
        dedup_signatures: Rule id -> dedup signature ("" when the rule does not apply)
    """

    record_id: str
    row_number: int = Field(..., ge=2)
    data_version: int | None = Field(None, ge=0)
    updated_at_iso: str = ""
    created_at_iso: str = ""
    dedup_signatures: dict[str, str] = Field(default_factory=dict)
