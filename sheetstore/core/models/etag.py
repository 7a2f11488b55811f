"""
EtagMetadata model persisted per cached resource.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class EtagMetadata(BaseModel):
    """
    Etag bookkeeping for one resource (a destination table).

    The etag is only regenerated on writes (``reason="bump:*"``), on first use
    (``"init"``) or when the table shape differs from the recorded one
    (``"shapeChanged"``). Comparing shapes needs row/column counts only.

    Attributes:
        etag: Opaque token identifying the resource content
        last_row_count: Row count when the etag was generated
        last_col_count: Column count when the etag was generated
        reason: Why the etag was generated
        updated_at: When the etag was generated
    """

    etag: str = Field(..., min_length=1)
    last_row_count: int = Field(0, ge=0)
    last_col_count: int = Field(0, ge=0)
    reason: str = "init"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def matches_shape(self, row_count: int, col_count: int) -> bool:
        """True when the recorded shape equals the given one."""
        return self.last_row_count == row_count and self.last_col_count == col_count
