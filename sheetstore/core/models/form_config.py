"""
Form configuration models: the field layout a destination table stores.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

FieldType = Literal["TEXT", "PARAGRAPH", "NUMBER", "DATE", "CHOICE", "CHECKBOX", "LINE_ITEM_GROUP"]


class AutoIncrementConfig(BaseModel):
    """
    Auto-generated sequential values for TEXT fields saved empty.

    Attributes:
        prefix: Text placed before the counter
        pad_length: Zero padding of the counter (1-20)
        property_key: Explicit counter key; defaults to form key + field id
    """

    prefix: str = ""
    pad_length: int = Field(6, ge=1, le=20)
    property_key: str | None = None


class FieldConfig(BaseModel):
    """
    One question of a form.

    Attributes:
        id: Stable field id, used as the canonical key in record values
        label: Human readable label, shown in the header as ``Label [ID]``
        field_type: Storage behaviour (CHECKBOX joins lists, LINE_ITEM_GROUP stores JSON)
        auto_increment: Sequential value generation (TEXT fields only)
    """

    id: str = Field(..., min_length=1)
    label: str = ""
    field_type: FieldType = "TEXT"
    auto_increment: AutoIncrementConfig | None = None

    @field_validator("id")
    @classmethod
    def strip_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field id cannot be blank")
        return v

    @model_validator(mode="after")
    def check_auto_increment(self) -> "FieldConfig":
        if self.auto_increment is not None and self.field_type != "TEXT":
            raise ValueError(f"auto_increment is only supported on TEXT fields (field '{self.id}')")
        return self


class FormConfig(BaseModel):
    """
    A form and the destination table its records are written to.

    Attributes:
        form_key: Stable form identifier
        title: Display title
        destination_table: Main table name (defaults to "<title> Responses")
        questions: Ordered field list
        terminal_statuses: Statuses that close a record to background writes
        volatile_columns: Extra header labels folded into the fallback content fingerprint
    """

    form_key: str = Field(..., min_length=1)
    title: str = ""
    destination_table: str | None = None
    questions: list[FieldConfig] = Field(default_factory=list)
    terminal_statuses: list[str] = Field(default_factory=lambda: ["Closed"])
    volatile_columns: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_fields(self) -> "FormConfig":
        seen: set[str] = set()
        for field in self.questions:
            if field.id in seen:
                raise ValueError(f"duplicate field id '{field.id}' in form '{self.form_key}'")
            seen.add(field.id)
        return self

    @property
    def table_name(self) -> str:
        """Destination table name."""
        if self.destination_table and self.destination_table.strip():
            return self.destination_table.strip()
        return f"{self.title or self.form_key} Responses"

    def field(self, field_id: str) -> FieldConfig | None:
        for field in self.questions:
            if field.id == field_id:
                return field
        return None

    def is_terminal_status(self, status: str | None) -> bool:
        """Case-insensitive match against the configured terminal statuses."""
        if not status or not str(status).strip():
            return False
        needle = str(status).strip().lower()
        return any(needle == s.strip().lower() for s in self.terminal_statuses if s)
