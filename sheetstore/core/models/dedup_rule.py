"""
DedupRule model: a configurable duplicate-submission constraint.
"""

import json
import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_DUPLICATE_MESSAGE = "Duplicate record."

_WHITESPACE_RE = re.compile(r"\s+")


class DedupRule(BaseModel):
    """
    A duplicate-submission rule.

    Two records conflict under a rule when every key field is non-empty in both
    and the normalized key values are equal.

    Attributes:
        id: Rule id, also used to name the index signature column
        keys: Field ids whose values form the rule signature
        scope: "form" (checked against the destination table) or a data source id
        match_mode: "exact" or "case_insensitive"
        on_conflict: "reject" blocks the save, "allow" only reports
        message: Rejection message, plain text or language code -> text
        enabled: Disabled rules are ignored everywhere
    """

    id: str = Field(..., min_length=1)
    keys: list[str] = Field(..., min_length=1)
    scope: str = "form"
    match_mode: Literal["exact", "case_insensitive"] = "exact"
    on_conflict: Literal["reject", "allow"] = "reject"
    message: str | dict[str, str] | None = None
    enabled: bool = True

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, v: Any) -> Any:
        """Trim the id and collapse inner whitespace so it is usable as a column header."""
        if isinstance(v, str):
            return _WHITESPACE_RE.sub("_", v.strip())
        return v

    @field_validator("keys", mode="before")
    @classmethod
    def normalize_keys(cls, v: Any) -> Any:
        """Accept a comma separated string and drop blank entries."""
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, (list, tuple)):
            return [str(k).strip() for k in v if k is not None and str(k).strip()]
        return v

    @field_validator("scope", mode="before")
    @classmethod
    def default_scope(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "form"
        return v.strip() if isinstance(v, str) else v

    @field_validator("match_mode", mode="before")
    @classmethod
    def normalize_match_mode(cls, v: Any) -> Any:
        if v is None:
            return "exact"
        text = str(v).strip().lower().replace("-", "_")
        if text in ("caseinsensitive", "case_insensitive"):
            return "case_insensitive"
        return text

    @field_validator("on_conflict", mode="before")
    @classmethod
    def normalize_on_conflict(cls, v: Any) -> Any:
        """Map legacy values: "ignore" allows, "merge" (never implemented) rejects."""
        if v is None:
            return "reject"
        text = str(v).strip().lower()
        if text == "ignore":
            return "allow"
        if text == "merge":
            return "reject"
        return text

    @field_validator("message", mode="before")
    @classmethod
    def parse_message(cls, v: Any) -> Any:
        """Accept localized messages stored as JSON text."""
        if isinstance(v, str):
            text = v.strip()
            if not text:
                return None
            if text.startswith("{") and text.endswith("}"):
                try:
                    parsed = json.loads(text)
                except json.JSONDecodeError:
                    return text
                if isinstance(parsed, dict):
                    return {str(k): str(val) for k, val in parsed.items()}
            return text
        return v

    @property
    def is_indexed(self) -> bool:
        """Rules enforced through index signature columns."""
        return self.enabled and self.on_conflict == "reject" and self.scope == "form"

    def resolve_message(self, language: str | None = None) -> str:
        """
        Resolve the rejection message for a language.

        Args:
            language: Language code (any case), defaults to English

        Returns:
            Message text, or the generic duplicate message
        """
        if not self.message:
            return DEFAULT_DUPLICATE_MESSAGE
        if isinstance(self.message, str):
            return self.message
        lowered = {k.lower(): v for k, v in self.message.items()}
        key = (language or "en").lower()
        return lowered.get(key) or lowered.get("en") or DEFAULT_DUPLICATE_MESSAGE

    class Config:
        json_schema_extra = {
            "example": {
                "id": "one_order_per_day",
                "keys": ["CUSTOMER", "ORDER_DATE"],
                "match_mode": "case_insensitive",
                "on_conflict": "reject",
                "message": {"en": "An order for this day already exists.", "fr": "Une commande existe déjà."},
            }
        }


class DedupConflict(BaseModel):
    """A detected duplicate."""

    rule_id: str
    message: str
    existing_record_id: str | None = None
    existing_row_number: int | None = None
