"""
Dedup evaluation: rule signatures and conflict detection.

The signature of a rule over a set of values is a SHA-256 digest of the
normalized key values. Index columns store these digests, so the indexed check
in the write path and the in-memory check here agree by construction.
"""

import hashlib
from datetime import date, datetime
from typing import Any, Iterable

from pydantic import BaseModel, Field

from sheetstore.core.models import DedupConflict, DedupRule

KEY_SEPARATOR = "||"


class DedupCandidate(BaseModel):
    """A record (or would-be record) as seen by the dedup evaluator."""

    id: str | None = None
    row_number: int | None = None
    values: dict[str, Any] = Field(default_factory=dict)


def _normalize_scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value).strip()


def normalize_value(value: Any, match_mode: str = "exact") -> str:
    """
    Normalize one key value for comparison.

    Dates compare by calendar day, lists compare element-wise joined with "|",
    everything else by its trimmed text.
    """
    if isinstance(value, (list, tuple)):
        text = "|".join(_normalize_scalar(v) for v in value)
    else:
        text = _normalize_scalar(value)
    return text.lower() if match_mode == "case_insensitive" else text


class DedupEvaluator:
    """
    Computes rule signatures and finds conflicts between records.

    A rule only applies once all of its key fields are non-empty, so partially
    filled drafts never block each other.
    """

    def signature(self, rule: DedupRule, values: dict[str, Any]) -> str | None:
        """
        Compute the signature of a rule over record values.

        Args:
            rule: The dedup rule
            values: Field id -> value

        Returns:
            Hex digest, or None when the rule does not apply (a key is empty)
        """
        if not rule.keys:
            return None
        parts = [normalize_value((values or {}).get(key), rule.match_mode) for key in rule.keys]
        if any(not part for part in parts):
            return None
        return hashlib.sha256(KEY_SEPARATOR.join(parts).encode("utf-8")).hexdigest()

    def signatures_for(self, rules: Iterable[DedupRule], values: dict[str, Any]) -> dict[str, str]:
        """
        Signatures for every indexed rule, "" where the rule does not apply.
        """
        return {
            rule.id: (self.signature(rule, values) or "")
            for rule in rules
            if rule.is_indexed
        }

    def conflict(
        self,
        rules: Iterable[DedupRule],
        candidate: DedupCandidate,
        existing: Iterable[DedupCandidate],
        language: str | None = None,
    ) -> DedupConflict | None:
        """
        Find the first reject-rule conflict between a candidate and existing records.

        Args:
            rules: Rules to evaluate (disabled and "allow" rules never conflict)
            candidate: The record being saved
            existing: Records already stored
            language: Language used to resolve the rule message

        Returns:
            DedupConflict for the first match, or None
        """
        existing_list = list(existing)
        for rule in rules:
            if not rule.enabled or rule.on_conflict != "reject":
                continue
            incoming = self.signature(rule, candidate.values)
            if incoming is None:
                continue
            for record in existing_list:
                if candidate.id and record.id and candidate.id == record.id:
                    continue
                if self.signature(rule, record.values) == incoming:
                    return DedupConflict(
                        rule_id=rule.id,
                        message=rule.resolve_message(language),
                        existing_record_id=record.id,
                        existing_row_number=record.row_number,
                    )
        return None
