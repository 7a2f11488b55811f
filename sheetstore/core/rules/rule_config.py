"""
Form and dedup rule configuration management.

Loads form layouts and dedup rules from YAML files and validates them up
front, so malformed rules are rejected before any signature is computed.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from sheetstore.core.errors import RuleConfigError
from sheetstore.core.models import DedupRule, FieldConfig, FormConfig


def validate_dedup_rules(
    raw_rules: list[dict[str, Any] | DedupRule],
    form: FormConfig | None = None,
) -> list[DedupRule]:
    """
    Validate a list of dedup rule definitions.

    Args:
        raw_rules: Rule dictionaries (or already built rules)
        form: When given, every rule key must be one of the form's field ids

    Returns:
        Validated DedupRule list, in input order

    Raises:
        RuleConfigError: If any rule is malformed, ids repeat, or keys are unknown
    """
    rules: list[DedupRule] = []
    seen: set[str] = set()
    known_fields = {q.id for q in form.questions} if form is not None else None

    for idx, raw in enumerate(raw_rules or []):
        if isinstance(raw, DedupRule):
            rule = raw
        else:
            if not isinstance(raw, dict):
                raise RuleConfigError(f"Dedup rule #{idx} must be a mapping, got {type(raw).__name__}")
            try:
                rule = DedupRule(**_rename_legacy_keys(raw))
            except ValidationError as e:
                raise RuleConfigError(f"Dedup rule #{idx} ({raw.get('id', '?')}) is invalid: {e}") from e

        if rule.id in seen:
            raise RuleConfigError(f"Duplicate dedup rule id '{rule.id}'")
        seen.add(rule.id)

        if known_fields is not None and rule.scope == "form":
            unknown = [k for k in rule.keys if k not in known_fields]
            if unknown:
                raise RuleConfigError(
                    f"Dedup rule '{rule.id}' references unknown field(s): {', '.join(unknown)}"
                )
        rules.append(rule)

    return rules


def _rename_legacy_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Accept camelCase keys used by older rule sheets."""
    renamed = dict(raw)
    for legacy, current in (("matchMode", "match_mode"), ("onConflict", "on_conflict")):
        if legacy in renamed and current not in renamed:
            renamed[current] = renamed.pop(legacy)
    return renamed


class RuleConfigLoader:
    """
    Loads a form definition and its dedup rules from a YAML file.

    Expected YAML format:
    ```yaml
    form:
      form_key: meal_orders
      title: Meal Orders
      terminal_statuses: [Closed]
      questions:
        - id: CUSTOMER
          label: Customer
        - id: ORDER_DATE
          label: Order date
          type: DATE
        - id: ORDER_NO
          type: TEXT
          auto_increment:
            prefix: "MO-"
            pad_length: 5

    dedup_rules:
      - id: one_order_per_day
        keys: [CUSTOMER, ORDER_DATE]
        match_mode: case_insensitive
        message:
          en: "An order for this customer and day already exists."
    ```
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the loader.

        Args:
            config_path: Path to the YAML configuration file
        """
        self.config_path = Path(config_path)
        if not self.config_path.exists():
            raise FileNotFoundError(f"Form configuration file not found: {config_path}")

    def _read(self) -> dict[str, Any]:
        with open(self.config_path) as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise RuleConfigError(f"Invalid YAML in {self.config_path}: {e}") from e
        if not isinstance(config, dict):
            raise RuleConfigError("Configuration file must contain a mapping")
        return config

    def load_form(self) -> FormConfig:
        """
        Load and validate the form definition.

        Raises:
            RuleConfigError: If the 'form' section is missing or invalid
        """
        config = self._read()
        if "form" not in config:
            raise RuleConfigError("Configuration file must contain 'form' section")
        return parse_form_config(config["form"])

    def load_rules(self, form: FormConfig | None = None) -> list[DedupRule]:
        """
        Load and validate dedup rules.

        Args:
            form: Form used to check rule keys (loaded from the same file when omitted)

        Returns:
            Validated rules (empty when the file has no 'dedup_rules' section)
        """
        config = self._read()
        raw_rules = config.get("dedup_rules") or []
        if not isinstance(raw_rules, list):
            raise RuleConfigError("'dedup_rules' must be a list")
        if form is None and "form" in config:
            form = parse_form_config(config["form"])
        return validate_dedup_rules(raw_rules, form)


def parse_form_config(raw: dict[str, Any]) -> FormConfig:
    """
    Build a FormConfig from a plain mapping.

    Question entries may use ``type`` as a short alias for ``field_type``.
    """
    if not isinstance(raw, dict):
        raise RuleConfigError("'form' section must be a mapping")
    data = dict(raw)
    questions = []
    for q in data.pop("questions", None) or []:
        if not isinstance(q, dict):
            raise RuleConfigError(f"Question definitions must be mappings, got {q!r}")
        q = dict(q)
        if "type" in q and "field_type" not in q:
            q["field_type"] = str(q.pop("type")).upper()
        questions.append(q)
    try:
        return FormConfig(questions=questions, **data)
    except ValidationError as e:
        raise RuleConfigError(f"Form configuration is invalid: {e}") from e


class RuleConfigBuilder:
    """
    Programmatically build a form and its dedup rules (for tests or embedding).
    """

    def __init__(self, form_key: str, title: str = "", destination_table: str | None = None):
        self.form_key = form_key
        self.title = title
        self.destination_table = destination_table
        self.questions: list[FieldConfig] = []
        self.rules: list[dict[str, Any]] = []
        self.terminal_statuses: list[str] = ["Closed"]

    def add_field(self, field_id: str, label: str = "", field_type: str = "TEXT", **extra: Any) -> "RuleConfigBuilder":
        """Add a question."""
        self.questions.append(FieldConfig(id=field_id, label=label or field_id, field_type=field_type, **extra))
        return self

    def add_dedup_rule(
        self,
        rule_id: str,
        keys: list[str],
        message: str | dict[str, str] | None = None,
        match_mode: str = "exact",
        on_conflict: str = "reject",
    ) -> "RuleConfigBuilder":
        """Add a dedup rule."""
        self.rules.append({
            "id": rule_id,
            "keys": keys,
            "message": message,
            "match_mode": match_mode,
            "on_conflict": on_conflict,
        })
        return self

    def with_terminal_statuses(self, *statuses: str) -> "RuleConfigBuilder":
        self.terminal_statuses = list(statuses)
        return self

    def build_form(self) -> FormConfig:
        return FormConfig(
            form_key=self.form_key,
            title=self.title,
            destination_table=self.destination_table,
            questions=self.questions,
            terminal_statuses=self.terminal_statuses,
        )

    def build_rules(self) -> list[DedupRule]:
        return validate_dedup_rules(self.rules, self.build_form())

    def build(self) -> tuple[FormConfig, list[DedupRule]]:
        """Build and return the form and its validated rules."""
        return self.build_form(), self.build_rules()
