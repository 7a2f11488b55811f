"""
Dedup rule evaluation and form/rule configuration management.
"""

from .dedup import DedupCandidate, DedupEvaluator, normalize_value
from .rule_config import RuleConfigBuilder, RuleConfigLoader, parse_form_config, validate_dedup_rules

__all__ = [
    "DedupEvaluator",
    "DedupCandidate",
    "normalize_value",
    "RuleConfigLoader",
    "RuleConfigBuilder",
    "parse_form_config",
    "validate_dedup_rules",
]
