"""Contract variable mapping."""

from .variable_mapper import (
    DEFAULT_RULE_SETS,
    PlaceholderRule,
    RuleSet,
    VariableMapper,
    derive_initials,
    parse_currency,
)

__all__ = [
    "DEFAULT_RULE_SETS",
    "PlaceholderRule",
    "RuleSet",
    "VariableMapper",
    "derive_initials",
    "parse_currency",
]
