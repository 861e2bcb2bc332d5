"""Pure evaluators for calculator formulas and branch conditions."""

from .conditions import (
    ConditionTest,
    LegacyConditionRule,
    SpecialConditionRule,
    evaluate_legacy_conditions,
    evaluate_rule,
    select_rule,
)
from .formula import evaluate_formula
from .values import FieldValue, ListValue, NumberValue, TextValue, to_field_value

__all__ = [
    "ConditionTest",
    "FieldValue",
    "LegacyConditionRule",
    "ListValue",
    "NumberValue",
    "SpecialConditionRule",
    "TextValue",
    "evaluate_formula",
    "evaluate_legacy_conditions",
    "evaluate_rule",
    "select_rule",
    "to_field_value",
]
