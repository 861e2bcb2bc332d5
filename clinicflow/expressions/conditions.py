"""Boolean evaluation of special conditions and legacy condition rules."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .values import FieldValue, ListValue, as_number, as_text, parse_number

logger = logging.getLogger(__name__)

NUMERIC_OPERATORS = frozenset({"maior", "menor", "maior_igual", "menor_igual", "entre"})

Scalar = Union[float, int, str]


class _RuleModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConditionTest(_RuleModel):
    """Single-field comparison."""

    campo: str
    operador: str = "igual"
    valor: Optional[Scalar] = None
    valor_final: Optional[Scalar] = None
    tipo: Optional[str] = None


class SpecialConditionRule(_RuleModel):
    """Rule configured on a ``specialConditions`` node."""

    id: str
    label: str = ""
    tipos: list[str] = Field(default_factory=list)
    tipo_condicao: Literal["simples", "combinacao"] = "simples"
    campo: Optional[str] = None
    operador: str = "igual"
    valor: Optional[Scalar] = None
    valor_final: Optional[Scalar] = None
    campos: list[ConditionTest] = Field(default_factory=list)
    operador_combinacao: Literal["AND", "OR"] = "AND"

    @property
    def is_combination(self) -> bool:
        return self.tipo_condicao == "combinacao" or (bool(self.campos) and not self.campo)

    def tests(self) -> list[ConditionTest]:
        if self.is_combination:
            return list(self.campos)
        if not self.campo:
            return []
        return [
            ConditionTest(
                campo=self.campo,
                operador=self.operador,
                valor=self.valor,
                valor_final=self.valor_final,
            )
        ]


class LegacyConditionRule(_RuleModel):
    """Rule configured on a ``conditions`` node; every rule must hold."""

    id: str = ""
    campo: str
    operador: str = "igual"
    valor: Optional[Scalar] = None
    valor_final: Optional[Scalar] = None
    label: str = ""


def compare(operador: str, value: FieldValue, target: Any, target_end: Any = None) -> bool:
    """Apply ``operador`` between a collected value and a configured target."""

    if operador in NUMERIC_OPERATORS:
        left = as_number(value)
        right = parse_number(target)
        if left is None or right is None:
            return False
        if operador == "maior":
            return left > right
        if operador == "menor":
            return left < right
        if operador == "maior_igual":
            return left >= right
        if operador == "menor_igual":
            return left <= right
        end = parse_number(target_end) if target_end is not None else None
        if end is None:
            return False
        return right <= left <= end

    if operador in ("igual", "diferente"):
        left = as_number(value)
        right = parse_number(target)
        if left is not None and right is not None:
            equal = left == right
        else:
            equal = as_text(value) == ("" if target is None else str(target))
        return equal if operador == "igual" else not equal

    if operador == "contem":
        needle = "" if target is None else str(target)
        if isinstance(value, ListValue) and needle in value.value:
            return True
        return needle in as_text(value)

    logger.debug(f"Unknown condition operator {operador!r}")
    return False


def evaluate_test(test: ConditionTest, field_responses: Mapping[str, FieldValue]) -> bool:
    value = field_responses.get(test.campo)
    if value is None:
        logger.debug(f"Condition references missing field {test.campo!r}")
        return False
    return compare(test.operador, value, test.valor, test.valor_final)


def evaluate_rule(
    rule: SpecialConditionRule, field_responses: Mapping[str, FieldValue]
) -> bool:
    """Evaluate a special condition rule against the collected responses.

    Missing fields evaluate to ``False`` so a rule can reference data the
    patient has not reached yet.
    """

    tests = rule.tests()
    if not tests:
        return False
    results = (evaluate_test(test, field_responses) for test in tests)
    if rule.is_combination and rule.operador_combinacao == "OR":
        return any(results)
    return all(results)


def select_rule(
    rules: Iterable[SpecialConditionRule], field_responses: Mapping[str, FieldValue]
) -> Optional[SpecialConditionRule]:
    """Return the first rule, in configured order, that holds."""

    for rule in rules:
        if evaluate_rule(rule, field_responses):
            return rule
    return None


def evaluate_legacy_conditions(
    rules: Sequence[LegacyConditionRule], field_responses: Mapping[str, FieldValue]
) -> bool:
    if not rules:
        return True
    return all(
        evaluate_test(
            ConditionTest(
                campo=rule.campo,
                operador=rule.operador,
                valor=rule.valor,
                valor_final=rule.valor_final,
            ),
            field_responses,
        )
        for rule in rules
    )
