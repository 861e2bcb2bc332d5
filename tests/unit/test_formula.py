"""Tests for calculator formula evaluation."""

import pytest

from clinicflow.expressions import evaluate_formula
from clinicflow.expressions.formula import substitute


def test_bmi_formula_is_deterministic():
    values = {"peso": 70, "altura": 175}
    results = {evaluate_formula("peso / (altura/100)²", values) for _ in range(5)}
    assert len(results) == 1
    assert results.pop() == pytest.approx(22.86, abs=0.01)


def test_substitution_respects_word_boundaries():
    expression = substitute("peso + pesoado", {"peso": 2})
    assert "(2.0)" in expression
    assert "pesoado" in expression


def test_longer_names_are_replaced_first():
    assert evaluate_formula("peso_ideal - peso", {"peso": 70, "peso_ideal": 65}) == -5.0


def test_operator_precedence_and_unary_minus():
    assert evaluate_formula("2 + 3 * 4", {}) == 14.0
    assert evaluate_formula("-(2 + 3) * 2", {}) == -10.0
    assert evaluate_formula("2 ** 3³", {}) == 2.0 ** 27


@pytest.mark.parametrize(
    "formula,values",
    [
        ("", {}),
        ("   ", {}),
        ("peso / 0", {"peso": 10}),
        ("peso +", {"peso": 10}),
        ("altura * 2", {}),
        ("__import__('os')", {}),
        ("2 ** 1000", {}),
        ("(-8) ** 0.5", {}),
    ],
)
def test_invalid_formulas_evaluate_to_zero(formula, values):
    assert evaluate_formula(formula, values) == 0.0
