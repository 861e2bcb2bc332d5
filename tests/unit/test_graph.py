"""Tests for flow linearization and branch selection."""

import json

import pytest

from clinicflow.contracts import StepCursor
from clinicflow.errors import InvalidFlowError
from clinicflow.expressions import NumberValue
from clinicflow.graph import linearize, linearize_from, select_branch


def test_linearize_skips_start_and_end(scenario_a_flow):
    steps = linearize(scenario_a_flow)
    assert [s.node_id for s in steps] == ["q1", "d1", "fs1", "fe1"]
    assert [s.order for s in steps] == [1, 2, 3, 4]
    assert steps[0].title == "Quer emagrecer?"
    assert steps[1].config["quantidade"] == 5
    assert all(not s.completed for s in steps)


def test_linearize_is_idempotent(scenario_a_flow, branch_flow):
    for flow in (scenario_a_flow, branch_flow):
        first = [s.model_dump() for s in linearize(flow)]
        second = [s.model_dump() for s in linearize(flow)]
        assert first == second


def test_requires_exactly_one_start(flow_factory):
    no_start = flow_factory([("q", "question", {})], [])
    two_starts = flow_factory([("a", "start", {}), ("b", "start", {})], [])
    for flow in (no_start, two_starts):
        with pytest.raises(InvalidFlowError):
            linearize(flow)


def test_non_branching_node_follows_first_edge(flow_factory):
    flow = flow_factory(
        [
            ("s", "start", {}),
            ("a", "question", {"titulo": "A"}),
            ("b", "question", {"titulo": "B"}),
            ("c", "question", {"titulo": "C"}),
        ],
        [("s", "a"), ("a", "b"), ("a", "c")],
    )
    assert [s.node_id for s in linearize(flow)] == ["a", "b"]


def test_cycles_are_cut(flow_factory):
    flow = flow_factory(
        [("s", "start", {}), ("a", "question", {}), ("b", "question", {})],
        [("s", "a"), ("a", "b"), ("b", "a")],
    )
    steps = linearize(flow)
    assert [s.node_id for s in steps] == ["a", "b"]
    assert steps[0].title == "Etapa 1"


def test_calculator_fields_are_stably_sorted(flow_factory):
    flow = flow_factory(
        [
            ("s", "start", {}),
            (
                "calc",
                "calculator",
                {
                    "formula": "peso / (altura/100)²",
                    "calculatorFields": [
                        {"id": "f1", "nomenclatura": "peso", "order": 2},
                        {"id": "f2", "nomenclatura": "altura", "order": 1},
                    ],
                    "calculatorQuestionFields": [
                        {"id": "f3", "nomenclatura": "pratica", "order": 1},
                    ],
                },
            ),
        ],
        [("s", "calc")],
    )
    (step,) = linearize(flow)
    assert [f["nomenclatura"] for f in step.config["fields"]] == ["altura", "pratica", "peso"]


def test_branch_step_lists_every_branch_and_inlines_default(branch_flow):
    steps = linearize(branch_flow)
    assert [s.node_id for s in steps] == ["n1", "sc", "qm"]
    branch_step = steps[1]
    assert [(b.handle, b.target) for b in branch_step.branches] == [
        ("adulto", "qa"),
        ("default", "qm"),
    ]
    assert branch_step.branches[0].label == "Adulto"


def test_linearize_from_continues_after_visited_nodes(branch_flow):
    steps = linearize_from(branch_flow, "qa", visited=["n1", "sc"], first_order=3)
    assert [(s.node_id, s.order) for s in steps] == [("qa", 3)]
    # An edge back into the visited part ends the walk.
    assert linearize_from(branch_flow, "sc", visited=["n1", "sc"]) == []


def test_select_branch_first_match_then_default(branch_flow):
    step = linearize(branch_flow)[1]
    adult = select_branch(step, {"idade": NumberValue(value=30)})
    minor = select_branch(step, {"idade": NumberValue(value=12)})
    assert adult.branch.target == "qa" and adult.matched
    assert adult.rule_id == "adulto"
    assert minor.branch.target == "qm" and not minor.matched


def test_legacy_conditions_map_to_true_false_handles(flow_factory):
    flow = flow_factory(
        [
            ("s", "start", {}),
            (
                "c",
                "conditions",
                {"conditions": [{"campo": "idade", "operador": "maior", "valor": 60}]},
            ),
            ("yes", "question", {}),
            ("no", "question", {}),
        ],
        [("s", "c"), ("c", "yes", "true"), ("c", "no", "false")],
    )
    step = linearize(flow)[0]
    assert select_branch(step, {"idade": NumberValue(value=70)}).branch.target == "yes"
    assert select_branch(step, {"idade": NumberValue(value=20)}).branch.target == "no"
    # No responses yet: the false branch is inlined.
    assert [s.node_id for s in linearize(flow)] == ["c", "no"]


def test_step_cursor_json_uses_camel_case(scenario_a_flow):
    cursor = StepCursor(steps=linearize(scenario_a_flow), current_step_index=1)
    data = cursor.to_json_dict()
    assert data["currentStepIndex"] == 1
    assert data["steps"][0]["nodeId"] == "q1"
    assert "availableAt" in data["steps"][0]
    restored = StepCursor.from_json_dict(data)
    assert restored == cursor
    assert restored.current.node_id == "d1"


def _converging_chain(flow_factory, diamonds: int):
    """``diamonds`` branch nodes in a row, each splitting in two and rejoining."""

    nodes = [("s", "start", {})]
    edges = []
    previous = "s"
    for i in range(1, diamonds + 1):
        rule = {
            "id": f"r{i}",
            "label": "Adulto",
            "tipos": ["numerico"],
            "tipoCondicao": "simples",
            "campo": "idade",
            "operador": "maior_igual",
            "valor": 18,
        }
        nodes += [
            (f"c{i}", "specialConditions", {"condicoesEspeciais": [rule]}),
            (f"a{i}", "question", {"nomenclatura": f"a{i}"}),
            (f"b{i}", "question", {"nomenclatura": f"b{i}"}),
            (f"j{i}", "question", {"nomenclatura": f"j{i}"}),
        ]
        edges += [
            (previous, f"c{i}"),
            (f"c{i}", f"a{i}", f"r{i}"),
            (f"c{i}", f"b{i}", "default"),
            (f"a{i}", f"j{i}"),
            (f"b{i}", f"j{i}"),
        ]
        previous = f"j{i}"
    return flow_factory(nodes, edges)


def test_converging_branches_keep_the_cursor_linear(flow_factory):
    sizes = {}
    for diamonds in (5, 10):
        flow = _converging_chain(flow_factory, diamonds)
        steps = linearize(flow)
        assert len(steps) == 3 * diamonds
        assert [s.node_id for s in steps[:3]] == ["c1", "b1", "j1"]
        cursor = StepCursor(steps=steps, flow=flow)
        sizes[diamonds] = len(json.dumps(cursor.to_json_dict()))
    assert sizes[10] < 2.5 * sizes[5]
