"""Turn a flow graph into the ordered step list stored on an execution."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional

from pydantic import ValidationError

from .constants import BOUNDARY_NODE_TYPES, BRANCH_NODE_TYPES, MAX_LINEARIZE_DEPTH
from .contracts import FlowDefinition, FlowEdge, FlowNode, StepBranch, StepDescriptor
from .errors import InvalidFlowError
from .expressions import (
    FieldValue,
    LegacyConditionRule,
    SpecialConditionRule,
    evaluate_legacy_conditions,
    select_rule,
)

logger = logging.getLogger(__name__)

DEFAULT_HANDLES = ("default", "else", "false")


class BranchSelection(NamedTuple):
    branch: Optional[StepBranch]
    matched: bool
    rule_id: Optional[str] = None
    rule_label: Optional[str] = None

    def describe(self) -> Dict[str, Any]:
        """Response stored on an auto-resolved branch step."""
        return {
            "matched": self.matched,
            "ruleId": self.rule_id,
            "ruleLabel": self.rule_label,
            "edgeId": self.branch.edge_id if self.branch else None,
            "target": self.branch.target if self.branch else None,
        }


def calculator_fields(data: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Merge calculation and question fields, ordered by ``order``.

    ``sorted`` is stable, so fields sharing an order keep their declared
    position with calculation fields first.
    """

    fields = list(data.get("calculatorFields") or []) + list(
        data.get("calculatorQuestionFields") or []
    )
    return sorted(fields, key=lambda field: field.get("order") or 0)


def _build_step(node: FlowNode, position: int) -> StepDescriptor:
    data = node.data
    config = dict(data)
    if node.type == "calculator":
        config["fields"] = calculator_fields(data)
    return StepDescriptor(
        node_id=node.id,
        node_type=node.type,
        title=data.get("titulo") or data.get("label") or f"Etapa {position}",
        description=data.get("descricao"),
        form_id=data.get("formId"),
        config=config,
    )


def _walk(
    flow: FlowDefinition,
    node_id: Optional[str],
    visited: frozenset,
    depth: int,
    position: int,
) -> List[StepDescriptor]:
    steps: List[StepDescriptor] = []
    current = node_id
    while current:
        if depth >= MAX_LINEARIZE_DEPTH:
            logger.warning(f"Flow {flow.id}: depth limit reached at node {current}")
            break
        if current in visited:
            logger.debug(f"Flow {flow.id}: cycle cut at node {current}")
            break
        node = flow.node(current)
        if node is None:
            logger.warning(f"Flow {flow.id}: edge points to unknown node {current}")
            break
        visited = visited | {current}
        depth += 1
        if node.type == "end":
            break

        edges = flow.outgoing(current)
        if node.type not in BOUNDARY_NODE_TYPES:
            step = _build_step(node, position + len(steps) + 1)
            steps.append(step)
            if node.type in BRANCH_NODE_TYPES and edges:
                step.branches = [_branch(edge) for edge in edges]
                # Runtime answers may pick another branch; the engine then
                # relinearizes from that branch target.
                current = select_branch(step, {}).branch.target
                continue
        current = edges[0].target if edges else None
    return steps


def _branch(edge: FlowEdge) -> StepBranch:
    return StepBranch(
        edge_id=edge.id, target=edge.target, handle=edge.source_handle, label=edge.label
    )


def linearize_from(
    flow: FlowDefinition,
    node_id: str,
    visited: Iterable[str] = (),
    first_order: int = 1,
) -> List[StepDescriptor]:
    """Linearize the part of ``flow`` reachable from ``node_id``.

    Nodes in ``visited`` count as already on the path, so an edge leading
    back to one of them ends the walk there.
    """

    seen = frozenset(visited)
    steps = _walk(flow, node_id, seen, len(seen), first_order - 1)
    for offset, step in enumerate(steps):
        step.order = first_order + offset
    return steps


def linearize(flow: FlowDefinition) -> List[StepDescriptor]:
    """Linearize ``flow`` from its start node.

    Raises:
        InvalidFlowError: the flow does not have exactly one start node.
    """

    start = flow.start_node
    if start is None:
        raise InvalidFlowError(f"Flow {flow.id} must have exactly one start node")
    steps = linearize_from(flow, start.id)
    logger.debug(f"Flow {flow.id} linearized into {len(steps)} steps")
    return steps


def _special_rules(config: Mapping[str, Any]) -> List[SpecialConditionRule]:
    rules = []
    for raw in config.get("condicoesEspeciais") or []:
        try:
            rules.append(SpecialConditionRule.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed special condition {raw!r}: {e}")
    return rules


def _legacy_rules(config: Mapping[str, Any]) -> List[LegacyConditionRule]:
    rules = []
    for raw in config.get("conditions") or []:
        try:
            rules.append(LegacyConditionRule.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping malformed condition {raw!r}: {e}")
    return rules


def _by_handle(branches: List[StepBranch], *handles: str) -> Optional[StepBranch]:
    for branch in branches:
        if branch.handle in handles:
            return branch
    return None


def _default_branch(branches: List[StepBranch]) -> StepBranch:
    for branch in branches:
        if branch.handle is None or branch.handle in DEFAULT_HANDLES:
            return branch
    return branches[0]


def select_branch(
    step: StepDescriptor, field_responses: Mapping[str, FieldValue]
) -> BranchSelection:
    """Pick the outgoing branch of a branching step.

    ``specialConditions``: the first rule that holds selects the edge whose
    handle is the rule id, or whose label is the rule label. Without a match
    the default edge is used (handle ``default``/``else``/``false`` or no
    handle), else the first edge.

    ``conditions``: all rules holding selects the ``true`` edge (or the first
    edge), otherwise the ``false`` edge (or the last edge).
    """

    branches = step.branches
    if not branches:
        return BranchSelection(branch=None, matched=False)

    if step.node_type == "conditions":
        holds = evaluate_legacy_conditions(_legacy_rules(step.config), field_responses)
        if holds:
            branch = _by_handle(branches, "true") or branches[0]
        else:
            branch = _by_handle(branches, "false") or branches[-1]
        return BranchSelection(branch=branch, matched=holds)

    rule = select_rule(_special_rules(step.config), field_responses)
    if rule is not None:
        for branch in branches:
            if branch.handle == rule.id or (rule.label and branch.label == rule.label):
                return BranchSelection(
                    branch=branch, matched=True, rule_id=rule.id, rule_label=rule.label
                )
        logger.warning(
            f"Rule {rule.id} of step {step.node_id} matched but has no edge; using default"
        )
    return BranchSelection(
        branch=_default_branch(branches),
        matched=False,
        rule_id=rule.id if rule else None,
        rule_label=rule.label if rule else None,
    )
