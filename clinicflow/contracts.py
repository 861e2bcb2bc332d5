"""Core contracts: flow definitions, linearized steps and the step cursor."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import AUTOMATIC_NODE_TYPES


class FlowNode(BaseModel):
    """A node of the visual flow graph."""

    id: str
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class FlowEdge(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = None
    label: Optional[str] = None


class FlowDefinition(BaseModel):
    """Flow graph as saved by the flow builder."""

    id: str
    name: str
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    def node(self, node_id: str) -> Optional[FlowNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[FlowEdge]:
        """Outgoing edges of ``node_id`` in definition order."""
        return [edge for edge in self.edges if edge.source == node_id]

    @property
    def start_node(self) -> Optional[FlowNode]:
        starts = [node for node in self.nodes if node.type == "start"]
        return starts[0] if len(starts) == 1 else None

    @property
    def end_node_id(self) -> Optional[str]:
        for node in self.nodes:
            if node.type == "end":
                return node.id
        return None


class _CursorModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StepBranch(_CursorModel):
    """One outgoing edge of a branch node; its steps are laid out once it is chosen."""

    edge_id: str
    target: str
    handle: Optional[str] = None
    label: Optional[str] = None


class StepDescriptor(_CursorModel):
    """One entry of the linearized step list embedded in an execution."""

    node_id: str
    node_type: str
    title: str
    description: Optional[str] = None
    form_id: Optional[str] = None
    order: int = 0
    completed: bool = False
    completed_at: Optional[datetime] = None
    available_at: Optional[datetime] = None
    response: Any = None
    config: Dict[str, Any] = Field(default_factory=dict)
    branches: List[StepBranch] = Field(default_factory=list)

    @property
    def is_automatic(self) -> bool:
        return self.node_type in AUTOMATIC_NODE_TYPES


class StepCursor(_CursorModel):
    """Step list plus position; persisted as the ``current_step`` JSON column.

    ``flow`` is the definition snapshot the steps were laid out from; branch
    steps relinearize the chosen branch from it.
    """

    steps: List[StepDescriptor] = Field(default_factory=list)
    current_step_index: int = 0
    flow: Optional[FlowDefinition] = None

    @property
    def current(self) -> Optional[StepDescriptor]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def upcoming(self) -> Optional[StepDescriptor]:
        """Step right after the current one."""
        index = self.current_step_index + 1
        return self.steps[index] if 0 <= index < len(self.steps) else None

    def is_finished(self) -> bool:
        return self.current_step_index >= len(self.steps)

    def find(self, node_id: str) -> Optional[StepDescriptor]:
        for step in self.steps:
            if step.node_id == node_id:
                return step
        return None

    def advance(self) -> Optional[StepDescriptor]:
        """Move past the current step and return the new current step."""
        if not self.is_finished():
            self.current_step_index += 1
        return self.current

    def replace_tail(self, steps: List[StepDescriptor]) -> None:
        """Swap everything after the current step for ``steps``, renumbering orders."""
        head = self.steps[: self.current_step_index + 1]
        tail = [step.model_copy(deep=True) for step in steps]
        self.steps = head + tail
        for position, step in enumerate(self.steps, start=1):
            step.order = position

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_json_dict(cls, data: Dict[str, Any] | None) -> "StepCursor":
        return cls.model_validate(data or {})


class StepCompletion(BaseModel):
    """Outcome of a patient completing a step."""

    execution_id: str
    step_id: Optional[str] = None
    changed: bool = True
    status: str
    progress: int
    completed_steps: int
    total_steps: int
    current_step: Optional[StepDescriptor] = None
    next_step_available_at: Optional[datetime] = None
    delay_task_id: Optional[str] = None
    form_end_processed: Optional[bool] = None


class ProcessingSummary(BaseModel):
    """Counters reported by one delay task processor invocation."""

    instance_id: str
    forced: bool = False
    found: int = 0
    claimed: int = 0
    processed: int = 0
    stale: int = 0
    deferred: int = 0
    contended: int = 0
    notified: int = 0
    notification_failures: int = 0
    errors: int = 0
