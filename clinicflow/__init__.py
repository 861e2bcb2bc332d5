"""clinicflow: Durable execution of clinic patient flows."""

from .contracts import FlowDefinition, StepCompletion, StepCursor, StepDescriptor
from .engine import FlowEngine
from .graph import linearize
from .notifications import get_dispatcher
from .persistence import get_repository
from .scheduler import DelayTaskProcessor

__version__ = "0.1.0"
__all__ = [
    "DelayTaskProcessor",
    "FlowDefinition",
    "FlowEngine",
    "StepCompletion",
    "StepCursor",
    "StepDescriptor",
    "get_dispatcher",
    "get_repository",
    "linearize",
]
