"""Converse Kernel data models."""

from converse_kernel.models.action import (
    ActionDefinition,
    ActionInvocation,
    ActionOrigin,
    ActionResult,
    ExecutorKind,
    ExtractionResult,
    FieldSpec,
    InvocationPayload,
    PeerNode,
)
from converse_kernel.models.config import KernelConfig
from converse_kernel.models.context import (
    ContextFrame,
    ConversationMessage,
    EntityResolution,
    EntityStatus,
    PendingAction,
    UnifiedContext,
)
from converse_kernel.models.turn import TurnResponse, TurnStatus
from converse_kernel.models.workflow import EntityConfig, WorkflowConfig

__all__ = [
    "ActionDefinition",
    "ActionInvocation",
    "ActionOrigin",
    "ActionResult",
    "ContextFrame",
    "ConversationMessage",
    "EntityConfig",
    "EntityResolution",
    "EntityStatus",
    "ExecutorKind",
    "ExtractionResult",
    "FieldSpec",
    "InvocationPayload",
    "KernelConfig",
    "PeerNode",
    "PendingAction",
    "TurnResponse",
    "TurnStatus",
    "UnifiedContext",
    "WorkflowConfig",
]
