"""Unified Context — per-session state plus the call stack for nested workflows."""

from __future__ import annotations

from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from converse_kernel.models.action import ActionInvocation


class EntityStatus(str, Enum):
    UNRESOLVED = "unresolved"
    PENDING = "pending"
    RESOLVED = "resolved"
    MISSING = "missing"
    FAILED = "failed"


# Allowed forward moves. Anything else needs invalidate_entity().
_ENTITY_TRANSITIONS = {
    EntityStatus.UNRESOLVED: {EntityStatus.PENDING, EntityStatus.FAILED},
    EntityStatus.PENDING: {
        EntityStatus.PENDING,
        EntityStatus.RESOLVED,
        EntityStatus.MISSING,
        EntityStatus.FAILED,
    },
    EntityStatus.RESOLVED: set(),
    EntityStatus.MISSING: set(),
    EntityStatus.FAILED: set(),
}


class EntityResolution(BaseModel):
    status: EntityStatus = EntityStatus.UNRESOLVED
    identifier: Any = None
    entity_id: Any = None


class ConversationMessage(BaseModel):
    role: str                               # "user" | "assistant"
    content: str
    timestamp: datetime


_SNAPSHOT = TypeAdapter(Dict[str, Any])


def _dump_snapshot(snapshot: Dict[str, Any]) -> str:
    """
    Encode a frame snapshot the way the context stores encode a session:
    dates and datetimes become ISO strings, anything pydantic cannot
    serialize is refused instead of being stringified.
    """
    try:
        return _SNAPSHOT.dump_json(snapshot).decode()
    except ValueError as e:
        raise ValueError(f"Workflow state is not serializable: {e}") from e


class ContextFrame(BaseModel):
    """Immutable snapshot of a paused workflow, pushed when a sub-workflow starts."""

    model_config = ConfigDict(frozen=True)

    workflow: str
    step: Optional[str] = None
    state_json: str = "{}"
    entity: Optional[str] = None            # Entity the child is creating
    result_keys: Dict[str, str] = {}        # child result key -> parent state key
    pushed_at: datetime


class PendingAction(BaseModel):
    """A direct action waiting for more parameters from the user."""

    invocation: ActionInvocation
    start_index: int = 0


class UnifiedContext(BaseModel):
    """
    Everything the orchestrator remembers about one session.

    Loaded at turn start and written back at turn end. `workflow_state`
    belongs to the workflow run currently on top; a parent's state only
    lives inside its ContextFrame while a child runs.
    """

    session_id: str
    user_id: Any = None
    conversation_history: List[ConversationMessage] = []
    workflow_state: Dict[str, Any] = {}
    current_workflow: Optional[str] = None
    current_step: Optional[str] = None
    entity_states: Dict[str, EntityResolution] = {}
    call_stack: Deque[ContextFrame] = Field(default_factory=deque)
    metadata: Dict[str, Any] = {}
    pending_action: Optional[PendingAction] = None
    history_limit: int = 20

    # --- Conversation ---

    def add_user_message(self, content: str) -> None:
        self._append("user", content)

    def add_assistant_message(self, content: str) -> None:
        self._append("assistant", content)

    def _append(self, role: str, content: str) -> None:
        self.conversation_history.append(
            ConversationMessage(role=role, content=content, timestamp=datetime.utcnow())
        )
        overflow = len(self.conversation_history) - self.history_limit
        if overflow > 0:
            self.conversation_history = self.conversation_history[overflow:]
            if self.pending_action is not None:
                self.pending_action.start_index = max(
                    0, self.pending_action.start_index - overflow
                )

    @property
    def last_user_message(self) -> str:
        for msg in reversed(self.conversation_history):
            if msg.role == "user":
                return msg.content
        return ""

    # --- Workflow state bag ---

    def get(self, key: str, default: Any = None) -> Any:
        return self.workflow_state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.workflow_state[key] = value

    def has(self, key: str) -> bool:
        return self.workflow_state.get(key) is not None

    def forget(self, key: str) -> None:
        self.workflow_state.pop(key, None)

    @property
    def collected_data(self) -> Dict[str, Any]:
        return self.workflow_state.setdefault("collected_data", {})

    # --- Entity resolution state ---

    def entity_state(self, entity: str) -> EntityResolution:
        return self.entity_states.get(entity) or EntityResolution()

    def set_entity_state(
        self,
        entity: str,
        status: EntityStatus,
        identifier: Any = None,
        entity_id: Any = None,
    ) -> EntityResolution:
        current = self.entity_state(entity)
        if status not in _ENTITY_TRANSITIONS[current.status]:
            raise ValueError(
                f"Illegal entity transition for {entity}: "
                f"{current.status.value} -> {status.value}"
            )
        updated = EntityResolution(
            status=status,
            identifier=identifier if identifier is not None else current.identifier,
            entity_id=entity_id if entity_id is not None else current.entity_id,
        )
        self.entity_states[entity] = updated
        return updated

    def invalidate_entity(self, entity: str) -> None:
        """Drop a resolution so the entity can be resolved again."""
        self.entity_states.pop(entity, None)
        self.forget(f"{entity}_id")

    # --- Call stack ---

    @property
    def is_subworkflow(self) -> bool:
        return bool(self.call_stack)

    def push_frame(
        self,
        entity: Optional[str] = None,
        result_keys: Optional[Dict[str, str]] = None,
    ) -> ContextFrame:
        """Snapshot the running workflow onto the call stack."""
        if not self.current_workflow:
            raise ValueError("Cannot push a frame without an active workflow")
        frame = ContextFrame(
            workflow=self.current_workflow,
            step=self.current_step,
            state_json=_dump_snapshot(
                {
                    "workflow_state": self.workflow_state,
                    "entity_states": {
                        k: v.model_dump(mode="json") for k, v in self.entity_states.items()
                    },
                }
            ),
            entity=entity,
            result_keys=result_keys or {},
            pushed_at=datetime.utcnow(),
        )
        self.call_stack.append(frame)
        return frame

    def begin_isolated(self, workflow_id: str, seed: Optional[Dict[str, Any]] = None) -> None:
        """
        Replace the working state with a fresh child state.

        The child only ever sees `seed`; the parent's collected data stays
        in the frame pushed beforehand.
        """
        self.workflow_state = {"collected_data": dict(seed or {})}
        self.entity_states = {}
        self.current_workflow = workflow_id
        self.current_step = None
        self.metadata["is_subworkflow"] = True

    def pop_frame(self) -> ContextFrame:
        """Restore exactly the frame pushed at sub-workflow entry."""
        frame = self.call_stack.pop()
        snapshot = _SNAPSHOT.validate_json(frame.state_json)
        self.workflow_state = snapshot.get("workflow_state", {})
        self.entity_states = {
            k: EntityResolution.model_validate(v)
            for k, v in snapshot.get("entity_states", {}).items()
        }
        self.current_workflow = frame.workflow
        self.current_step = frame.step
        self.metadata["is_subworkflow"] = bool(self.call_stack)
        return frame

    def merge_result(self, frame: ContextFrame, child_data: Any) -> Dict[str, Any]:
        """Copy only the frame's declared result keys from a child's result."""
        merged: Dict[str, Any] = {}
        if not isinstance(child_data, dict):
            return merged
        for child_key, parent_key in frame.result_keys.items():
            if child_key in child_data:
                self.workflow_state[parent_key] = child_data[child_key]
                merged[parent_key] = child_data[child_key]
        return merged

    def clear_workflow(self) -> None:
        self.workflow_state = {}
        self.entity_states = {}
        self.current_workflow = None
        self.current_step = None
        self.call_stack.clear()
        self.metadata.pop("is_subworkflow", None)
        self.metadata.pop("awaiting_confirmation", None)
