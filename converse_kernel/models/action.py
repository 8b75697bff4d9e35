"""Action models — definitions, extraction output, invocations and results."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class ExecutorKind(str, Enum):
    LOCAL_CREATE = "local_create"     # Bound entity type's create() in this process
    REMOTE_CREATE = "remote_create"   # Delegated to the owning peer node
    WORKFLOW = "workflow"             # Hand-off to a guided workflow
    CUSTOM = "custom"                 # Registered callable


class ActionOrigin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"
    CONFIG = "config"


class FieldSpec(BaseModel):
    """Declared shape of a single parameter."""

    type: str = "string"            # string | number | integer | boolean | date | array | entity
    required: bool = False
    description: str = ""
    prompt: Optional[str] = None
    item_structure: Dict[str, "FieldSpec"] = {}
    examples: List[Any] = []
    alternative_fields: List[str] = []
    hint: Optional[str] = None


class PeerNode(BaseModel):
    """A remote node that exposes its own entity types."""

    slug: str
    name: str
    url: str


class ActionDefinition(BaseModel):
    """
    Catalog entry for one invocable action.

    `required_params` is normalised against `fields`: every required param
    is a declared field marked required, so callers never see a required
    param the schema does not know about.
    """

    id: str
    label: str = ""
    description: str = ""
    executor: ExecutorKind = ExecutorKind.CUSTOM
    fields: Dict[str, FieldSpec] = {}
    required_params: List[str] = []
    optional_params: List[str] = []
    critical_fields: List[str] = []
    extraction_hints: Dict[str, str] = {}
    triggers: List[str] = []
    entity_type: Optional[str] = None
    peer: Optional[PeerNode] = None
    workflow_id: Optional[str] = None
    handler: Optional[str] = None
    origin: ActionOrigin = ActionOrigin.CONFIG
    enabled: bool = True
    version: str = "1.0.0"

    @model_validator(mode="after")
    def _normalise_required(self) -> "ActionDefinition":
        if not self.label:
            self.label = self.id
        for name in self.required_params:
            spec = self.fields.get(name)
            if spec is None:
                self.fields[name] = FieldSpec(required=True)
            elif not spec.required:
                self.fields[name] = spec.model_copy(update={"required": True})
        return self

    @property
    def is_remote(self) -> bool:
        return self.origin == ActionOrigin.REMOTE


class ExtractionResult(BaseModel):
    """Structured arguments pulled from a message for one action."""

    params: Dict[str, Any] = {}
    missing: List[str] = []
    confidence: float = Field(ge=0.0, le=1.0, default=0.0)
    duration_ms: int = 0

    @property
    def is_complete(self) -> bool:
        return not self.missing

    @property
    def has_high_confidence(self) -> bool:
        return self.confidence >= 0.8


class InvocationPayload(BaseModel):
    params: Dict[str, Any] = {}
    ready: bool = False
    missing: List[str] = []
    confidence: float = 0.0


class ActionInvocation(BaseModel):
    """A concrete request to run one catalog action."""

    action_id: str
    type: ExecutorKind
    label: str
    payload: InvocationPayload = InvocationPayload()

    @classmethod
    def from_extraction(
        cls, definition: ActionDefinition, extraction: ExtractionResult
    ) -> "ActionInvocation":
        return cls(
            action_id=definition.id,
            type=definition.executor,
            label=definition.label,
            payload=InvocationPayload(
                params=extraction.params,
                ready=extraction.is_complete,
                missing=extraction.missing,
                confidence=extraction.confidence,
            ),
        )


class ActionResult(BaseModel):
    """
    Standard outcome of any step, executor or pipeline run.

    A success always carries a message; a failure always carries a
    non-empty error. `needs_user_input` marks a paused interaction: it is
    not a failure, and its message is the question to ask.
    """

    success: bool
    message: Optional[str] = None
    data: Any = None
    error: Optional[str] = None
    needs_user_input: bool = False
    metadata: Dict[str, Any] = {}
    duration_ms: Optional[int] = None
    action_id: Optional[str] = None
    action_type: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "ActionResult":
        if self.success and self.message is None:
            raise ValueError("successful ActionResult requires a message")
        if not self.success and not self.needs_user_input and not self.error:
            raise ValueError("failed ActionResult requires a non-empty error")
        return self

    @classmethod
    def succeeded(
        cls, message: str, data: Any = None, metadata: Optional[dict] = None
    ) -> "ActionResult":
        return cls(success=True, message=message, data=data, metadata=metadata or {})

    @classmethod
    def failed(
        cls, error: str, data: Any = None, metadata: Optional[dict] = None
    ) -> "ActionResult":
        return cls(
            success=False,
            error=error or "Unknown error",
            data=data,
            metadata=metadata or {},
        )

    @classmethod
    def needs_input(
        cls, message: str, data: Any = None, metadata: Optional[dict] = None
    ) -> "ActionResult":
        return cls(
            success=False,
            needs_user_input=True,
            message=message,
            data=data,
            metadata=metadata or {},
        )

    def with_duration(self, duration_ms: int) -> "ActionResult":
        self.duration_ms = duration_ms
        return self

    def with_action_info(self, action_id: str, action_type: str) -> "ActionResult":
        self.action_id = action_id
        self.action_type = action_type
        return self

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


FieldSpec.model_rebuild()
