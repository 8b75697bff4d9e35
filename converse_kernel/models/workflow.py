"""Declarative workflow configuration — the input to the auto-step generator."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from converse_kernel.models.action import FieldSpec


class EntityConfig(BaseModel):
    """
    How one referenced entity is resolved inside a workflow.

    `name` keys the resolution state and the `<name>_id` slot in the
    workflow state. `identifier_field` is the collected field holding the
    free-text identifier (a string, or a list of item dicts when
    `multiple` is set).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    entity_type: str
    identifier_field: Optional[str] = None
    search_fields: List[str] = ["name"]
    multiple: bool = False
    item_name_fields: List[str] = ["name", "product", "item"]
    required_item_fields: List[str] = []
    subworkflow: Optional[str] = None
    seed_fields: Dict[str, str] = {"name": "identifier"}   # child field -> source
    result_keys: Dict[str, str] = {}                       # child result key -> parent key
    confirm_before_create: bool = False
    auto_create: bool = False
    prompt: Optional[str] = None
    display_fields: List[str] = []
    filter: Optional[Callable[[dict], bool]] = None

    @property
    def field(self) -> str:
        return self.identifier_field or self.name

    @property
    def id_key(self) -> str:
        return f"{self.name}_id"

    def merge_keys(self) -> Dict[str, str]:
        return self.result_keys or {"id": self.id_key}


class WorkflowConfig(BaseModel):
    """Everything the auto-step generator needs to build a workflow."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    goal: str
    description: str = ""
    fields: Dict[str, FieldSpec] = {}
    entities: List[EntityConfig] = []
    confirm_before_complete: bool = False
    final_action: Optional[Callable[..., Any]] = None
