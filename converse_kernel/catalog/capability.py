"""
Entity capability surface.

Every creatable domain type implements `EntityCapability`. The catalog,
extractor, resolver and pipeline depend only on this interface, never on
the host's model classes.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from converse_kernel.models.action import FieldSpec


Predicate = Callable[[dict], bool]


_JSON_TYPES = {
    "string": "string",
    "date": "string",
    "entity": "string",
    "number": "number",
    "integer": "integer",
    "boolean": "boolean",
    "array": "array",
}


def _json_schema(spec: FieldSpec) -> dict:
    schema: Dict[str, Any] = {"type": _JSON_TYPES.get(spec.type, "string")}
    if spec.description:
        schema["description"] = spec.description
    if spec.type == "array":
        schema["items"] = {
            "type": "object",
            "properties": {n: _json_schema(s) for n, s in spec.item_structure.items()},
        }
    return schema


class EntityCapability(ABC):
    """What a host type must expose to become invocable from chat."""

    entity_type: str = ""
    label: str = ""
    workflow_id: Optional[str] = None
    search_filter: Optional[Predicate] = None

    @abstractmethod
    def field_schema(self) -> Dict[str, FieldSpec]:
        ...

    @abstractmethod
    def create(self, params: dict, user_id: Any = None) -> dict:
        """Create a record. Raises ValueError when params are unusable."""
        ...

    @abstractmethod
    def search(
        self,
        identifier: str,
        search_fields: Optional[List[str]] = None,
        predicate: Optional[Predicate] = None,
    ) -> List[dict]:
        ...

    @abstractmethod
    def find(self, entity_id: Any) -> Optional[dict]:
        ...

    def critical_fields(self) -> List[str]:
        return []

    def function_schema(self) -> Optional[dict]:
        """Strict parameter schema for schema-constrained extraction, if any."""
        return None

    def required_fields(self) -> List[str]:
        return [name for name, spec in self.field_schema().items() if spec.required]

    def describe(self) -> dict:
        """Capability listing entry, as served to peer nodes."""
        return {
            "entity_type": self.entity_type,
            "label": self.label or self.entity_type,
            "fields": {
                name: spec.model_dump(mode="json")
                for name, spec in self.field_schema().items()
            },
            "required": self.required_fields(),
            "critical": self.critical_fields(),
            "workflow_id": self.workflow_id,
        }


class InMemoryEntityType(EntityCapability):
    """
    Record-list backed capability.

    Matching is exact and case-insensitive over the search fields; ids are
    auto-incrementing integers starting at 1.
    """

    def __init__(
        self,
        entity_type: str,
        fields: Optional[Dict[str, FieldSpec]] = None,
        label: str = "",
        critical: Optional[List[str]] = None,
        workflow_id: Optional[str] = None,
        search_filter: Optional[Predicate] = None,
        strict_schema: bool = False,
        records: Optional[List[dict]] = None,
    ):
        self.entity_type = entity_type
        self.label = label or entity_type.replace("_", " ").title()
        self.workflow_id = workflow_id
        self.search_filter = search_filter
        self._fields = dict(fields or {})
        self._critical = list(critical or [])
        self._strict = strict_schema
        self._records: List[dict] = []
        self._next_id = 1
        for record in records or []:
            self._store(dict(record))

    def _store(self, record: dict) -> dict:
        if record.get("id") is None:
            record["id"] = self._next_id
        if isinstance(record["id"], int) and not isinstance(record["id"], bool):
            self._next_id = max(self._next_id, record["id"] + 1)
        self._records.append(record)
        return record

    @property
    def records(self) -> List[dict]:
        return list(self._records)

    def field_schema(self) -> Dict[str, FieldSpec]:
        return dict(self._fields)

    def critical_fields(self) -> List[str]:
        return list(self._critical)

    def function_schema(self) -> Optional[dict]:
        if not self._strict:
            return None
        fields = self.field_schema()
        return {
            "name": f"extract_{self.entity_type}",
            "description": f"Extract parameters to create a {self.label}",
            "parameters": {
                "type": "object",
                "properties": {n: _json_schema(s) for n, s in fields.items()},
                "required": [],
            },
        }

    def create(self, params: dict, user_id: Any = None) -> dict:
        missing = [f for f in self.required_fields() if params.get(f) in (None, "", [])]
        if missing:
            raise ValueError(
                f"Cannot create {self.entity_type}: missing {', '.join(missing)}"
            )
        record = {k: v for k, v in params.items() if k != "id"}
        if user_id is not None:
            record.setdefault("created_by", user_id)
        return dict(self._store(record))

    def search(
        self,
        identifier: str,
        search_fields: Optional[List[str]] = None,
        predicate: Optional[Predicate] = None,
    ) -> List[dict]:
        needle = str(identifier).strip().lower()
        fields = search_fields or ["name"]
        hits = []
        for record in self._records:
            if self.search_filter and not self.search_filter(record):
                continue
            if predicate and not predicate(record):
                continue
            if any(str(record.get(f, "")).strip().lower() == needle for f in fields):
                hits.append(dict(record))
        return hits

    def find(self, entity_id: Any) -> Optional[dict]:
        for record in self._records:
            if record["id"] == entity_id:
                return dict(record)
        return None


class EntityTypeRegistry:
    """Directory of capabilities, owned by whoever builds the orchestrator."""

    def __init__(self, capabilities: Optional[List[EntityCapability]] = None):
        self._types: Dict[str, EntityCapability] = {}
        for capability in capabilities or []:
            self.register(capability)

    def register(self, capability: EntityCapability) -> None:
        self._types[capability.entity_type] = capability

    def get(self, entity_type: str) -> Optional[EntityCapability]:
        return self._types.get(entity_type)

    def has(self, entity_type: str) -> bool:
        return entity_type in self._types

    def types(self) -> List[str]:
        return list(self._types)

    def describe_all(self) -> List[dict]:
        return [c.describe() for c in self._types.values()]
