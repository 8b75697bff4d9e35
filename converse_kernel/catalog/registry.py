"""
Action Catalog — the set of actions the kernel can offer in chat.

Aggregates three origins:
- local entity types exposing the capability surface
- remote peer nodes, via their capability listing
- static definitions registered from configuration

Behavioral Contract:
- Discovery never hard-fails: a broken type or unreachable peer is logged and skipped
- Only pure data is cached (type identifiers, peer listings); schemas derived
  from local capabilities are rebuilt on every access
- Registered definitions overwrite by id (last write wins)
"""

import re
import time
from collections import Counter
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import structlog

from converse_kernel.catalog.capability import EntityCapability, EntityTypeRegistry
from converse_kernel.models.action import (
    ActionDefinition,
    ActionOrigin,
    ExecutorKind,
    FieldSpec,
    PeerNode,
)
from converse_kernel.models.config import KernelConfig
from converse_kernel.peers.transport import PeerTransport


logger = structlog.get_logger(__name__)

CREATION_VERBS = ("create", "add", "new", "make")

_WORD = re.compile(r"[a-z0-9_]+")


def default_triggers(entity_type: str) -> List[str]:
    name = entity_type.replace("_", " ").lower()
    return [name] + [f"{verb} {name}" for verb in ("create", "add", "new")]


class CatalogMatch(NamedTuple):
    definition: ActionDefinition
    triggered: bool


class ActionCatalog:
    """
    Explicitly constructed registry of action definitions.

    One instance is owned by the orchestrator and injected into the
    extractor-facing layers; there is no module-level registry.
    """

    def __init__(
        self,
        entity_types: Optional[EntityTypeRegistry] = None,
        peers: Optional[List[PeerNode]] = None,
        transport: Optional[PeerTransport] = None,
        config: Optional[KernelConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.entity_types = entity_types or EntityTypeRegistry()
        self.peers = list(peers or [])
        self.transport = transport
        self.config = config or KernelConfig()
        self._clock = clock
        self._registered: Dict[str, ActionDefinition] = {}
        self._type_ids: Optional[Tuple[List[str], float]] = None
        self._peer_cache: Dict[str, Tuple[List[ActionDefinition], float]] = {}

    # --- Registration ---

    def register(
        self, action_id: str, definition: Union[ActionDefinition, dict]
    ) -> ActionDefinition:
        """Register (or overwrite) a static definition, filling defaults."""
        if isinstance(definition, ActionDefinition):
            data = definition.model_dump()
        else:
            data = dict(definition)
        data["id"] = action_id
        data.setdefault("origin", ActionOrigin.CONFIG)
        resolved = ActionDefinition.model_validate(data)
        if resolved.entity_type and not resolved.triggers:
            resolved.triggers = default_triggers(resolved.entity_type)
        self._registered[action_id] = resolved
        logger.debug("Action registered", action_id=action_id, executor=resolved.executor.value)
        return resolved

    def register_batch(
        self, definitions: Union[Dict[str, Union[ActionDefinition, dict]], Iterable[ActionDefinition]]
    ) -> List[ActionDefinition]:
        if isinstance(definitions, dict):
            return [self.register(k, v) for k, v in definitions.items()]
        return [self.register(d.id, d) for d in definitions]

    def unregister(self, action_id: str) -> bool:
        return self._registered.pop(action_id, None) is not None

    def clear(self) -> None:
        self._registered.clear()
        self.clear_cache()

    def clear_cache(self) -> None:
        self._type_ids = None
        self._peer_cache.clear()

    # --- Discovery ---

    def discover(self) -> List[ActionDefinition]:
        """All definitions from every origin; static registrations win on id clashes."""
        merged: Dict[str, ActionDefinition] = {}
        for definition in self._local_definitions():
            merged[definition.id] = definition
        for peer in self.peers:
            for definition in self._remote_definitions(peer):
                merged[definition.id] = definition
        merged.update(self._registered)
        return list(merged.values())

    def _local_type_ids(self) -> List[str]:
        now = self._clock()
        if self._type_ids is not None and self._type_ids[1] > now:
            return self._type_ids[0]
        try:
            ids = list(self.entity_types.types())
        except Exception as e:
            logger.warning("Entity type listing failed", error=str(e))
            return []
        self._type_ids = (ids, now + self.config.type_list_ttl_seconds)
        return ids

    def _local_definitions(self) -> List[ActionDefinition]:
        definitions = []
        for entity_type in self._local_type_ids():
            capability = self.entity_types.get(entity_type)
            if capability is None:
                logger.warning("Entity type vanished since listing", entity_type=entity_type)
                continue
            try:
                definitions.append(self._derive_local(capability))
            except Exception as e:
                logger.warning(
                    "Skipping malformed entity type",
                    entity_type=entity_type,
                    error=str(e),
                    exception=type(e).__name__,
                )
        return definitions

    def _derive_local(self, capability: EntityCapability) -> ActionDefinition:
        fields = capability.field_schema()
        executor = ExecutorKind.WORKFLOW if capability.workflow_id else ExecutorKind.LOCAL_CREATE
        return ActionDefinition(
            id=f"create_{capability.entity_type}",
            label=f"Create {capability.label or capability.entity_type}",
            description=f"Create a new {capability.label or capability.entity_type}",
            executor=executor,
            fields=fields,
            required_params=[n for n, s in fields.items() if s.required],
            optional_params=[n for n, s in fields.items() if not s.required],
            critical_fields=capability.critical_fields(),
            triggers=default_triggers(capability.entity_type),
            entity_type=capability.entity_type,
            workflow_id=capability.workflow_id,
            origin=ActionOrigin.LOCAL,
        )

    def _remote_definitions(self, peer: PeerNode) -> List[ActionDefinition]:
        now = self._clock()
        cached = self._peer_cache.get(peer.slug)
        if cached is not None and cached[1] > now:
            return cached[0]
        if self.transport is None:
            return []

        try:
            listing = self.transport.list_capabilities(peer)
        except Exception as e:
            logger.warning(
                "Peer unreachable, skipping",
                peer=peer.slug,
                error=str(e),
                exception=type(e).__name__,
            )
            self._peer_cache[peer.slug] = ([], now + self.config.peer_failure_ttl_seconds)
            return []

        definitions = []
        for entry in listing:
            try:
                definitions.append(self._derive_remote(peer, entry))
            except Exception as e:
                logger.warning(
                    "Skipping malformed peer capability",
                    peer=peer.slug,
                    entry=entry.get("entity_type"),
                    error=str(e),
                )
        self._peer_cache[peer.slug] = (definitions, now + self.config.peer_ttl_seconds)
        logger.info("Peer capabilities loaded", peer=peer.slug, count=len(definitions))
        return definitions

    def _derive_remote(self, peer: PeerNode, entry: dict) -> ActionDefinition:
        entity_type = entry["entity_type"]
        fields = {
            name: FieldSpec.model_validate(spec)
            for name, spec in (entry.get("fields") or {}).items()
        }
        required = entry.get("required") or [n for n, s in fields.items() if s.required]
        label = entry.get("label") or entity_type
        return ActionDefinition(
            id=f"{peer.slug}.create_{entity_type}",
            label=f"Create {label} on {peer.name}",
            description=f"Create a {label} on {peer.name}",
            executor=ExecutorKind.REMOTE_CREATE,
            fields=fields,
            required_params=list(required),
            optional_params=[n for n in fields if n not in required],
            critical_fields=list(entry.get("critical") or []),
            triggers=default_triggers(entity_type),
            entity_type=entity_type,
            peer=peer,
            origin=ActionOrigin.REMOTE,
        )

    # --- Lookup ---

    def get(self, action_id: str) -> Optional[ActionDefinition]:
        if action_id in self._registered:
            return self._registered[action_id]
        for definition in self.discover():
            if definition.id == action_id:
                return definition
        return None

    def has(self, action_id: str) -> bool:
        return self.get(action_id) is not None

    def get_enabled(self) -> List[ActionDefinition]:
        return [d for d in self.discover() if d.enabled]

    def get_by_origin(self, origin: ActionOrigin) -> List[ActionDefinition]:
        return [d for d in self.discover() if d.origin == origin]

    def find_by_trigger(self, keyword: str) -> List[ActionDefinition]:
        needle = keyword.strip().lower()
        return [
            d for d in self.get_enabled()
            if any(t.lower() == needle for t in d.triggers)
        ]

    def find_by_entity_type(self, entity_type: str) -> List[ActionDefinition]:
        return [d for d in self.discover() if d.entity_type == entity_type]

    def match(self, message: str) -> List[CatalogMatch]:
        """
        Narrow the catalog to candidates for a message.

        Trigger phrases matched on word boundaries come first; otherwise a
        creation verb plus the entity keyword (or its plural) qualifies.
        """
        text = message.lower()
        words = set(_WORD.findall(text))
        triggered, keyword = [], []
        for definition in self.get_enabled():
            if any(_contains_phrase(text, t) for t in definition.triggers):
                triggered.append(CatalogMatch(definition, True))
                continue
            if definition.entity_type and words.intersection(CREATION_VERBS):
                name = definition.entity_type.lower()
                if name in words or f"{name}s" in words:
                    keyword.append(CatalogMatch(definition, False))
        return triggered + keyword

    def get_statistics(self) -> dict:
        definitions = self.discover()
        by_origin = Counter(d.origin.value for d in definitions)
        return {
            "total": len(definitions),
            "enabled": sum(1 for d in definitions if d.enabled),
            "local": by_origin.get(ActionOrigin.LOCAL.value, 0),
            "remote": by_origin.get(ActionOrigin.REMOTE.value, 0),
            "by_origin": dict(by_origin),
            "by_executor": dict(Counter(d.executor.value for d in definitions)),
        }


def _contains_phrase(text: str, phrase: str) -> bool:
    phrase = phrase.strip().lower()
    if not phrase:
        return False
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None
