"""
Entity Resolver — maps free-text identifiers to concrete records.

Lookup is exact-match over the configured search fields, narrowed by the
caller's filter predicate. The resolver never talks to the user; the
workflow step turns its outcome into a question, a choice or a
sub-workflow.
"""

from enum import Enum
from typing import Any, List, Optional

import structlog
from pydantic import BaseModel

from converse_kernel.catalog.capability import EntityCapability, EntityTypeRegistry
from converse_kernel.models.workflow import EntityConfig
from converse_kernel.workflow.engine import ConfigurationError


logger = structlog.get_logger(__name__)


class ResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    AMBIGUOUS = "ambiguous"
    MISSING = "missing"


class Resolution(BaseModel):
    status: ResolutionStatus
    identifier: Any = None
    record: Optional[dict] = None
    candidates: List[dict] = []

    @property
    def entity_id(self) -> Any:
        return self.record.get("id") if self.record else None


class EntityResolver:
    def __init__(self, entity_types: EntityTypeRegistry):
        self.entity_types = entity_types

    def capability(self, entity: EntityConfig) -> EntityCapability:
        capability = self.entity_types.get(entity.entity_type)
        if capability is None:
            raise ConfigurationError(
                f"Entity {entity.name} is bound to unknown type {entity.entity_type}"
            )
        return capability

    def resolve(self, entity: EntityConfig, identifier: Any) -> Resolution:
        capability = self.capability(entity)
        if isinstance(identifier, int) and not isinstance(identifier, bool):
            record = capability.find(identifier)
            if record is not None:
                return Resolution(
                    status=ResolutionStatus.RESOLVED, identifier=identifier, record=record
                )

        hits = capability.search(str(identifier), entity.search_fields, entity.filter)
        logger.debug(
            "Entity lookup",
            entity=entity.name,
            entity_type=entity.entity_type,
            identifier=identifier,
            hits=len(hits),
        )
        if len(hits) == 1:
            return Resolution(
                status=ResolutionStatus.RESOLVED, identifier=identifier, record=hits[0]
            )
        if hits:
            return Resolution(
                status=ResolutionStatus.AMBIGUOUS, identifier=identifier, candidates=hits
            )
        return Resolution(status=ResolutionStatus.MISSING, identifier=identifier)

    def create(self, entity: EntityConfig, params: dict, user_id: Any = None) -> dict:
        record = self.capability(entity).create(params, user_id=user_id)
        logger.info(
            "Entity created during resolution",
            entity=entity.name,
            entity_type=entity.entity_type,
            entity_id=record.get("id"),
        )
        return record

    def find(self, entity: EntityConfig, entity_id: Any) -> Optional[dict]:
        return self.capability(entity).find(entity_id)

    def describe_candidate(self, entity: EntityConfig, record: dict) -> str:
        name = next(
            (str(record[f]) for f in entity.search_fields if record.get(f)),
            f"#{record.get('id')}",
        )
        extras = [
            f"{f}: {record[f]}" for f in entity.display_fields if record.get(f) not in (None, "")
        ]
        return f"{name} ({', '.join(extras)})" if extras else name
