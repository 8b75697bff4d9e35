"""
Auto-step generator — builds a fixed-shape workflow from a WorkflowConfig.

Topology (one resolve step per declared entity, in order):

    collect_data -> resolve_<entity>... -> collect_array_item_fields
        -> [confirm_action] -> execute_final_action -> complete | error

Every failure transition goes straight to `error`; nothing loops on a
failed step.
"""

import json
import re
from typing import Any, Callable, Dict, List, Optional

import structlog

from converse_kernel.catalog.capability import EntityCapability
from converse_kernel.extraction.extractor import ParameterExtractor, is_filled
from converse_kernel.llm.client import parse_json_object
from converse_kernel.models.action import ActionResult, FieldSpec
from converse_kernel.models.context import EntityStatus, UnifiedContext
from converse_kernel.models.workflow import EntityConfig, WorkflowConfig
from converse_kernel.resolution.resolver import EntityResolver, ResolutionStatus
from converse_kernel.workflow.engine import ENTER_SUBWORKFLOW, JUMP_TO
from converse_kernel.workflow.steps import COMPLETE, ERROR, Workflow, WorkflowStep
from converse_kernel.workflow.summary import CONFIRM_PROMPT, SummaryRenderer


logger = structlog.get_logger(__name__)

YES_WORDS = {"yes", "y", "yeah", "yep", "confirm", "ok", "okay", "sure", "proceed"}
NO_WORDS = {"no", "n", "nope", "cancel", "stop", "abort"}
DEFAULT_ITEM_NAMES = ["name", "product", "item"]

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def _label(name: str) -> str:
    return name.replace("_", " ")


def _answer(message: str) -> str:
    return message.strip().lower().rstrip(".!")


def coerce_value(text: str, spec: FieldSpec) -> Any:
    """Turn a typed answer into the field's declared type."""
    text = text.strip()
    if spec.type in ("number", "integer"):
        match = _NUMBER.search(text.replace(",", ""))
        if match is None:
            raise ValueError(f"'{text}' is not a number")
        value = float(match.group())
        if spec.type == "integer" or value.is_integer():
            return int(value)
        return value
    if spec.type == "boolean":
        return _answer(text) in YES_WORDS or _answer(text) == "true"
    return text


class AutoStepWorkflow(Workflow):
    def __init__(
        self,
        config: WorkflowConfig,
        extractor: ParameterExtractor,
        resolver: EntityResolver,
        renderer: Optional[SummaryRenderer] = None,
    ):
        self.config = config
        self.extractor = extractor
        self.resolver = resolver
        self.renderer = renderer or SummaryRenderer()
        self._entity_fields = {e.field for e in config.entities}

        names = ["collect_data"]
        names += [f"resolve_{e.name}" for e in config.entities]
        names.append("collect_array_item_fields")
        if config.confirm_before_complete:
            names.append("confirm_action")
        names.append("execute_final_action")

        handlers: Dict[str, Callable] = {
            "collect_data": self.collect_data,
            "collect_array_item_fields": self.collect_array_item_fields,
            "confirm_action": self.confirm_action,
            "execute_final_action": self.execute_final_action,
        }
        for entity in config.entities:
            handlers[f"resolve_{entity.name}"] = self._resolve_step(entity)

        steps = []
        for i, name in enumerate(names):
            target = names[i + 1] if i + 1 < len(names) else COMPLETE
            steps.append(WorkflowStep(name, handlers[name], on_success=target, on_failure=ERROR))
        super().__init__(config.id, steps, goal=config.goal, description=config.description)

    # --- Shared helpers ---

    def _scalar_fields(self) -> Dict[str, FieldSpec]:
        return {
            name: spec for name, spec in self.config.fields.items()
            if spec.type not in ("array", "entity") and name not in self._entity_fields
        }

    def _array_fields(self) -> Dict[str, FieldSpec]:
        return {n: s for n, s in self.config.fields.items() if s.type == "array"}

    def _entity_for(self, field: str) -> Optional[EntityConfig]:
        return next((e for e in self.config.entities if e.field == field), None)

    def _question(self, name: str) -> str:
        spec = self.config.fields.get(name)
        if spec is not None and spec.prompt:
            return spec.prompt
        entity = self._entity_for(name)
        if entity is not None:
            return entity.prompt or f"Which {_label(entity.name)} is this for?"
        if spec is not None and spec.type == "array":
            return f"What {_label(name)} would you like to include?"
        return f"What is the {_label(name)}?"

    def _ask(self, context: UnifiedContext, field: str) -> ActionResult:
        context.set("awaiting_field", field)
        return ActionResult.needs_input(self._question(field), metadata={"field": field})

    def _fill(self, context: UnifiedContext, extracted: dict) -> List[str]:
        data = context.collected_data
        filled = []
        for key, value in extracted.items():
            if not is_filled(data.get(key)):
                data[key] = value
                filled.append(key)
        return filled

    def _absorb(self, context: UnifiedContext, message: Optional[str]) -> None:
        """Interpret a reply to the field we last asked about."""
        awaiting = context.get("awaiting_field")
        if not awaiting or not message:
            return
        context.forget("awaiting_field")
        extracted = self.extractor.extract_fields(message, self.config.fields, self.config.goal)
        filled = self._fill(context, extracted)
        spec = self.config.fields.get(awaiting, FieldSpec())
        if awaiting not in filled and spec.type != "array":
            try:
                context.collected_data[awaiting] = coerce_value(message, spec)
            except ValueError:
                context.set("awaiting_field", awaiting)
        logger.debug(
            "Answer interpreted",
            workflow=self.id,
            awaiting=awaiting,
            filled=filled,
        )

    def _mark(
        self,
        context: UnifiedContext,
        slot: str,
        status: EntityStatus,
        identifier: Any = None,
        entity_id: Any = None,
    ) -> None:
        current = context.entity_state(slot).status
        if current == status and status != EntityStatus.PENDING:
            return
        if current == EntityStatus.UNRESOLVED and status != EntityStatus.PENDING:
            context.set_entity_state(slot, EntityStatus.PENDING, identifier=identifier)
        context.set_entity_state(slot, status, identifier=identifier, entity_id=entity_id)

    def _forget_slot(self, context: UnifiedContext, slot: str) -> None:
        context.invalidate_entity(slot)
        context.forget(f"{slot}_candidates")
        context.forget(f"{slot}_confirm_create")

    def _reset_entity(self, context: UnifiedContext, entity: EntityConfig) -> None:
        """Drop every resolution of an entity, including per-item slots of a list."""
        self._forget_slot(context, entity.name)
        if not entity.multiple:
            return
        prefix = f"{entity.name}["
        for slot in [s for s in context.entity_states if s.startswith(prefix)]:
            self._forget_slot(context, slot)
        context.forget(f"{entity.name}_rename")
        items = context.collected_data.get(entity.field)
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict):
                    item.pop(entity.id_key, None)

    # --- collect_data ---

    def collect_data(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        if message:
            if context.get("awaiting_field"):
                self._absorb(context, message)
            elif not context.get("extraction_done"):
                extracted = self.extractor.extract_fields(
                    message, self.config.fields, self.config.goal
                )
                self._fill(context, extracted)
                context.set("extraction_done", True)

        data = context.collected_data
        for name, spec in self._scalar_fields().items():
            if spec.required and not is_filled(data.get(name)):
                return self._ask(context, name)
        return ActionResult.succeeded("Collected required fields")

    # --- resolve_<entity> ---

    def _resolve_step(self, entity: EntityConfig) -> Callable:
        def execute(context: UnifiedContext, message: Optional[str]) -> ActionResult:
            if entity.multiple:
                return self._resolve_many(entity, context, message)
            return self._resolve_one(entity, context, message)
        return execute

    def _resolve_one(
        self, entity: EntityConfig, context: UnifiedContext, message: Optional[str]
    ) -> ActionResult:
        slot = entity.name
        self._absorb(context, message)
        state = context.entity_state(slot)
        bound = context.get(entity.id_key)

        if state.status == EntityStatus.RESOLVED:
            return ActionResult.succeeded(f"{entity.name} resolved", data={"id": state.entity_id})
        if isinstance(bound, int) and not isinstance(bound, bool):
            self._mark(context, slot, EntityStatus.RESOLVED, entity_id=bound)
            return ActionResult.succeeded(f"{entity.name} already bound", data={"id": bound})
        if state.status == EntityStatus.FAILED:
            return ActionResult.failed(f"Could not resolve {_label(entity.name)}")

        identifier = context.collected_data.get(entity.field)
        if state.status == EntityStatus.MISSING:
            if not is_filled(identifier):
                return self._ask(context, entity.field)
            context.invalidate_entity(slot)

        def bind(record: dict) -> None:
            context.set(entity.id_key, record["id"])

        def reject() -> ActionResult:
            context.collected_data.pop(entity.field, None)
            context.set("awaiting_field", entity.field)
            return ActionResult.needs_input(
                f"Please provide a different {_label(entity.name)} name."
            )

        if not context.get(f"{slot}_candidates") and not context.get(f"{slot}_confirm_create"):
            if not is_filled(identifier):
                return self._ask(context, entity.field)

        outcome = self._resolve_slot(
            entity, context, message, slot, identifier, bind, reject, entity.merge_keys()
        )
        if outcome is not None:
            return outcome
        if context.entity_state(slot).status == EntityStatus.MISSING:
            context.collected_data.pop(entity.field, None)
            context.set("awaiting_field", entity.field)
            return ActionResult.needs_input(
                f"I couldn't find a {_label(entity.name)} named '{identifier}'. "
                "Please provide another name."
            )
        return ActionResult.succeeded(
            f"{entity.name} resolved", data={"id": context.get(entity.id_key)}
        )

    def _resolve_many(
        self, entity: EntityConfig, context: UnifiedContext, message: Optional[str]
    ) -> ActionResult:
        self._absorb(context, message)
        items = context.collected_data.get(entity.field)
        if not isinstance(items, list) or not items:
            return self._ask(context, entity.field)

        rename = context.get(f"{entity.name}_rename")
        if rename is not None and message:
            context.forget(f"{entity.name}_rename")
            item = items[rename]
            key = next((f for f in entity.item_name_fields if is_filled(item.get(f))), "name")
            item[key] = message.strip()
            context.invalidate_entity(f"{entity.name}[{rename}]")
            message = None

        for index, item in enumerate(items):
            if not isinstance(item, dict) or is_filled(item.get(entity.id_key)):
                continue
            slot = f"{entity.name}[{index}]"
            identifier = next(
                (item[f] for f in entity.item_name_fields if is_filled(item.get(f))), None
            )
            state = context.entity_state(slot)
            if state.status == EntityStatus.RESOLVED and state.identifier not in (None, identifier):
                # the item at this position was replaced since it was resolved
                self._forget_slot(context, slot)
                state = context.entity_state(slot)
            if state.status == EntityStatus.RESOLVED:
                self._fill_item(entity, item, state.entity_id)
                continue
            if state.status == EntityStatus.FAILED:
                return ActionResult.failed(f"Could not resolve {_label(entity.name)} #{index + 1}")
            if state.status == EntityStatus.MISSING:
                context.set(f"{entity.name}_rename", index)
                return ActionResult.needs_input(
                    f"I still need the correct name for '{state.identifier}'."
                )

            if identifier is None:
                continue

            def bind(record: dict, _item: dict = item) -> None:
                self._fill_item(entity, _item, record["id"], record)

            def reject(_index: int = index) -> ActionResult:
                del items[_index]
                context.invalidate_entity(f"{entity.name}[{_index}]")
                return self._resolve_many(entity, context, None)

            outcome = self._resolve_slot(
                entity, context, message, slot, identifier, bind, reject, {}
            )
            message = None
            if outcome is not None:
                return outcome
            if context.entity_state(slot).status == EntityStatus.MISSING:
                context.set(f"{entity.name}_rename", index)
                return ActionResult.needs_input(
                    f"I couldn't find a {_label(entity.name)} named '{identifier}'. "
                    "What is the correct name for that item?"
                )
        return ActionResult.succeeded(f"All {_label(entity.field)} resolved")

    def _fill_item(
        self, entity: EntityConfig, item: dict, entity_id: Any, record: Optional[dict] = None
    ) -> None:
        item[entity.id_key] = entity_id
        if entity.required_item_fields and record is None:
            record = self.resolver.find(entity, entity_id)
        for field in entity.required_item_fields:
            if not is_filled(item.get(field)) and record and is_filled(record.get(field)):
                item[field] = record[field]

    def _resolve_slot(
        self,
        entity: EntityConfig,
        context: UnifiedContext,
        message: Optional[str],
        slot: str,
        identifier: Any,
        bind: Callable[[dict], None],
        reject: Callable[[], ActionResult],
        result_keys: Dict[str, str],
    ) -> Optional[ActionResult]:
        """
        Resolve one slot. Returns None once the slot is bound or marked
        missing, otherwise the result to hand back to the user.
        """
        choices_key, confirm_key = f"{slot}_candidates", f"{slot}_confirm_create"

        choices = context.get(choices_key)
        if choices:
            picked = self._pick(choices, message) if message else None
            if picked is None:
                return self._choice_question(entity, identifier, choices)
            context.forget(choices_key)
            record = self.resolver.find(entity, picked["id"]) or {"id": picked["id"]}
            bind(record)
            self._mark(context, slot, EntityStatus.RESOLVED, entity_id=record["id"])
            return None

        if context.get(confirm_key):
            if not message:
                return self._create_question(entity, identifier)
            context.forget(confirm_key)
            if _answer(message) in YES_WORDS:
                return self._create(entity, context, slot, identifier, bind, result_keys)
            return reject()

        resolution = self.resolver.resolve(entity, identifier)
        self._mark(context, slot, EntityStatus.PENDING, identifier=identifier)

        if resolution.status == ResolutionStatus.RESOLVED:
            bind(resolution.record)
            self._mark(context, slot, EntityStatus.RESOLVED, entity_id=resolution.entity_id)
            return None

        if resolution.status == ResolutionStatus.AMBIGUOUS:
            choices = [
                {"id": r["id"], "label": self.resolver.describe_candidate(entity, r)}
                for r in resolution.candidates
            ]
            context.set(choices_key, choices)
            return self._choice_question(entity, identifier, choices)

        if entity.subworkflow or entity.auto_create:
            if entity.confirm_before_create:
                context.set(confirm_key, True)
                return self._create_question(entity, identifier)
            return self._create(entity, context, slot, identifier, bind, result_keys)

        self._mark(context, slot, EntityStatus.MISSING, identifier=identifier)
        logger.info("Entity not found", entity=entity.name, identifier=identifier)
        return None

    def _create(
        self,
        entity: EntityConfig,
        context: UnifiedContext,
        slot: str,
        identifier: Any,
        bind: Callable[[dict], None],
        result_keys: Dict[str, str],
    ) -> Optional[ActionResult]:
        seed = {}
        for child_field, source in entity.seed_fields.items():
            value = identifier if source == "identifier" else context.collected_data.get(source)
            if is_filled(value):
                seed[child_field] = value

        if entity.subworkflow:
            return ActionResult.needs_input(
                f"Let's create the {_label(entity.name)} '{identifier}'.",
                metadata={
                    ENTER_SUBWORKFLOW: {
                        "workflow": entity.subworkflow,
                        "seed": seed,
                        "entity": slot,
                        "result_keys": result_keys,
                    }
                },
            )
        record = self.resolver.create(entity, seed, user_id=context.user_id)
        bind(record)
        self._mark(context, slot, EntityStatus.RESOLVED, entity_id=record["id"])
        return None

    def _pick(self, choices: List[dict], message: str) -> Optional[dict]:
        answer = message.strip()
        if answer.isdigit():
            index = int(answer) - 1
            return choices[index] if 0 <= index < len(choices) else None
        exact = [c for c in choices if c["label"].lower() == answer.lower()]
        return exact[0] if len(exact) == 1 else None

    def _choice_question(
        self, entity: EntityConfig, identifier: Any, choices: List[dict]
    ) -> ActionResult:
        lines = [f"I found {len(choices)} {_label(entity.name)} records matching '{identifier}'. Which one did you mean?"]
        lines += [f"{i}. {c['label']}" for i, c in enumerate(choices, 1)]
        lines.append("Reply with the number or the exact name.")
        return ActionResult.needs_input("\n".join(lines), data={"candidates": choices})

    def _create_question(self, entity: EntityConfig, identifier: Any) -> ActionResult:
        return ActionResult.needs_input(
            f"I couldn't find a {_label(entity.name)} named '{identifier}'. "
            "Would you like to create it? (yes/no)"
        )

    # --- collect_array_item_fields ---

    def _required_item_fields(self, name: str, spec: FieldSpec) -> List[str]:
        required = [f for f, s in spec.item_structure.items() if s.required]
        entity = self._entity_for(name)
        if entity is not None:
            required += [f for f in entity.required_item_fields if f not in required]
        return required

    def _item_spec(self, name: str, item_field: str) -> FieldSpec:
        spec = self.config.fields[name].item_structure.get(item_field)
        if spec is not None:
            return spec
        # fields required from the bound record type use that type's schema
        entity = self._entity_for(name)
        if entity is not None:
            return self.resolver.capability(entity).field_schema().get(item_field, FieldSpec())
        return FieldSpec()

    def collect_array_item_fields(
        self, context: UnifiedContext, message: Optional[str]
    ) -> ActionResult:
        self._absorb(context, message)
        data = context.collected_data
        cursor = context.get("item_cursor")

        if cursor and message:
            spec = self._item_spec(cursor["field"], cursor["item_field"])
            try:
                value = coerce_value(message, spec)
            except ValueError:
                return ActionResult.needs_input(
                    f"Please enter a number for the {_label(cursor['item_field'])}.",
                    metadata={"cursor": cursor},
                )
            data[cursor["field"]][cursor["index"]][cursor["item_field"]] = value
            context.forget("item_cursor")

        for name, spec in self._array_fields().items():
            items = data.get(name)
            if not isinstance(items, list) or not items:
                if spec.required:
                    return self._ask(context, name)
                continue
            entity = self._entity_for(name)
            name_fields = entity.item_name_fields if entity else DEFAULT_ITEM_NAMES
            required = self._required_item_fields(name, spec)
            for index, item in enumerate(items):
                for item_field in required:
                    if is_filled(item.get(item_field)):
                        continue
                    item_name = next(
                        (item[f] for f in name_fields if is_filled(item.get(f))),
                        f"item {index + 1}",
                    )
                    cursor = {"field": name, "index": index, "item_field": item_field}
                    context.set("item_cursor", cursor)
                    return ActionResult.needs_input(
                        f"What is the {_label(item_field)} for the {item_name}?",
                        metadata={"cursor": cursor},
                    )
        return ActionResult.succeeded("All item fields collected")

    # --- confirm_action ---

    def _summary(self, context: UnifiedContext, prefix: str = "") -> ActionResult:
        context.metadata["awaiting_confirmation"] = True
        summary = self.renderer.render(self.config.goal, context.collected_data)
        return ActionResult.needs_input(
            f"{prefix}{summary}\n\n{CONFIRM_PROMPT}",
            data=dict(context.collected_data),
        )

    def confirm_action(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        if not context.metadata.get("awaiting_confirmation") or not message:
            return self._summary(context)

        answer = _answer(message)
        if answer in YES_WORDS:
            context.metadata.pop("awaiting_confirmation", None)
            return ActionResult.succeeded("Confirmed by user")
        if answer in NO_WORDS:
            context.metadata.pop("awaiting_confirmation", None)
            return ActionResult.failed("Action cancelled by user", metadata={"cancelled": True})

        changed = self._apply_changes(context, message)
        if not changed:
            return ActionResult.needs_input(f"Sorry, I didn't catch that. {CONFIRM_PROMPT}")

        touched = [e for e in self.config.entities if e.field in changed]
        if touched:
            for entity in touched:
                self._reset_entity(context, entity)
            context.metadata.pop("awaiting_confirmation", None)
            return ActionResult.needs_input(
                "Updated.", metadata={JUMP_TO: f"resolve_{touched[0].name}"}
            )
        return self._summary(context, prefix="Updated. ")

    def _apply_changes(self, context: UnifiedContext, message: str) -> List[str]:
        """Best-effort AI reading of 'change X to Y' / 'remove X'."""
        data = context.collected_data
        prompt = (
            f"The user is reviewing this {self.config.goal} before confirming:\n"
            f"{json.dumps(data, default=str)}\n\n"
            f"Allowed fields: {', '.join(self.config.fields)}\n"
            f"User said: {message}\n\n"
            'Respond with JSON {"updates": {field: new value}, "remove": [field]}. '
            "Only include changes the user explicitly asked for."
        )
        try:
            raw = self.extractor.llm.complete(prompt, max_tokens=self.extractor.config.extraction_max_tokens)
        except Exception as e:
            logger.warning("Change interpretation failed", workflow=self.id, error=str(e))
            return []
        parsed = parse_json_object(raw)
        changed = []
        updates = parsed.get("updates") if isinstance(parsed.get("updates"), dict) else {}
        for key, value in updates.items():
            if key in self.config.fields and is_filled(value):
                data[key] = value
                changed.append(key)
        for key in parsed.get("remove") or []:
            if key in data and not self.config.fields.get(key, FieldSpec()).required:
                data.pop(key)
                changed.append(key)
        return changed

    # --- execute_final_action ---

    def execute_final_action(self, context: UnifiedContext, message: Optional[str]) -> ActionResult:
        final = self.config.final_action
        if final is None:
            return ActionResult.succeeded(
                f"{self.config.goal} completed", data=dict(context.collected_data)
            )
        outcome = final(context)
        if isinstance(outcome, ActionResult):
            return outcome
        return ActionResult.succeeded(f"{self.config.goal} completed", data=outcome)


def creation_workflow(
    capability: EntityCapability,
    extractor: ParameterExtractor,
    resolver: EntityResolver,
    renderer: Optional[SummaryRenderer] = None,
    workflow_id: Optional[str] = None,
    confirm: bool = False,
) -> AutoStepWorkflow:
    """A guided 'create <type>' workflow derived from a capability schema."""
    fields = capability.field_schema()
    label = capability.label or capability.entity_type

    def create(context: UnifiedContext) -> ActionResult:
        params = {k: v for k, v in context.collected_data.items() if k in fields}
        record = capability.create(params, user_id=context.user_id)
        return ActionResult.succeeded(f"{label} created", data=record)

    config = WorkflowConfig(
        id=workflow_id or f"create_{capability.entity_type}",
        goal=f"Create {label}",
        fields=fields,
        confirm_before_complete=confirm,
        final_action=create,
    )
    return AutoStepWorkflow(config, extractor, resolver, renderer)
