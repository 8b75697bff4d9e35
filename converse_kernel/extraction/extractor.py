"""
Parameter Extractor — turns a message into arguments for one action.

Behavioral Contract:
- A brand-new invocation sees only the current message; a pending-action
  modification sees history from that action's start index forward
- Extract only what is stated: unknown keys are dropped, empty values omitted
- Model failures are logged and treated as an empty extraction, never raised
- confidence is 0 when nothing was extracted
"""

import json
import time
from typing import Any, Dict, List, Optional

import structlog

from converse_kernel.catalog.capability import EntityTypeRegistry
from converse_kernel.llm.client import LanguageModel, parse_json_object
from converse_kernel.models.action import ActionDefinition, ExtractionResult, FieldSpec
from converse_kernel.models.config import KernelConfig
from converse_kernel.models.context import PendingAction, UnifiedContext


logger = structlog.get_logger(__name__)

SYSTEM_PROMPT = (
    "You extract structured parameters from user messages for a business "
    "application. Respond with a single JSON object and nothing else."
)

CRITICAL_INSTRUCTIONS = """CRITICAL INSTRUCTIONS:
- Extract ONLY values the user explicitly stated. Never guess or invent values.
- Omit any field that was not mentioned. Do not output null placeholders.
- Use the exact field names listed above.
- For list fields, return an array of objects using the item field names.
- Numbers must be plain numbers without currency symbols or separators."""


def is_filled(value: Any) -> bool:
    return value not in (None, "", [], {})


def describe_fields(fields: Dict[str, FieldSpec], indent: str = "") -> List[str]:
    lines = []
    for name, spec in fields.items():
        flag = "required" if spec.required else "optional"
        line = f"{indent}- {name} ({spec.type}, {flag})"
        if spec.description:
            line += f": {spec.description}"
        if spec.hint:
            line += f" Hint: {spec.hint}"
        lines.append(line)
        if spec.item_structure:
            lines.append(f"{indent}  Each item has:")
            lines.extend(describe_fields(spec.item_structure, indent + "    "))
    return lines


def _example(fields: Dict[str, FieldSpec]) -> Optional[dict]:
    example = {}
    for name, spec in fields.items():
        if spec.examples:
            example[name] = spec.examples[0]
        elif spec.item_structure and any(s.examples for s in spec.item_structure.values()):
            example[name] = [_example(spec.item_structure)]
    return example or None


def build_prompt(
    text: str,
    fields: Dict[str, FieldSpec],
    label: str,
    hints: Optional[Dict[str, str]] = None,
) -> str:
    parts = [f"Extract parameters for: {label}", "", "Fields:"]
    parts.extend(describe_fields(fields))
    if hints:
        parts.append("")
        parts.append("Hints:")
        parts.extend(f"- {name}: {hint}" for name, hint in hints.items())
    example = _example(fields)
    if example:
        parts.append("")
        parts.append(f"Example output: {json.dumps(example)}")
    parts.extend(["", CRITICAL_INSTRUCTIONS, "", "Conversation:", text, "", "JSON:"])
    return "\n".join(parts)


def merge_by_convention(params: dict, fields: Dict[str, FieldSpec]) -> dict:
    """Lift stray root scalars into the first item of the array field that declares them."""
    merged = dict(params)
    for name, spec in fields.items():
        if spec.type != "array" or not spec.item_structure:
            continue
        stray = {
            key: merged[key]
            for key in spec.item_structure
            if key in merged and key not in fields and not isinstance(merged[key], (list, dict))
        }
        if not stray:
            continue
        items = merged.get(name)
        if not isinstance(items, list) or not items:
            items = [{}]
        first = dict(items[0]) if isinstance(items[0], dict) else {}
        for key, value in stray.items():
            first.setdefault(key, value)
            merged.pop(key)
        merged[name] = [first] + list(items[1:])
    return merged


def merge_by_config(params: dict, fields: Dict[str, FieldSpec]) -> dict:
    """Same as the convention merge, but driven by declared alternative names."""
    merged = dict(params)
    for name, spec in fields.items():
        for alt in spec.alternative_fields:
            if alt in merged and not is_filled(merged.get(name)):
                merged[name] = merged.pop(alt)
        if spec.type != "array" or not spec.item_structure:
            continue
        for item_name, item_spec in spec.item_structure.items():
            for alt in item_spec.alternative_fields:
                if alt not in merged or alt in fields or isinstance(merged[alt], (list, dict)):
                    continue
                items = merged.get(name)
                if not isinstance(items, list) or not items:
                    items = [{}]
                first = dict(items[0]) if isinstance(items[0], dict) else {}
                first.setdefault(item_name, merged.pop(alt))
                merged[name] = [first] + list(items[1:])
            if isinstance(merged.get(name), list):
                merged[name] = [
                    _rename_item_keys(item, item_name, item_spec.alternative_fields)
                    for item in merged[name]
                ]
    return merged


def _rename_item_keys(item: Any, target: str, alternatives: List[str]) -> Any:
    if not isinstance(item, dict) or is_filled(item.get(target)):
        return item
    for alt in alternatives:
        if alt in item:
            item = dict(item)
            item[target] = item.pop(alt)
            break
    return item


def clean_params(params: dict, fields: Dict[str, FieldSpec]) -> dict:
    """Drop empty values and, when fields are declared, undeclared keys."""
    cleaned = {}
    for key, value in params.items():
        if fields and key not in fields:
            continue
        if isinstance(value, list):
            value = [
                {k: v for k, v in item.items() if is_filled(v)} if isinstance(item, dict) else item
                for item in value
            ]
            value = [item for item in value if is_filled(item)]
        if is_filled(value):
            cleaned[key] = value
    return cleaned


class ParameterExtractor:
    """
    Scores and fills one action definition from a message.

    Uses the bound type's strict schema when it has one; otherwise a
    prompt built from the field declarations.
    """

    def __init__(
        self,
        llm: LanguageModel,
        entity_types: Optional[EntityTypeRegistry] = None,
        config: Optional[KernelConfig] = None,
    ):
        self.llm = llm
        self.entity_types = entity_types or EntityTypeRegistry()
        self.config = config or KernelConfig()

    def extract(
        self,
        message: str,
        definition: ActionDefinition,
        context: Optional[UnifiedContext] = None,
        pending: Optional[PendingAction] = None,
    ) -> ExtractionResult:
        start = time.monotonic()
        text = self._scoped_text(message, context, pending)
        capability = (
            self.entity_types.get(definition.entity_type) if definition.entity_type else None
        )
        schema = capability.function_schema() if capability else None

        params = self.extract_fields(
            text,
            definition.fields,
            definition.label,
            hints=definition.extraction_hints,
            schema=schema,
            action_id=definition.id,
        )

        required = list(definition.required_params)
        if capability is not None:
            for name in capability.critical_fields() + capability.required_fields():
                if name not in required:
                    required.append(name)
        missing = [name for name in required if not is_filled(params.get(name))]
        confidence = self.score(params, definition, required)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        logger.debug(
            "Parameters extracted",
            action_id=definition.id,
            extracted=sorted(params),
            missing=missing,
            confidence=confidence,
            duration_ms=elapsed_ms,
        )
        return ExtractionResult(
            params=params,
            missing=missing,
            confidence=confidence,
            duration_ms=elapsed_ms,
        )

    def extract_fields(
        self,
        text: str,
        fields: Dict[str, FieldSpec],
        label: str,
        hints: Optional[Dict[str, str]] = None,
        schema: Optional[dict] = None,
        action_id: Optional[str] = None,
    ) -> dict:
        """Run one model pass over `text` and return cleaned, merged params."""
        if not text.strip():
            return {}
        try:
            if schema:
                raw = self.llm.complete(
                    text,
                    system=SYSTEM_PROMPT,
                    schema=schema,
                    max_tokens=self.config.extraction_max_tokens,
                )
            else:
                raw = self.llm.complete(
                    build_prompt(text, fields, label, hints),
                    system=SYSTEM_PROMPT,
                    max_tokens=self.config.extraction_max_tokens,
                )
            params = parse_json_object(raw)
        except Exception as e:
            logger.warning(
                "Extraction failed, treating as empty",
                action_id=action_id,
                error=str(e),
                exception=type(e).__name__,
            )
            return {}

        params = merge_by_convention(params, fields)
        params = merge_by_config(params, fields)
        return clean_params(params, fields)

    def score(
        self, params: dict, definition: ActionDefinition, required: List[str]
    ) -> float:
        if not params:
            return 0.0
        if not definition.fields and not required:
            return 0.1
        optional = [n for n in definition.fields if n not in required]
        required_ratio = (
            sum(1 for n in required if is_filled(params.get(n))) / len(required)
            if required else 1.0
        )
        optional_ratio = (
            sum(1 for n in optional if is_filled(params.get(n))) / len(optional)
            if optional else 1.0
        )
        score = (
            self.config.required_weight * required_ratio
            + self.config.optional_weight * optional_ratio
        )
        return round(min(score, 1.0), 2)

    def _scoped_text(
        self,
        message: str,
        context: Optional[UnifiedContext],
        pending: Optional[PendingAction],
    ) -> str:
        if pending is None or context is None:
            return message
        history = context.conversation_history[pending.start_index:]
        lines = [m.content for m in history if m.role == "user"]
        if not lines or lines[-1] != message:
            lines.append(message)
        return "\n".join(lines)
