"""Confirmation summaries: a plain formatter, optionally dressed up by the model."""

from typing import Any, Optional

import structlog

from converse_kernel.llm.client import LanguageModel


logger = structlog.get_logger(__name__)

CONFIRM_PROMPT = (
    "Would you like to proceed? Type 'yes' to confirm, 'no' to cancel, "
    "or tell me what to change."
)


def _label(key: str) -> str:
    return key.replace("_", " ").capitalize()


def _value(value: Any) -> str:
    if isinstance(value, dict):
        return ", ".join(f"{k}: {v}" for k, v in value.items() if not str(k).startswith("_"))
    return str(value)


def format_summary(goal: str, data: dict) -> str:
    """Deterministic summary; this is the canonical rendering."""
    lines = [f"Please review before I {goal[:1].lower() + goal[1:]}:"]
    for key, value in data.items():
        if key.startswith("_") or value in (None, "", []):
            continue
        if isinstance(value, list):
            lines.append(f"- {_label(key)}:")
            for i, item in enumerate(value, 1):
                lines.append(f"  {i}. {_value(item)}")
        else:
            lines.append(f"- {_label(key)}: {_value(value)}")
    return "\n".join(lines)


class SummaryRenderer:
    """Renders the confirmation summary, falling back to `format_summary`."""

    def __init__(self, llm: Optional[LanguageModel] = None, max_tokens: int = 400):
        self.llm = llm
        self.max_tokens = max_tokens

    def render(self, goal: str, data: dict) -> str:
        plain = format_summary(goal, data)
        if self.llm is None:
            return plain
        try:
            rendered = self.llm.complete(
                "Rewrite this summary so a business user can confirm it at a glance. "
                "Keep every value exactly as given and add nothing.\n\n" + plain,
                max_tokens=self.max_tokens,
            )
        except Exception as e:
            logger.warning("Summary rendering failed", error=str(e))
            return plain
        if isinstance(rendered, str) and rendered.strip():
            return rendered.strip()
        return plain
