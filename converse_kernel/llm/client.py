"""
Language-model adapter.

The kernel only ever talks to a `LanguageModel`. Extraction, summaries and
answer interpretation are enhancements: any failure here degrades to
`None` and the caller falls back to deterministic behaviour.
"""

import json
import re
from typing import Any, Dict, Optional, Protocol, Union

import openai
import structlog


logger = structlog.get_logger(__name__)

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class ExtractionError(Exception):
    """Raised when a model response cannot be turned into arguments."""
    pass


class LanguageModel(Protocol):
    def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        schema: Optional[dict] = None,
        max_tokens: int = 800,
    ) -> Union[str, dict, None]:
        ...


class OpenAILanguageModel:
    """
    Chat-completions backed model.

    With a `schema` the call forces a single function call and returns its
    parsed arguments; otherwise it returns the message text.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        client: Optional[openai.OpenAI] = None,
        temperature: float = 0.0,
    ):
        self.model = model
        self.temperature = temperature
        self._client = client

    @property
    def client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI()
        return self._client

    def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        schema: Optional[dict] = None,
        max_tokens: int = 800,
    ) -> Union[str, dict, None]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": self.temperature,
        }
        if schema:
            name = schema.get("name", "extract_parameters")
            request["tools"] = [{"type": "function", "function": schema}]
            request["tool_choice"] = {"type": "function", "function": {"name": name}}

        try:
            response = self.client.chat.completions.create(**request)
            message = response.choices[0].message
            if schema:
                calls = message.tool_calls or []
                if not calls:
                    raise ExtractionError("model returned no function call")
                return json.loads(calls[0].function.arguments or "{}")
            return message.content or ""
        except (openai.OpenAIError, ExtractionError, json.JSONDecodeError) as e:
            logger.warning(
                "LLM call failed",
                model=self.model,
                schema=bool(schema),
                error=str(e),
                exception=type(e).__name__,
            )
            return None


def parse_json_object(response: Union[str, dict, None]) -> dict:
    """Best-effort: pull a JSON object out of a model response, else {}."""
    if isinstance(response, dict):
        return response
    if not response:
        return {}
    text = _FENCE.sub("", response.strip()).strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return {}
        try:
            parsed = json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return {}
    return parsed if isinstance(parsed, dict) else {}
