"""Language-model client used for query planning and record extraction."""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Protocol

from harvester.harvesting.errors import LLMClientError
from harvester.harvesting.http_json import HTTPRequestError, request_json

_QUERY_PLAN_JSON_SCHEMA: dict[str, Any] = {
    "name": "harvester_query_plan",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "done": {"type": "boolean"},
            "query": {"type": ["string", "null"]},
        },
        "required": ["done", "query"],
    },
}

_RECORD_EXTRACTION_JSON_SCHEMA: dict[str, Any] = {
    "name": "harvester_record_extraction",
    "strict": True,
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "records": {
                "type": "array",
                "items": {
                    "type": "object",
                    "additionalProperties": False,
                    "properties": {
                        "category": {"type": "string"},
                        "program_name": {"type": ["string", "null"]},
                        "identifier": {"type": "string"},
                        "tier": {"type": ["string", "null"]},
                        "source_message_id": {"type": "string"},
                        "confidence": {"type": "number"},
                    },
                    "required": [
                        "category",
                        "program_name",
                        "identifier",
                        "tier",
                        "source_message_id",
                        "confidence",
                    ],
                },
            },
        },
        "required": ["records"],
    },
}

QUERY_PLANNER_PROMPT_VERSION = "planner.v1"
RECORD_EXTRACTION_PROMPT_VERSION = "extraction.v1"
_PROMPT_FILES: dict[str, Path] = {
    "planner.v1": Path(__file__).resolve().parent / "prompts" / "planner_v1.txt",
    "extraction.v1": Path(__file__).resolve().parent / "prompts" / "extraction_v1.txt",
}


class QueryProposalClient(Protocol):
    """Protocol for the query-planning role."""

    def propose_query(self, summary: dict[str, Any]) -> dict[str, Any]:
        """Return ``{"query": str}`` or ``{"done": true}`` for a history summary."""


class RecordExtractionClient(Protocol):
    """Protocol for the extraction role."""

    def extract_records(
        self,
        messages: list[dict[str, Any]],
        *,
        category: str,
        known_values: list[str],
    ) -> dict[str, Any]:
        """Return ``{"records": [...]}`` for the given messages."""


@dataclass(slots=True)
class OpenAIChatCompletionsClient:
    """Minimal OpenAI Chat Completions client using stdlib HTTP."""

    api_key: str
    model: str
    base_url: str = "https://api.openai.com/v1"
    timeout_seconds: int = 60

    def propose_query(self, summary: dict[str, Any]) -> dict[str, Any]:
        """Ask the model for the next search query."""

        return self._complete_json(
            system_prompt=get_system_prompt(QUERY_PLANNER_PROMPT_VERSION),
            user_payload={"task": "Propose the next mailbox search query.", "state": summary},
            json_schema=_QUERY_PLAN_JSON_SCHEMA,
        )

    def extract_records(
        self,
        messages: list[dict[str, Any]],
        *,
        category: str,
        known_values: list[str],
    ) -> dict[str, Any]:
        """Ask the model for new records found in ``messages``."""

        return self._complete_json(
            system_prompt=get_system_prompt(RECORD_EXTRACTION_PROMPT_VERSION),
            user_payload={
                "task": "Extract NEW loyalty memberships for the category from these messages.",
                "category": category,
                "existing_identifiers": known_values,
                "messages": messages,
            },
            json_schema=_RECORD_EXTRACTION_JSON_SCHEMA,
        )

    def _complete_json(
        self,
        *,
        system_prompt: str,
        user_payload: dict[str, Any],
        json_schema: dict[str, Any],
    ) -> dict[str, Any]:
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {
                "type": "json_schema",
                "json_schema": json_schema,
            },
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": json.dumps(user_payload, ensure_ascii=True)},
            ],
        }
        try:
            decoded = request_json(
                f"{self.base_url.rstrip('/')}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout_seconds=self.timeout_seconds,
                body=payload,
            )
        except HTTPRequestError as exc:
            raise LLMClientError(f"OpenAI {exc}") from exc
        return _message_json(decoded)


def _message_json(decoded: dict[str, Any]) -> dict[str, Any]:
    """Parse the JSON object the model returned as its first choice."""

    try:
        message = decoded["choices"][0]["message"]
        refusal = message.get("refusal")
        if isinstance(refusal, str) and refusal.strip():
            raise LLMClientError(f"OpenAI refused request: {refusal.strip()}")
        content = message["content"]
        if not isinstance(content, str):
            raise TypeError("OpenAI response content is not a string")
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise TypeError("OpenAI response content is not a JSON object")
        return parsed
    except LLMClientError:
        raise
    except (KeyError, IndexError, TypeError, AttributeError, json.JSONDecodeError) as exc:
        raise LLMClientError("OpenAI returned an unexpected or non-JSON response") from exc


@lru_cache(maxsize=8)
def get_system_prompt(version: str) -> str:
    """Load a registered system prompt."""

    prompt_file = _PROMPT_FILES.get(version)
    if prompt_file is None:
        raise LLMClientError(f"Prompt version is not registered: {version}")
    try:
        prompt_text = prompt_file.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise LLMClientError(f"Failed to load prompt file: {prompt_file}") from exc
    if not prompt_text:
        raise LLMClientError(f"Prompt file is empty: {prompt_file}")
    return prompt_text
