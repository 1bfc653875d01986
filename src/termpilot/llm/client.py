"""Thin model client that returns either final text or one tool call."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from urllib import request
from urllib.error import HTTPError, URLError

from termpilot.agent.models import ToolCall

BASE_SYSTEM_PROMPT_PARTS = [
    "You are TermPilot, an autonomous coding and terminal agent.",
    (
        "Work towards the user's goal one tool call at a time, reading the"
        " workspace before changing it."
    ),
    "Prefer safe, reversible, and idempotent operations.",
    (
        "Avoid destructive commands unless they are explicitly requested"
        " and clearly justified by the goal."
    ),
    (
        "When a tool result reports an error, read it carefully and fix the"
        " cause instead of repeating the same call."
    ),
    (
        "When the goal is done, reply with a short plain-text summary and no"
        " tool call."
    ),
]

LOGGER = logging.getLogger(__name__)

Transcript = list[dict[str, object]]


@dataclass(slots=True)
class ModelDecision:
    """Structured model response used by the orchestrator.

    Exactly one of ``text``, ``tool_call`` or ``error`` is meaningful.
    """

    text: str | None = None
    tool_call: ToolCall | None = None
    error: str | None = None


class LLMClient:
    """Small HTTP client for Responses-API style tool calling."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        reasoning_effort: str | None = None,
        api_url: str = "https://api.openai.com/v1/responses",
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.reasoning_effort = reasoning_effort
        self.api_url = api_url
        self.timeout = timeout

    def complete_or_tool_call(
        self,
        transcript: Transcript,
        tool_schema: list[dict[str, object]],
        profile_hint: str | None = None,
    ) -> ModelDecision:
        payload = self._build_payload(transcript, tool_schema, profile_hint)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "transcript_items": len(transcript),
                "tools": len(tool_schema),
                "reasoning_effort": self.reasoning_effort,
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            return ModelDecision(error=details)
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "reason": str(exc.reason),
                },
            )
            return ModelDecision(error=f"Model request transport error: {exc.reason}")
        except TimeoutError:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            return ModelDecision(error=f"Model request timed out after {self.timeout:.1f}s")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "error": str(exc),
                },
            )
            return ModelDecision(error=f"Model response parsing error: {exc}")

        raw = self._coerce_object_dict(raw_response)
        if raw is None:
            return ModelDecision(error="Model response parsing error: expected top-level object")
        return self._to_model_decision(raw)

    def _build_payload(
        self,
        transcript: Transcript,
        tool_schema: list[dict[str, object]],
        profile_hint: str | None,
    ) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": self._build_system_prompt(profile_hint)},
                *transcript,
            ],
        }
        if tool_schema:
            payload["tools"] = tool_schema
            payload["parallel_tool_calls"] = False
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload

    @staticmethod
    def _build_system_prompt(profile_hint: str | None) -> str:
        prompt_parts = [*BASE_SYSTEM_PROMPT_PARTS]
        if profile_hint:
            prompt_parts.append(profile_hint)
        return " ".join(prompt_parts)

    @staticmethod
    def _coerce_object_dict(value: object) -> dict[str, object] | None:
        if not isinstance(value, dict):
            return None
        return {str(key): raw_value for key, raw_value in value.items()}

    @classmethod
    def _to_model_decision(cls, payload: dict[str, object]) -> ModelDecision:
        output_items = payload.get("output")
        if not isinstance(output_items, list):
            return ModelDecision(error="Model response contained no output items")

        texts: list[str] = []
        for item in output_items:
            item_object = cls._coerce_object_dict(item)
            if item_object is None:
                continue
            if item_object.get("type") == "function_call":
                return cls._to_tool_call_decision(item_object)
            content_items = item_object.get("content")
            if not isinstance(content_items, list):
                continue
            for content in content_items:
                content_object = cls._coerce_object_dict(content)
                if content_object is None:
                    continue
                content_text = content_object.get("text")
                if content_object.get("type") == "output_text" and isinstance(content_text, str):
                    texts.append(content_text)

        if not texts:
            return ModelDecision(error="Model returned neither text nor a tool call")
        return ModelDecision(text="\n".join(texts))

    @classmethod
    def _to_tool_call_decision(cls, item: dict[str, object]) -> ModelDecision:
        name = item.get("name")
        if not isinstance(name, str) or not name:
            return ModelDecision(error="Model returned a tool call without a name")

        raw_arguments = item.get("arguments", "{}")
        if isinstance(raw_arguments, str):
            try:
                arguments = json.loads(raw_arguments or "{}")
            except json.JSONDecodeError as exc:
                return ModelDecision(error=f"Tool call arguments are not valid JSON: {exc}")
        else:
            arguments = raw_arguments
        args = cls._coerce_object_dict(arguments)
        if args is None:
            return ModelDecision(error="Tool call arguments must be a JSON object")

        call_id = item.get("call_id")
        return ModelDecision(
            tool_call=ToolCall(
                name=name,
                args=args,
                call_id=call_id if isinstance(call_id, str) else None,
            )
        )

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt
