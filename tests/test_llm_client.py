import io
import json
from urllib.error import HTTPError, URLError

from termpilot.llm.client import BASE_SYSTEM_PROMPT_PARTS, LLMClient

SCHEMA = [
    {
        "type": "function",
        "name": "read_file",
        "description": "Read a file",
        "parameters": {"type": "object", "properties": {}, "required": []},
    }
]


class FakeResponse:
    def __init__(self, payload: object) -> None:
        self._raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None

    def read(self) -> bytes:
        return self._raw


def _client(**kwargs) -> LLMClient:
    return LLMClient(api_key=None, model="gpt-5.2", **kwargs)


def test_payload_prepends_system_prompt_and_exposes_tools() -> None:
    transcript = [{"role": "user", "content": "Goal: fix tests"}]

    payload = _client()._build_payload(transcript, SCHEMA, None)

    assert payload["model"] == "gpt-5.2"
    assert payload["input"][0]["role"] == "system"
    assert payload["input"][0]["content"] == " ".join(BASE_SYSTEM_PROMPT_PARTS)
    assert payload["input"][1:] == transcript
    assert payload["tools"] == SCHEMA
    assert payload["parallel_tool_calls"] is False


def test_payload_omits_tools_when_schema_empty() -> None:
    payload = _client()._build_payload([], [], None)

    assert "tools" not in payload
    assert "parallel_tool_calls" not in payload


def test_payload_includes_reasoning_effort_when_configured() -> None:
    payload = _client(reasoning_effort="medium")._build_payload([], SCHEMA, None)

    assert payload["reasoning"] == {"effort": "medium"}


def test_payload_omits_reasoning_effort_when_unset() -> None:
    payload = _client()._build_payload([], SCHEMA, None)

    assert "reasoning" not in payload


def test_profile_hint_is_appended_to_system_prompt() -> None:
    payload = _client()._build_payload([], SCHEMA, "Focus on test failures.")

    assert payload["input"][0]["content"].endswith("Focus on test failures.")


def test_to_model_decision_parses_function_call() -> None:
    payload = {
        "output": [
            {"type": "reasoning", "summary": []},
            {
                "type": "function_call",
                "call_id": "call_7",
                "name": "read_file",
                "arguments": '{"path": "app.py"}',
            },
        ]
    }

    decision = LLMClient._to_model_decision(payload)

    assert decision.error is None
    assert decision.text is None
    assert decision.tool_call is not None
    assert decision.tool_call.name == "read_file"
    assert decision.tool_call.args == {"path": "app.py"}
    assert decision.tool_call.call_id == "call_7"


def test_to_model_decision_accepts_object_arguments() -> None:
    payload = {"output": [{"type": "function_call", "name": "shell", "arguments": {"command": "ls"}}]}

    decision = LLMClient._to_model_decision(payload)

    assert decision.tool_call is not None
    assert decision.tool_call.args == {"command": "ls"}
    assert decision.tool_call.call_id is None


def test_to_model_decision_joins_output_text() -> None:
    payload = {
        "output": [
            {
                "type": "message",
                "content": [
                    {"type": "output_text", "text": "All tests pass."},
                    {"type": "output_text", "text": "Done."},
                ],
            }
        ]
    }

    decision = LLMClient._to_model_decision(payload)

    assert decision.text == "All tests pass.\nDone."
    assert decision.tool_call is None


def test_to_model_decision_reports_invalid_arguments() -> None:
    payload = {"output": [{"type": "function_call", "name": "shell", "arguments": "{not json"}]}

    decision = LLMClient._to_model_decision(payload)

    assert decision.tool_call is None
    assert "not valid JSON" in (decision.error or "")


def test_to_model_decision_reports_empty_output() -> None:
    assert LLMClient._to_model_decision({}).error == "Model response contained no output items"
    assert (
        LLMClient._to_model_decision({"output": []}).error
        == "Model returned neither text nor a tool call"
    )


def test_complete_or_tool_call_sends_authorization_header(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout):
        captured["auth"] = req.get_header("Authorization")
        captured["timeout"] = timeout
        captured["body"] = json.loads(req.data.decode("utf-8"))
        return FakeResponse({"output": [{"content": [{"type": "output_text", "text": "ok"}]}]})

    monkeypatch.setattr("termpilot.llm.client.request.urlopen", fake_urlopen)
    client = LLMClient(api_key="sk-test", model="gpt-5.2", timeout=12.0)

    decision = client.complete_or_tool_call([{"role": "user", "content": "hi"}], SCHEMA)

    assert decision.text == "ok"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["timeout"] == 12.0
    assert captured["body"]["input"][1] == {"role": "user", "content": "hi"}


def test_complete_or_tool_call_returns_error_on_http_error(monkeypatch) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise HTTPError(
            url="https://example.com",
            code=400,
            msg="Bad Request",
            hdrs=None,
            fp=io.BytesIO(b'{"error": "invalid schema"}'),
        )

    monkeypatch.setattr("termpilot.llm.client.request.urlopen", fake_urlopen)

    decision = _client().complete_or_tool_call([], SCHEMA)

    assert decision.tool_call is None
    assert "HTTP 400" in (decision.error or "")
    assert "invalid schema" in (decision.error or "")


def test_complete_or_tool_call_returns_error_on_transport_error(monkeypatch) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise URLError("connection refused")

    monkeypatch.setattr("termpilot.llm.client.request.urlopen", fake_urlopen)

    decision = _client().complete_or_tool_call([], SCHEMA)

    assert decision.error == "Model request transport error: connection refused"


def test_complete_or_tool_call_returns_error_on_timeout(monkeypatch) -> None:
    def fake_urlopen(*_args, **_kwargs):
        raise TimeoutError()

    monkeypatch.setattr("termpilot.llm.client.request.urlopen", fake_urlopen)

    decision = _client(timeout=5.0).complete_or_tool_call([], SCHEMA)

    assert decision.error == "Model request timed out after 5.0s"


def test_complete_or_tool_call_returns_error_on_invalid_json(monkeypatch) -> None:
    monkeypatch.setattr(
        "termpilot.llm.client.request.urlopen", lambda *_a, **_k: FakeResponse(b"not-json")
    )

    decision = _client().complete_or_tool_call([], SCHEMA)

    assert (decision.error or "").startswith("Model response parsing error")


def test_complete_or_tool_call_rejects_non_object_response(monkeypatch) -> None:
    monkeypatch.setattr("termpilot.llm.client.request.urlopen", lambda *_a, **_k: FakeResponse([1, 2]))

    decision = _client().complete_or_tool_call([], SCHEMA)

    assert decision.error == "Model response parsing error: expected top-level object"
