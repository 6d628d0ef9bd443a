import asyncio
import json
from contextlib import asynccontextmanager

import pytest

from pair_agent.errors import ProviderError
from pair_agent.models.chat import ContentEvent, DoneEvent, TokenCountEvent, ToolCallEvent
from pair_agent.models.context import ModelRequest, ToolSchema
from pair_agent.services.llm_service import (
    DONE_SENTINEL,
    GeminiStreamParser,
    LLMService,
    OpenAIStreamParser,
)
from pair_agent.services.retry import RetryPolicy

OPENAI_CONFIG = {"provider": "openai", "openai": {"apiKey": "sk-test", "model": "gpt-4o"}}
GEMINI_CONFIG = {"provider": "gemini", "gemini": {"apiKey": "g-key", "model": "gemini-2.5-flash"}}

REQUEST = ModelRequest(
    model="",
    messages=[
        {"role": "system", "content": "be helpful"},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "user", "content": "explain"},
    ],
)


def sse(data):
    payload = data if isinstance(data, str) else json.dumps(data)
    return f"data: {payload}\n".encode()


def chunk(content=None, tool_calls=None, finish_reason=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"delta": delta, "finish_reason": finish_reason}]}


async def _lines(lines):
    for line in lines:
        yield line


class FakeResponse:
    def __init__(self, lines):
        self.content = _lines(lines)


def fake_transport(monkeypatch, service, lines):
    captured = []

    @asynccontextmanager
    async def _request(url, payload, headers, provider):
        captured.append({"url": url, "payload": payload, "headers": headers, "provider": provider})
        yield FakeResponse(lines)

    monkeypatch.setattr(service, "_request", _request)
    return captured


def collect(service, request=REQUEST):
    async def scenario():
        return [event async for event in service.stream(request)]

    return asyncio.run(scenario())


# ============================================================
# SSE records
# ============================================================


@pytest.mark.parametrize(
    "line, expected",
    [
        ('data: {"a": 1}', {"a": 1}),
        ("data:{\"a\": 1}", {"a": 1}),
        ("data: [DONE]", DONE_SENTINEL),
        ("data: ", None),
        (": keep-alive", None),
        ("event: message", None),
        ("data: {not json", None),
        ("data: [1, 2]", None),
    ],
)
def test_parse_sse_line(line, expected):
    assert LLMService._parse_sse_line(line) == expected


# ============================================================
# Stream parsers
# ============================================================


def test_openai_parser_content_and_usage():
    parser = OpenAIStreamParser()
    assert parser.feed(chunk(content="Hel")) == [ContentEvent(text="Hel")]
    assert parser.feed(chunk(content="")) == []
    events = parser.feed({"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}})
    assert events == [TokenCountEvent(prompt_tokens=3, completion_tokens=2, total_tokens=5)]


def test_openai_parser_accumulates_tool_call_fragments():
    parser = OpenAIStreamParser()
    first = [{"index": 0, "id": "call-1", "function": {"name": "read_", "arguments": '{"pa'}}]
    second = [{"index": 0, "function": {"name": "file", "arguments": 'th": "a.py"}'}}]
    assert parser.feed(chunk(tool_calls=first)) == []
    assert parser.feed(chunk(tool_calls=second)) == []
    events = parser.feed(chunk(finish_reason="tool_calls"))
    assert events == [ToolCallEvent(id="call-1", name="read_file", arguments={"path": "a.py"})]
    assert parser.flush() == []


def test_openai_parser_keeps_parallel_calls_in_index_order():
    parser = OpenAIStreamParser()
    parser.feed(
        chunk(
            tool_calls=[
                {"index": 1, "function": {"name": "search_code", "arguments": '{"query": "x"}'}},
                {"index": 0, "function": {"name": "list_files", "arguments": ""}},
            ]
        )
    )
    events = parser.flush()
    assert [e.name for e in events] == ["list_files", "search_code"]
    assert events[0].arguments == {}


def test_openai_parser_tolerates_malformed_arguments():
    parser = OpenAIStreamParser()
    parser.feed(chunk(tool_calls=[{"index": 0, "function": {"name": "read_file", "arguments": "{oops"}}]))
    assert parser.flush() == [ToolCallEvent(name="read_file", arguments={})]


def test_gemini_parser_skips_thoughts_and_reads_calls():
    parser = GeminiStreamParser()
    data = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "thinking...", "thought": True},
                        {"text": "Answer"},
                        {"functionCall": {"name": "list_files", "args": {"glob": "*.py"}}},
                    ]
                }
            }
        ],
        "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 1, "totalTokenCount": 5},
    }
    assert parser.feed(data) == [
        ContentEvent(text="Answer"),
        ToolCallEvent(name="list_files", arguments={"glob": "*.py"}),
    ]
    parser.feed({"usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 3, "totalTokenCount": 7}})
    assert parser.usage.total_tokens == 7


@pytest.mark.parametrize(
    "record",
    [
        {"choices": [{"delta": "oops"}]},
        {"choices": ["oops"]},
        {"choices": {"delta": {"content": "x"}}},
        {"choices": [{"delta": {"content": 5, "tool_calls": "nope"}}]},
        {"choices": [{"delta": {"tool_calls": ["nope", {"index": "0", "function": "read_file"}]}}]},
        {"usage": 12},
    ],
)
def test_openai_parser_ignores_wrong_shaped_records(record):
    parser = OpenAIStreamParser()
    assert parser.feed(record) == []
    assert parser.flush() == []


def test_gemini_parser_ignores_wrong_shaped_records():
    parser = GeminiStreamParser()
    data = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        "oops",
                        {"text": 7},
                        {"functionCall": {"name": "read_file", "args": "src/app.py"}},
                        {"text": "ok"},
                    ]
                }
            }
        ],
        "usageMetadata": "lots",
    }
    assert parser.feed(data) == [ToolCallEvent(name="read_file", arguments={}), ContentEvent(text="ok")]
    assert parser.feed({"candidates": [{"content": "oops"}]}) == []
    assert parser.feed({"candidates": ["oops"]}) == []
    assert parser.usage is None


# ============================================================
# Payloads and configuration
# ============================================================


def test_openai_payload_streams_with_usage_and_tools():
    service = LLMService(OPENAI_CONFIG)
    request = REQUEST.model_copy(update={"tools": [ToolSchema(name="list_files", description="List")]})
    payload = service._build_openai_payload(request, "gpt-4o")
    assert payload["model"] == "gpt-4o"
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["tools"][0]["function"]["name"] == "list_files"


def test_gemini_payload_maps_roles_and_system_instruction():
    payload = LLMService(GEMINI_CONFIG)._build_gemini_payload(REQUEST)
    assert payload["systemInstruction"] == {"parts": [{"text": "be helpful"}]}
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert "tools" not in payload


def test_vllm_config_uses_endpoint_and_optional_key():
    service = LLMService({"provider": "vllm", "vllm": {"endpoint": "http://gpu:9000/", "model": "m"}})
    model, url, headers = service._get_vllm_config()
    assert (model, url) == ("m", "http://gpu:9000/v1/chat/completions")
    assert "Authorization" not in headers


def test_unsupported_provider_rejected():
    with pytest.raises(ValueError):
        LLMService({"provider": "carrier-pigeon"})


def test_connect_timeout_must_be_shorter():
    with pytest.raises(ValueError):
        LLMService(OPENAI_CONFIG, connect_timeout=30, request_timeout=30)


def test_missing_api_key_raises_provider_error():
    service = LLMService({"provider": "openai", "openai": {"apiKey": ""}})
    with pytest.raises(ProviderError) as exc:
        collect(service)
    assert exc.value.transient is False


@pytest.mark.parametrize("status, transient", [(500, True), (503, True), (429, True), (400, False), (401, False)])
def test_status_classification(status, transient):
    assert ProviderError.from_status(status, "body").transient is transient


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, base_delay=2, multiplier=2, max_delay=10)
    assert [policy.delay(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]
    transient = ProviderError("x", transient=True)
    assert policy.should_retry(transient, 4) is True
    assert policy.should_retry(transient, 5) is False
    assert policy.should_retry(ProviderError("x"), 1) is False


# ============================================================
# Streaming over a fake transport
# ============================================================


def test_openai_stream_yields_content_then_done(monkeypatch):
    service = LLMService(OPENAI_CONFIG)
    lines = [
        sse(chunk(content="Hel")),
        b": keep-alive\n",
        b"\n",
        sse("{broken"),
        sse(chunk(content="lo")),
        sse({"choices": [], "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2}}),
        sse("[DONE]"),
    ]
    captured = fake_transport(monkeypatch, service, lines)
    events = collect(service)
    assert events == [
        ContentEvent(text="Hel"),
        ContentEvent(text="lo"),
        TokenCountEvent(prompt_tokens=1, completion_tokens=1, total_tokens=2),
        DoneEvent(),
    ]
    assert captured[0]["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured[0]["headers"]["Authorization"] == "Bearer sk-test"


def test_openai_stream_flushes_tool_calls_at_done(monkeypatch):
    service = LLMService(OPENAI_CONFIG)
    lines = [
        sse(chunk(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "list_files", "arguments": "{}"}}])),
        sse("[DONE]"),
    ]
    fake_transport(monkeypatch, service, lines)
    assert collect(service) == [ToolCallEvent(id="c1", name="list_files", arguments={}), DoneEvent()]


def test_openai_stream_cut_short_is_transient_error(monkeypatch):
    service = LLMService(OPENAI_CONFIG)
    fake_transport(monkeypatch, service, [sse(chunk(content="partial"))])
    with pytest.raises(ProviderError) as exc:
        collect(service)
    assert exc.value.transient is True


def test_gemini_stream_reports_final_usage(monkeypatch):
    service = LLMService(GEMINI_CONFIG)
    lines = [
        sse({"candidates": [{"content": {"parts": [{"text": "Hi"}]}}], "usageMetadata": {"totalTokenCount": 3}}),
        sse({"candidates": [{"content": {"parts": [{"text": "!"}]}}], "usageMetadata": {"totalTokenCount": 4}}),
    ]
    captured = fake_transport(monkeypatch, service, lines)
    events = collect(service)
    assert events == [
        ContentEvent(text="Hi"),
        ContentEvent(text="!"),
        TokenCountEvent(total_tokens=4),
        DoneEvent(),
    ]
    assert captured[0]["url"].endswith("gemini-2.5-flash:streamGenerateContent?key=g-key&alt=sse")


def test_openai_stream_skips_records_with_unexpected_shape(monkeypatch):
    service = LLMService(OPENAI_CONFIG)
    lines = [
        sse(chunk(content="A")),
        sse({"choices": [{"delta": "oops"}]}),
        sse({"choices": [{"delta": {}}], "usage": {"total_tokens": "many"}}),
        sse(chunk(content="B")),
        sse("[DONE]"),
    ]
    fake_transport(monkeypatch, service, lines)
    assert collect(service) == [ContentEvent(text="A"), ContentEvent(text="B"), DoneEvent()]


def test_gemini_stream_skips_records_with_unexpected_shape(monkeypatch):
    service = LLMService(GEMINI_CONFIG)
    lines = [
        sse({"candidates": [{"content": {"parts": [{"text": "A"}]}}]}),
        sse({"candidates": [{"content": {"parts": "oops"}}]}),
        sse({"usageMetadata": {"totalTokenCount": "many"}}),
        sse({"candidates": [{"content": {"parts": [{"text": "B"}]}}]}),
    ]
    fake_transport(monkeypatch, service, lines)
    assert collect(service) == [ContentEvent(text="A"), ContentEvent(text="B"), DoneEvent()]
