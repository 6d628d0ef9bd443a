"""
LLM Service - stream model replies from OpenAI, vLLM and Gemini as StreamEvents

Every wire record (one SSE "data:" line) becomes zero or more events; malformed
records are logged and skipped. Transport and HTTP failures are raised as
ProviderError, classified transient or not, and retried by the caller.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import aiohttp
import structlog

from pair_agent.errors import ProviderError
from pair_agent.models.chat import ContentEvent, DoneEvent, StreamEvent, TokenCountEvent, ToolCallEvent
from pair_agent.models.context import ModelRequest

logger = structlog.get_logger(__name__)

SUPPORTED_PROVIDERS = ("openai", "vllm", "gemini")

DONE_SENTINEL = "[DONE]"


class OpenAIStreamParser:
    """Turn OpenAI-compatible chunks into events, accumulating tool-call fragments"""

    def __init__(self):
        self._tool_calls: dict[int, dict[str, Any]] = {}

    def feed(self, data: dict[str, Any]) -> list[StreamEvent]:
        """Events for one chunk; fields with an unexpected shape are ignored"""
        events: list[StreamEvent] = []
        choices = data.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta = choice.get("delta")
            if isinstance(delta, dict):
                content = delta.get("content")
                if isinstance(content, str) and content:
                    events.append(ContentEvent(text=content))
                tool_calls = delta.get("tool_calls")
                for fragment in tool_calls if isinstance(tool_calls, list) else []:
                    if isinstance(fragment, dict):
                        self._add_fragment(fragment)
            if choice.get("finish_reason") == "tool_calls":
                events.extend(self.flush())

        usage = data.get("usage")
        if isinstance(usage, dict) and usage:
            events.append(
                TokenCountEvent(
                    prompt_tokens=usage.get("prompt_tokens", 0),
                    completion_tokens=usage.get("completion_tokens", 0),
                    total_tokens=usage.get("total_tokens", 0),
                )
            )
        return events

    def _add_fragment(self, fragment: dict[str, Any]) -> None:
        index = fragment.get("index", 0)
        if not isinstance(index, int):
            index = 0
        slot = self._tool_calls.setdefault(index, {"id": None, "name": "", "arguments": ""})
        if isinstance(fragment.get("id"), str):
            slot["id"] = fragment["id"]
        function = fragment.get("function")
        if not isinstance(function, dict):
            return
        if isinstance(function.get("name"), str):
            slot["name"] += function["name"]
        if isinstance(function.get("arguments"), str):
            slot["arguments"] += function["arguments"]

    def flush(self) -> list[StreamEvent]:
        """Emit accumulated tool calls in index order"""
        events: list[StreamEvent] = []
        for index in sorted(self._tool_calls):
            slot = self._tool_calls[index]
            if not slot["name"]:
                continue
            try:
                arguments = json.loads(slot["arguments"]) if slot["arguments"] else {}
            except json.JSONDecodeError:
                logger.warning("tool_arguments_malformed", tool=slot["name"], arguments=slot["arguments"][:200])
                arguments = {}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}
            events.append(ToolCallEvent(id=slot["id"], name=slot["name"], arguments=arguments))
        self._tool_calls.clear()
        return events


class GeminiStreamParser:
    """Turn Gemini streamGenerateContent chunks into events"""

    def __init__(self):
        self.usage: TokenCountEvent | None = None

    def feed(self, data: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        candidates = data.get("candidates")
        for candidate in (candidates if isinstance(candidates, list) else [])[:1]:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts if isinstance(parts, list) else []:
                if not isinstance(part, dict) or part.get("thought"):
                    continue
                if isinstance(part.get("text"), str) and part["text"]:
                    events.append(ContentEvent(text=part["text"]))
                call = part.get("functionCall")
                if isinstance(call, dict) and isinstance(call.get("name"), str) and call["name"]:
                    args = call.get("args")
                    events.append(ToolCallEvent(name=call["name"], arguments=args if isinstance(args, dict) else {}))

        # usageMetadata is cumulative; only the last one is reported
        usage = data.get("usageMetadata")
        if isinstance(usage, dict) and usage:
            self.usage = TokenCountEvent(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            )
        return events


class LLMService:
    """Stream replies from the configured provider"""

    def __init__(
        self,
        config: dict[str, Any],
        connect_timeout: float = 10.0,
        request_timeout: float = 120.0,
    ):
        if connect_timeout >= request_timeout:
            raise ValueError("connect_timeout must be shorter than request_timeout")
        self.config = config
        self.provider = config.get("provider", "openai")
        if self.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {self.provider}")
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout

    @property
    def model(self) -> str:
        """Model configured for the active provider"""
        return self.config.get(self.provider, {}).get("model", "")

    # ========== Config Helpers ==========

    def _get_gemini_config(self, model: str | None = None) -> tuple[str, str]:
        """Get Gemini config: (api_key, base_url). Raises if api_key missing."""
        cfg = self.config.get("gemini", {})
        api_key = cfg.get("apiKey")
        if not api_key:
            raise ProviderError("Gemini API key not configured")
        model = model or cfg.get("model", "gemini-2.5-flash")
        base_url = f"https://generativelanguage.googleapis.com/v1beta/models/{model}"
        return api_key, base_url

    def _get_openai_config(self) -> tuple[str, str, dict[str, str]]:
        """Get OpenAI config: (model, url, headers). Raises if api_key missing."""
        cfg = self.config.get("openai", {})
        api_key = cfg.get("apiKey")
        if not api_key:
            raise ProviderError("OpenAI API key not configured")
        model = cfg.get("model", "gpt-4o")
        url = cfg.get("endpoint", "https://api.openai.com/v1/chat/completions")
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        return model, url, headers

    def _get_vllm_config(self) -> tuple[str, str, dict[str, str]]:
        """Get vLLM config: (model, url, headers)."""
        cfg = self.config.get("vllm", {})
        endpoint = cfg.get("endpoint", "http://localhost:8000")
        model = cfg.get("model", "default")
        url = f"{endpoint.rstrip('/')}/v1/chat/completions"
        headers = {"Content-Type": "application/json"}
        if cfg.get("apiKey"):
            headers["Authorization"] = f"Bearer {cfg['apiKey']}"
        return model, url, headers

    # ========== Payload Builders ==========

    def _build_openai_payload(self, request: ModelRequest, model: str) -> dict[str, Any]:
        """Build OpenAI-compatible streaming payload"""
        payload: dict[str, Any] = {
            "model": request.model or model,
            "messages": request.messages,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.tools:
            payload["tools"] = [tool.to_openai() for tool in request.tools]
        return payload

    def _build_gemini_payload(self, request: ModelRequest) -> dict[str, Any]:
        """Build Gemini payload; system messages become the system instruction"""
        system_parts = []
        contents = []
        for message in request.messages:
            if message["role"] == "system":
                system_parts.append({"text": message["content"]})
                continue
            role = "model" if message["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message["content"]}]})

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": request.temperature,
                "topP": 0.95,
                "maxOutputTokens": request.max_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in request.tools
                    ]
                }
            ]
        return payload

    # ========== Transport ==========

    @asynccontextmanager
    async def _request(self, url: str, payload: dict[str, Any], headers: dict[str, str] | None, provider: str):
        """POST and yield the open response; non-200 statuses raise ProviderError"""
        timeout = aiohttp.ClientTimeout(total=self.request_timeout, sock_connect=self.connect_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload, headers=headers) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        error = ProviderError.from_status(response.status, error_text, provider)
                        retry_after = response.headers.get("Retry-After")
                        if retry_after and retry_after.isdigit():
                            error.retry_after = float(retry_after)
                        logger.warning("provider_http_error", provider=provider, status=response.status)
                        raise error
                    yield response
        except asyncio.TimeoutError as e:
            raise ProviderError(f"{provider} request timed out", transient=True) from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"{provider} connection failed: {e}", transient=True) from e

    @staticmethod
    def _parse_sse_line(line_text: str) -> dict[str, Any] | str | None:
        """Decode one SSE line: a JSON object, the done sentinel, or None to skip"""
        if not line_text.startswith("data:"):
            return None
        data_str = line_text[5:].strip()
        if data_str == DONE_SENTINEL:
            return DONE_SENTINEL
        if not data_str:
            return None
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            logger.warning("malformed_stream_record", record=data_str[:200])
            return None
        if not isinstance(data, dict):
            logger.warning("malformed_stream_record", record=data_str[:200])
            return None
        return data

    @staticmethod
    def _feed(parser: OpenAIStreamParser | GeminiStreamParser, data: dict[str, Any]) -> list[StreamEvent]:
        """Run one record through the parser; a record it cannot read is skipped"""
        try:
            return parser.feed(data)
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning("malformed_stream_record", record=str(data)[:200], error=str(e))
            return []

    async def _iter_lines(self, response) -> AsyncIterator[str]:
        async for line in response.content:
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                yield text

    # ========== Streaming ==========

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Yield StreamEvents for `request`, ending with Done"""
        if self.provider == "gemini":
            stream = self._stream_gemini(request)
        elif self.provider == "vllm":
            model, url, headers = self._get_vllm_config()
            stream = self._stream_openai_compatible(request, model, url, headers, "vLLM")
        elif self.provider == "openai":
            model, url, headers = self._get_openai_config()
            stream = self._stream_openai_compatible(request, model, url, headers, "OpenAI")
        else:
            raise ValueError(f"Unsupported provider: {self.provider}")

        async for event in stream:
            yield event

    async def _stream_openai_compatible(
        self,
        request: ModelRequest,
        model: str,
        url: str,
        headers: dict[str, str],
        provider: str,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._build_openai_payload(request, model)
        parser = OpenAIStreamParser()
        logger.info("provider_request", provider=provider, model=payload["model"], messages=len(request.messages))

        async with self._request(url, payload, headers, provider) as response:
            async for line in self._iter_lines(response):
                data = self._parse_sse_line(line)
                if data is None:
                    continue
                if data == DONE_SENTINEL:
                    for event in parser.flush():
                        yield event
                    yield DoneEvent()
                    return
                for event in self._feed(parser, data):
                    yield event

        raise ProviderError(f"{provider} stream ended before completion", transient=True)

    async def _stream_gemini(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        api_key, base_url = self._get_gemini_config(request.model or None)
        url = f"{base_url}:streamGenerateContent?key={api_key}&alt=sse"
        payload = self._build_gemini_payload(request)
        parser = GeminiStreamParser()
        logger.info("provider_request", provider="Gemini", model=base_url.rsplit("/", 1)[-1])

        async with self._request(url, payload, None, "Gemini") as response:
            async for line in self._iter_lines(response):
                data = self._parse_sse_line(line)
                if data is None or data == DONE_SENTINEL:
                    continue
                for event in self._feed(parser, data):
                    yield event

        if parser.usage is not None:
            yield parser.usage
        yield DoneEvent()
