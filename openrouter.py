"""OpenRouter chat-completions provider over httpx.

Streams server-sent events from ``/chat/completions``. Text and reasoning
deltas are passed through as they arrive; tool-call fragments are merged
by index and released as one batch when the stream ends.
"""

import json
import logging
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from catalog import ToolDescriptor
from completion import ReasoningDelta, StreamChunk, TextDelta, ToolCallBatch, UsageReport
from errors import CompletionProviderError

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
APP_TITLE = "MCP Chat Client"
APP_REFERER = "https://github.com/mcp-chat-client"


def _error_message(status_code: int, body: Any) -> str:
    """Pull ``error.message`` out of an error body when there is one."""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        if isinstance(error, str):
            return error
    if isinstance(body, str) and body:
        return f"Chat completion failed ({status_code}): {body}"
    return f"Chat completion failed: {status_code}"


def _decode_body(raw: bytes) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return raw.decode("utf-8", errors="replace")


def _merge_tool_call(pending: dict[int, dict], fragment: dict) -> None:
    index = fragment.get("index", len(pending))
    call = pending.setdefault(
        index,
        {"id": None, "type": "function", "function": {"name": "", "arguments": ""}},
    )
    if fragment.get("id"):
        call["id"] = fragment["id"]
    function = fragment.get("function") or {}
    if function.get("name") and not call["function"]["name"]:
        call["function"]["name"] = function["name"]
    if function.get("arguments"):
        call["function"]["arguments"] += function["arguments"]


class OpenRouterProvider:
    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENROUTER_BASE_URL,
        app_title: str = APP_TITLE,
        referer: str = APP_REFERER,
        timeout: Optional[httpx.Timeout] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.app_title = app_title
        self.referer = referer
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout or httpx.Timeout(connect=30.0, read=300.0, write=60.0, pool=30.0),
        )

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    def _payload(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]],
        stream: bool,
        tool_choice: Any = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": stream,
            "usage": {"include": True},
        }
        if tools:
            payload["tools"] = [t.to_openai() for t in tools]
        if tool_choice is not None:
            payload["tool_choice"] = tool_choice
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return payload

    async def stream_completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> AsyncIterator[StreamChunk]:
        payload = self._payload(model, messages, tools, stream=True)
        pending_calls: dict[int, dict] = {}
        usage: Optional[dict] = None

        try:
            async with self._client.stream(
                "POST", "/chat/completions", json=payload, headers=self.headers
            ) as response:
                if response.status_code != 200:
                    body = _decode_body(await response.aread())
                    logger.error("OpenRouter error %d: %s", response.status_code, body)
                    raise CompletionProviderError(
                        _error_message(response.status_code, body),
                        status_code=response.status_code,
                        body=body,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    data = line[len("data: "):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping unparseable stream line: %r", data)
                        continue

                    if chunk.get("error"):
                        error = chunk["error"]
                        code = error.get("code") if isinstance(error, dict) else None
                        raise CompletionProviderError(
                            _error_message(code or 0, chunk),
                            status_code=code if isinstance(code, int) else None,
                            body=chunk,
                        )
                    if chunk.get("usage"):
                        usage = chunk["usage"]

                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}
                    if delta.get("reasoning"):
                        yield ReasoningDelta(delta["reasoning"])
                    if delta.get("content"):
                        yield TextDelta(delta["content"])
                    for fragment in delta.get("tool_calls") or []:
                        _merge_tool_call(pending_calls, fragment)
        except httpx.HTTPError as e:
            raise CompletionProviderError(f"Error making streaming chat completion request: {e}") from e

        if usage:
            yield UsageReport(usage)
        if pending_calls:
            yield ToolCallBatch(tuple(pending_calls[i] for i in sorted(pending_calls)))

    async def completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
        tool_choice: Any = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        payload = self._payload(model, messages, tools, False, tool_choice, max_tokens)
        try:
            response = await self._client.post("/chat/completions", json=payload, headers=self.headers)
        except httpx.HTTPError as e:
            raise CompletionProviderError(f"Error making chat completion request: {e}") from e

        body = _decode_body(response.content)
        if response.status_code != 200:
            logger.error("OpenRouter error %d: %s", response.status_code, body)
            raise CompletionProviderError(
                _error_message(response.status_code, body),
                status_code=response.status_code,
                body=body,
            )
        if not isinstance(body, dict):
            raise CompletionProviderError("Chat completion returned a non-JSON body", body=body)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
