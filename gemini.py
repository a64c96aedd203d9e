"""Gemini provider via google-genai.

Translates chat-completions messages into Gemini contents and back, so
the chat loop and the sampling bridge can use Gemini exactly like the
OpenRouter provider. Tool schemas go through ``parameters_json_schema``.
"""

import base64
import json
import logging
import uuid
from typing import Any, AsyncIterator, Optional, Sequence

from google import genai
from google.genai import errors, types

from catalog import ToolDescriptor
from completion import ReasoningDelta, StreamChunk, TextDelta, ToolCallBatch, UsageReport
from errors import CompletionProviderError

logger = logging.getLogger(__name__)

_TOOL_CHOICE_MODES = {"none": "NONE", "auto": "AUTO", "required": "ANY"}


def _image_part(url: str) -> Optional[types.Part]:
    # data:<mime>;base64,<payload>
    if not url.startswith("data:") or ";base64," not in url:
        logger.warning("Dropping non-inline image for Gemini: %s", url[:60])
        return None
    header, payload = url.split(",", 1)
    mime_type = header[len("data:"):].split(";", 1)[0]
    return types.Part.from_bytes(data=base64.b64decode(payload), mime_type=mime_type)


def _user_parts(content: Any) -> list[types.Part]:
    if isinstance(content, str):
        return [types.Part(text=content)] if content else []
    parts = []
    for item in content or []:
        if item.get("type") == "text" and item.get("text"):
            parts.append(types.Part(text=item["text"]))
        elif item.get("type") == "image_url":
            part = _image_part((item.get("image_url") or {}).get("url", ""))
            if part is not None:
                parts.append(part)
    return parts


def _parse_args(arguments: Any) -> dict:
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def to_gemini_contents(messages: list[dict]) -> tuple[Optional[str], list[types.Content]]:
    """Split chat-completions messages into a system instruction and contents."""
    system: list[str] = []
    contents: list[types.Content] = []
    call_names: dict[str, str] = {}

    for message in messages:
        role = message.get("role")
        content = message.get("content")

        if role == "system":
            if content:
                system.append(content)
            continue

        if role == "assistant":
            parts = [types.Part(text=content)] if content else []
            for call in message.get("tool_calls") or []:
                function = call.get("function") or {}
                call_names[call.get("id")] = function.get("name", "")
                parts.append(types.Part(function_call=types.FunctionCall(
                    id=call.get("id"),
                    name=function.get("name"),
                    args=_parse_args(function.get("arguments")),
                )))
            if parts:
                contents.append(types.Content(role="model", parts=parts))
            continue

        if role == "tool":
            call_id = message.get("tool_call_id")
            part = types.Part(function_response=types.FunctionResponse(
                id=call_id,
                name=message.get("name") or call_names.get(call_id, ""),
                response={"result": content},
            ))
            previous = contents[-1] if contents else None
            # responses to one batch of calls go back as a single turn
            if previous is not None and previous.role == "user" and all(
                p.function_response is not None for p in previous.parts
            ):
                previous.parts.append(part)
            else:
                contents.append(types.Content(role="user", parts=[part]))
            continue

        parts = _user_parts(content)
        if parts:
            contents.append(types.Content(role="user", parts=parts))

    return ("\n\n".join(system) or None), contents


def to_gemini_tool_config(tool_choice: Any) -> Optional[dict]:
    if tool_choice is None:
        return None
    if isinstance(tool_choice, str):
        mode = _TOOL_CHOICE_MODES.get(tool_choice)
        return {"function_calling_config": {"mode": mode}} if mode else None
    name = ((tool_choice or {}).get("function") or {}).get("name")
    if name:
        return {"function_calling_config": {"mode": "ANY", "allowed_function_names": [name]}}
    return None


def _usage(metadata) -> Optional[dict]:
    if metadata is None:
        return None
    return {
        "prompt_tokens": metadata.prompt_token_count or 0,
        "completion_tokens": metadata.candidates_token_count or 0,
        "total_tokens": metadata.total_token_count or 0,
    }


def _tool_call(function_call: types.FunctionCall) -> dict:
    return {
        "id": function_call.id or f"call_{uuid.uuid4().hex[:24]}",
        "type": "function",
        "function": {
            "name": function_call.name,
            "arguments": json.dumps(function_call.args or {}),
        },
    }


def _finish_reason(candidate, has_calls: bool) -> str:
    if has_calls:
        return "tool_calls"
    if candidate is not None and candidate.finish_reason == types.FinishReason.MAX_TOKENS:
        return "length"
    return "stop"


class GeminiProvider:
    name = "gemini"

    def __init__(self, api_key: Optional[str] = None, client: Optional[genai.Client] = None):
        # api_key None falls back to GEMINI_API_KEY / GOOGLE_API_KEY
        self._client = client or genai.Client(api_key=api_key)

    def _config(
        self,
        system_instruction: Optional[str],
        tools: Optional[Sequence[ToolDescriptor]],
        tool_choice: Any = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        config: dict[str, Any] = {}
        if system_instruction:
            config["system_instruction"] = system_instruction
        if tools:
            config["tools"] = [{"function_declarations": [t.to_gemini() for t in tools]}]
            tool_config = to_gemini_tool_config(tool_choice)
            if tool_config:
                config["tool_config"] = tool_config
        if max_tokens is not None:
            config["max_output_tokens"] = max_tokens
        return config

    async def stream_completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> AsyncIterator[StreamChunk]:
        system_instruction, contents = to_gemini_contents(messages)
        calls: list[dict] = []
        usage = None
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=model,
                contents=contents,
                config=self._config(system_instruction, tools),
            )
            async for chunk in stream:
                usage = _usage(chunk.usage_metadata) or usage
                if not chunk.candidates or chunk.candidates[0].content is None:
                    continue
                for part in chunk.candidates[0].content.parts or []:
                    if part.function_call is not None:
                        calls.append(_tool_call(part.function_call))
                    elif part.text and part.thought:
                        yield ReasoningDelta(part.text)
                    elif part.text:
                        yield TextDelta(part.text)
        except errors.APIError as e:
            logger.error("Gemini error %s: %s", e.code, e.message)
            raise CompletionProviderError(e.message or str(e), status_code=e.code, body=e.details) from e

        if usage:
            yield UsageReport(usage)
        if calls:
            yield ToolCallBatch(tuple(calls))

    async def completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
        tool_choice: Any = None,
        max_tokens: Optional[int] = None,
    ) -> dict:
        """Non-streaming completion, returned in chat-completions shape."""
        system_instruction, contents = to_gemini_contents(messages)
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=self._config(system_instruction, tools, tool_choice, max_tokens),
            )
        except errors.APIError as e:
            logger.error("Gemini error %s: %s", e.code, e.message)
            raise CompletionProviderError(e.message or str(e), status_code=e.code, body=e.details) from e

        candidate = response.candidates[0] if response.candidates else None
        text, calls = [], []
        if candidate is not None and candidate.content is not None:
            for part in candidate.content.parts or []:
                if part.function_call is not None:
                    calls.append(_tool_call(part.function_call))
                elif part.text and not part.thought:
                    text.append(part.text)

        message: dict[str, Any] = {"role": "assistant", "content": "".join(text)}
        if calls:
            message["tool_calls"] = calls
        result: dict[str, Any] = {
            "choices": [{"message": message, "finish_reason": _finish_reason(candidate, bool(calls))}],
        }
        usage = _usage(response.usage_metadata)
        if usage:
            result["usage"] = usage
        return result

    async def aclose(self) -> None:
        pass
