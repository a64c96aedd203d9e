"""Sampling bridge: MCP ``sampling/createMessage`` -> LLM completion.

A server asks the client to run a completion on its behalf. The request
is converted to chat-completions messages, sent to the provider, and the
answer is converted back into MCP's content-block shape. Requests that
carry tools run a bounded inner tool loop.

Inbound requests wait for a human decision: they are parked in a
registry keyed by MCP request id until ``approve`` or ``reject`` is
called with that id.
"""

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Sequence

from catalog import ToolDescriptor
from completion import CompletionProvider
from errors import ProtocolFormatError, SamplingRejectedError
from events import SamplingRequestReceived
from models import ToolCall
from schema import TextBlock, ToolResultBlock, ToolUseBlock, parse_content

logger = logging.getLogger(__name__)

DEFAULT_MAX_SAMPLING_ITERATIONS = 10

_FINISH_REASONS = {
    "stop": "endTurn",
    "length": "maxTokens",
    "tool_calls": "toolUse",
}


def convert_finish_reason(finish_reason: Optional[str]) -> str:
    """Map a chat-completions finish_reason to an MCP stopReason."""
    return _FINISH_REASONS.get(finish_reason, "endTurn")


def select_model(params: dict, preferred_model: Optional[str], default_model: str) -> str:
    """The first named model hint wins; otherwise the preferred model."""
    hints = (params.get("modelPreferences") or {}).get("hints") or []
    for hint in hints:
        name = hint.get("name") if isinstance(hint, dict) else None
        if name:
            return name
    return preferred_model or default_model


def convert_tool_choice(tool_choice: Optional[dict]) -> Any:
    if not tool_choice:
        return None
    choice_type = tool_choice.get("type") or tool_choice.get("mode")
    if choice_type in ("none", "auto", "required"):
        return choice_type
    if choice_type == "tool" or tool_choice.get("name"):
        return {"type": "function", "function": {"name": tool_choice.get("name")}}
    return None


def convert_tools(tools: Optional[list]) -> list[ToolDescriptor]:
    converted = []
    for tool in tools or []:
        try:
            converted.append(ToolDescriptor.from_json(tool))
        except (KeyError, TypeError):
            logger.warning("Skipping malformed sampling tool: %r", tool)
    return converted


def convert_messages(params: dict) -> list[dict]:
    """Convert MCP sampling messages to chat-completions messages.

    Only text reaches the provider. Image and audio blocks are dropped.
    Assistant ``tool_use`` blocks become ``tool_calls`` and ``tool_result``
    blocks become ``tool`` messages.
    """
    api_messages: list[dict] = []
    system_prompt = params.get("systemPrompt")
    if system_prompt:
        api_messages.append({"role": "system", "content": system_prompt})

    for message in params.get("messages") or []:
        role = message.get("role")
        if role not in ("user", "assistant"):
            raise ProtocolFormatError(f"Unsupported sampling message role: {role!r}")

        blocks = parse_content(message.get("content"))
        texts = [b.text for b in blocks if isinstance(b, TextBlock)]
        tool_uses = [b for b in blocks if isinstance(b, ToolUseBlock)]
        tool_results = [b for b in blocks if isinstance(b, ToolResultBlock)]

        if role == "assistant" and tool_uses:
            api_message = {
                "role": "assistant",
                "tool_calls": [
                    ToolCall(b.id, b.name, json.dumps(b.input)).to_api() for b in tool_uses
                ],
            }
            if texts:
                api_message["content"] = "\n".join(texts)
            api_messages.append(api_message)
        elif tool_results:
            for block in tool_results:
                api_messages.append({
                    "role": "tool",
                    "tool_call_id": block.tool_use_id,
                    "content": block.text,
                })
            if any(texts):
                api_messages.append({"role": role, "content": "\n".join(texts)})
        elif texts:
            api_messages.append({"role": role, "content": "\n".join(texts)})

    return api_messages


def _tool_input(call: ToolCall) -> dict:
    try:
        parsed = json.loads(call.arguments_json or "{}")
    except json.JSONDecodeError as e:
        logger.warning("Unparseable arguments for %s: %s", call.tool_name, e)
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ToolExecutor(Protocol):
    def owns(self, tool_name: str) -> bool: ...

    async def execute_batch(self, calls: Sequence[ToolCall]) -> list: ...


@dataclass
class PendingSamplingRequest:
    request_id: str
    server_id: str
    params: dict
    future: asyncio.Future = field(repr=False)


class SamplingBridge:
    def __init__(
        self,
        provider: CompletionProvider,
        emit: Callable = lambda event: None,
        default_model: str = "",
        max_iterations: int = DEFAULT_MAX_SAMPLING_ITERATIONS,
        tool_executor: Optional[ToolExecutor] = None,
        auto_approve: bool = False,
    ):
        self.provider = provider
        self.emit = emit
        self.default_model = default_model
        self.max_iterations = max_iterations
        self.tool_executor = tool_executor
        self.auto_approve = auto_approve
        # updated by the chat service as the active conversation changes
        self.preferred_model: Optional[str] = None
        self._pending: dict[str, PendingSamplingRequest] = {}

    @property
    def pending(self) -> list[PendingSamplingRequest]:
        return list(self._pending.values())

    async def process_sampling_request(
        self,
        request: dict,
        preferred_model: Optional[str] = None,
    ) -> dict:
        """Run a sampling request and return the MCP ``CreateMessageResult``.

        Args:
            request: Either the JSON-RPC request ``{"params": {...}}`` or the
                params object itself.
            preferred_model: Used unless the request names a model hint.

        Returns:
            ``{"role", "content", "model", "stopReason"}``. ``content`` is a
            single text block, or a list of ``tool_use`` blocks when the
            model wants tools run.
        """
        params = request.get("params", request) if isinstance(request, dict) else None
        if not isinstance(params, dict):
            raise ProtocolFormatError("Sampling request has no params")

        model = select_model(params, preferred_model or self.preferred_model, self.default_model)
        api_messages = convert_messages(params)
        tools = convert_tools(params.get("tools"))
        tool_choice = convert_tool_choice(params.get("toolChoice"))
        max_tokens = params.get("maxTokens")

        for iteration in range(1, self.max_iterations + 1):
            logger.info(
                "Sampling iteration %d: %d messages, model %s, %d tools",
                iteration, len(api_messages), model, len(tools),
            )
            response = await self.provider.completion(
                model,
                api_messages,
                tools=tools or None,
                tool_choice=tool_choice,
                max_tokens=max_tokens,
            )
            choices = response.get("choices") or []
            if not choices:
                raise ProtocolFormatError("Completion response has no choices")
            message = choices[0].get("message") or {}
            finish_reason = choices[0].get("finish_reason")

            raw_calls = message.get("tool_calls") or []
            if not raw_calls:
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": message.get("content") or ""},
                    "model": model,
                    "stopReason": convert_finish_reason(finish_reason),
                }

            calls = [ToolCall.from_api(c) for c in raw_calls]
            if iteration == self.max_iterations or not self._can_execute(calls):
                return self._tool_use_response(calls, model)

            try:
                results = await self.tool_executor.execute_batch(calls)
            except Exception as e:
                logger.exception("Sampling tool execution failed")
                return {
                    "role": "assistant",
                    "content": {"type": "text", "text": f"Error during tool execution: {e}"},
                    "model": model,
                    "stopReason": "endTurn",
                }
            api_messages.append({
                "role": "assistant",
                "content": message.get("content"),
                "tool_calls": [c.to_api() for c in calls],
            })
            for result in results:
                api_messages.append({
                    "role": "tool",
                    "tool_call_id": result.call_id,
                    "content": result.content,
                })

        # only reachable with max_iterations < 1
        return {
            "role": "assistant",
            "content": {"type": "text", "text": ""},
            "model": model,
            "stopReason": "endTurn",
        }

    def _can_execute(self, calls: list[ToolCall]) -> bool:
        if self.tool_executor is None:
            return False
        return all(self.tool_executor.owns(c.tool_name) for c in calls)

    @staticmethod
    def _tool_use_response(calls: list[ToolCall], model: str) -> dict:
        return {
            "role": "assistant",
            "content": [
                ToolUseBlock(id=c.call_id, name=c.tool_name, input=_tool_input(c)).to_json()
                for c in calls
            ],
            "model": model,
            "stopReason": "toolUse",
        }

    async def handle_request(self, server_id: str, request_id: Any, params: dict) -> dict:
        """Inbound entry point: wait for approval, then run the request."""
        if self.auto_approve:
            return await self.process_sampling_request(params)

        request_id = str(request_id)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = PendingSamplingRequest(
            request_id=request_id,
            server_id=server_id,
            params=params,
            future=future,
        )
        self.emit(SamplingRequestReceived(
            request_id=request_id,
            server_id=server_id,
            params=copy.deepcopy(params),
        ))
        try:
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def approve(
        self,
        request_id: str,
        edited_params: Optional[dict] = None,
        preferred_model: Optional[str] = None,
    ) -> dict:
        """Run an approved request, possibly edited, and answer the server."""
        pending = self._get(request_id)
        try:
            response = await self.process_sampling_request(
                edited_params or pending.params, preferred_model
            )
        except Exception as e:
            if not pending.future.done():
                pending.future.set_exception(e)
            raise
        if not pending.future.done():
            pending.future.set_result(response)
        return response

    def reject(self, request_id: str) -> None:
        pending = self._get(request_id)
        logger.info("Sampling request %s rejected", request_id)
        if not pending.future.done():
            pending.future.set_exception(SamplingRejectedError())

    def _get(self, request_id: Any) -> PendingSamplingRequest:
        pending = self._pending.get(str(request_id))
        if pending is None:
            raise KeyError(f"No pending sampling request {request_id}")
        return pending
