"""Completion provider contract.

Providers speak the chat-completions message shape
(``{"role", "content", "tool_calls"?, "tool_call_id"?}``) and take the
tool catalog as ToolDescriptors, serializing them into their own
declaration format.

``stream_completion`` yields stream chunks. Text and reasoning arrive as
deltas; tool calls are buffered by the provider and delivered as one
``ToolCallBatch`` once the model has finished emitting them.

``completion`` returns ``{"choices": [{"message", "finish_reason"}],
"usage"?}`` and is used by the sampling bridge.
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol, Sequence, Union

from catalog import ToolDescriptor


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallBatch:
    calls: tuple  # chat-completions tool_call dicts


@dataclass(frozen=True)
class UsageReport:
    usage: dict


StreamChunk = Union[TextDelta, ReasoningDelta, ToolCallBatch, UsageReport]


class CompletionProvider(Protocol):
    name: str

    def stream_completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> AsyncIterator[StreamChunk]: ...

    async def completion(
        self,
        model: str,
        messages: list[dict],
        tools: Optional[Sequence[ToolDescriptor]] = None,
        tool_choice: Any = None,
        max_tokens: Optional[int] = None,
    ) -> dict: ...
