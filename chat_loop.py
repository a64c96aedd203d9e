"""ChatLoop: the agentic loop between the LLM and MCP tools.

Each iteration streams a completion for the whole history plus the tool
catalog. Plain text ends the loop. A tool-call batch is executed
concurrently through the ToolRouter, the results are appended, and the
loop goes round again until the model answers or the iteration cap is
reached. UI-agnostic: everything observable goes out as ChatEvents.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Sequence

from catalog import ToolDescriptor
from completion import CompletionProvider, ReasoningDelta, TextDelta, ToolCallBatch, UsageReport
from errors import CompletionProviderError
from events import (
    AuthenticationRequired,
    ChatEvent,
    ContentChunk,
    ConversationComplete,
    ErrorOccurred,
    EventEmitter,
    MaxIterationsReached,
    MessageCreated,
    ReasoningChunk,
    StreamingStarted,
)
from models import Message, MessageRole, ToolCall, Usage
from tool_router import ToolRouter

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant.\nUse markdown when rendering your responses."
DEFAULT_MAX_ITERATIONS = 10


class LoopState(Enum):
    IDLE = auto()
    AWAITING_COMPLETION = auto()
    STREAMING_TEXT = auto()
    AWAITING_TOOL_RESULTS = auto()
    DONE = auto()
    ABORTED = auto()


@dataclass
class LoopResult:
    state: LoopState
    messages: list[Message] = field(default_factory=list)  # committed by this run
    iterations: int = 0
    truncated: bool = False
    error: Optional[CompletionProviderError] = None


@dataclass
class _Turn:
    content: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None


class _LoopCancelled(Exception):
    pass


def split_last_turn(messages: Sequence[Message]) -> tuple[list[Message], list[Message]]:
    """Split history into (kept, removed) for regenerating the last answer.

    Removes the assistant and tool messages after the last user message.
    Anything else after it (notifications, elicitation cards) is kept.
    """
    last_user = None
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == MessageRole.USER:
            last_user = i
            break
    if last_user is None:
        return list(messages), []

    kept = list(messages[: last_user + 1])
    removed = []
    for message in messages[last_user + 1:]:
        if message.role in (MessageRole.ASSISTANT, MessageRole.TOOL):
            removed.append(message)
        else:
            kept.append(message)
    return kept, removed


class ChatLoop:
    """One invocation of the agentic loop. Create a new one per run."""

    def __init__(
        self,
        provider: CompletionProvider,
        router: ToolRouter,
        emitter: EventEmitter,
        store=None,
        system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
    ):
        self.provider = provider
        self.router = router
        self.emitter = emitter
        self.store = store
        self.system_prompt = system_prompt
        self.state = LoopState.IDLE

        self._cancelled = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._task_cancel_sent = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop the loop at its next suspension point.

        No further events are emitted for this run and nothing that was
        not already committed gets persisted.
        """
        if self.state in (LoopState.DONE, LoopState.ABORTED):
            return
        self._cancelled.set()
        if self._task is not None and self._task is not asyncio.current_task() and not self._task.done():
            self._task_cancel_sent = True
            self._task.cancel()

    def _emit(self, event: ChatEvent) -> None:
        if not self._cancelled.is_set():
            self.emitter.emit(event)

    def _check_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise _LoopCancelled()

    async def run(
        self,
        conversation_id: str,
        model: str,
        messages: Sequence[Message],
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        tools: Optional[Sequence[ToolDescriptor]] = None,
    ) -> LoopResult:
        """Run until the model answers, the cap is hit, or the run is cancelled.

        Args:
            conversation_id: Conversation the new messages belong to.
            model: Model identifier, fixed for the whole run.
            messages: History to start from. Copied; the caller's list is
                never modified.
            max_iterations: Number of completion requests allowed.
            tools: Tool declarations to offer. Defaults to the router's
                current catalog.
        """
        if self.state != LoopState.IDLE:
            raise RuntimeError("ChatLoop instances run once")
        self._task = asyncio.current_task()
        history = list(messages)
        committed: list[Message] = []
        iteration = 0

        try:
            while iteration < max_iterations:
                self._check_cancelled()
                iteration += 1
                self.state = LoopState.AWAITING_COMPLETION
                self._emit(StreamingStarted(iteration=iteration))

                offered = list(tools) if tools is not None else list(self.router.catalog.tools)
                logger.info(
                    "Iteration %d: %d messages, %d tools, model %s",
                    iteration, len(history), len(offered), model,
                )
                turn = await self._stream_turn(model, self._api_messages(history), offered)
                self._check_cancelled()

                if not turn.tool_calls:
                    final = Message(
                        conversation_id=conversation_id,
                        role=MessageRole.ASSISTANT,
                        content=turn.content,
                        reasoning=turn.reasoning.strip() or None,
                        usage=turn.usage,
                    )
                    await self._commit([final], history, committed)
                    self.state = LoopState.DONE
                    self._emit(ConversationComplete(conversation_id=conversation_id))
                    return LoopResult(LoopState.DONE, committed, iteration)

                self.state = LoopState.AWAITING_TOOL_RESULTS
                logger.info("Executing %d tool call(s)", len(turn.tool_calls))
                results = await self.router.execute_batch(turn.tool_calls, emit=self._emit)
                self._check_cancelled()

                assistant = Message(
                    conversation_id=conversation_id,
                    role=MessageRole.ASSISTANT,
                    content=turn.content.strip(),
                    reasoning=turn.reasoning.strip() or None,
                    tool_calls=tuple(turn.tool_calls),
                    usage=turn.usage,
                )
                tool_messages = [r.to_message(conversation_id) for r in results]
                await self._commit([assistant, *tool_messages], history, committed)

            logger.warning("Maximum iterations (%d) reached", max_iterations)
            self.state = LoopState.DONE
            self._emit(MaxIterationsReached(iterations=iteration))
            self._emit(ConversationComplete(conversation_id=conversation_id, truncated=True))
            return LoopResult(LoopState.DONE, committed, iteration, truncated=True)

        except CompletionProviderError as e:
            logger.error("Completion provider error: %s", e.message)
            self.state = LoopState.ABORTED
            if e.authentication_required:
                self._emit(AuthenticationRequired(provider=getattr(self.provider, "name", "")))
            self._emit(ErrorOccurred(
                message=e.message,
                status_code=e.status_code,
                kind="payment_required" if e.payment_required else "completion_provider",
            ))
            return LoopResult(LoopState.ABORTED, committed, iteration, error=e)

        except _LoopCancelled:
            logger.info("Loop cancelled during iteration %d", iteration)
            self.state = LoopState.ABORTED
            return LoopResult(LoopState.ABORTED, committed, iteration)

        except asyncio.CancelledError:
            if not self._task_cancel_sent:
                self.state = LoopState.ABORTED
                raise
            # we cancelled our own task in cancel(); swallow that one request
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.info("Loop cancelled during iteration %d", iteration)
            self.state = LoopState.ABORTED
            return LoopResult(LoopState.ABORTED, committed, iteration)

        finally:
            self._task = None

    def _api_messages(self, history: Sequence[Message]) -> list[dict]:
        api_messages = []
        if self.system_prompt:
            api_messages.append({"role": "system", "content": self.system_prompt})
        for message in history:
            api_message = message.to_api_message()
            if api_message is not None:
                api_messages.append(api_message)
        return api_messages

    async def _stream_turn(
        self,
        model: str,
        api_messages: list[dict],
        tools: list[ToolDescriptor],
    ) -> _Turn:
        turn = _Turn()
        stream = self.provider.stream_completion(model, api_messages, tools or None)
        try:
            async for chunk in stream:
                self._check_cancelled()
                match chunk:
                    case TextDelta(text=text):
                        self.state = LoopState.STREAMING_TEXT
                        turn.content += text
                        self._emit(ContentChunk(content=turn.content))
                    case ReasoningDelta(text=text):
                        turn.reasoning += text
                        self._emit(ReasoningChunk(content=turn.reasoning))
                    case UsageReport(usage=usage):
                        turn.usage = Usage.from_api(usage)
                    case ToolCallBatch(calls=calls):
                        turn.tool_calls.extend(ToolCall.from_api(c) for c in calls)
                        # a batch ends the streaming segment
                        break
        except (CompletionProviderError, _LoopCancelled):
            raise
        except Exception as e:
            raise CompletionProviderError(str(e)) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return turn

    async def _commit(
        self,
        new_messages: list[Message],
        history: list[Message],
        committed: list[Message],
    ) -> None:
        """Persist a finished turn, then announce it."""
        if self.store is not None:
            append_many = getattr(self.store, "append_many", None)
            if append_many is not None:
                await append_many(new_messages)
            else:
                for message in new_messages:
                    await self.store.append(message)
        history.extend(new_messages)
        committed.extend(new_messages)
        for message in new_messages:
            self._emit(MessageCreated(message=message))
