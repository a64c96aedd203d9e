"""Chat events and the emitter that broadcasts them.

The orchestrator is the single producer. Consumers either register a
callback (``add_listener``) or iterate a subscription (``subscribe``).
Every consumer sees every event once, in emission order, starting from the
moment it subscribed.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, AsyncIterator, Callable, ClassVar, Optional

from models import Message

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Discriminator for ChatEvent subclasses."""
    STREAMING_STARTED = auto()
    CONTENT_CHUNK = auto()
    REASONING_CHUNK = auto()
    MESSAGE_CREATED = auto()
    TOOL_EXECUTION_STARTED = auto()
    TOOL_EXECUTION_FINISHED = auto()
    SAMPLING_REQUEST_RECEIVED = auto()
    ELICITATION_REQUEST_RECEIVED = auto()
    PROGRESS_NOTIFICATION = auto()
    TOOLS_LIST_CHANGED = auto()
    RESOURCES_LIST_CHANGED = auto()
    NOTIFICATION_RECEIVED = auto()
    AUTHENTICATION_REQUIRED = auto()
    ERROR_OCCURRED = auto()
    MAX_ITERATIONS_REACHED = auto()
    CONVERSATION_COMPLETE = auto()


@dataclass(frozen=True)
class ChatEvent:
    type: ClassVar[EventType]


@dataclass(frozen=True)
class StreamingStarted(ChatEvent):
    type: ClassVar[EventType] = EventType.STREAMING_STARTED
    iteration: int


@dataclass(frozen=True)
class ContentChunk(ChatEvent):
    """Accumulated assistant text so far, not just the delta."""
    type: ClassVar[EventType] = EventType.CONTENT_CHUNK
    content: str


@dataclass(frozen=True)
class ReasoningChunk(ChatEvent):
    type: ClassVar[EventType] = EventType.REASONING_CHUNK
    content: str


@dataclass(frozen=True)
class MessageCreated(ChatEvent):
    type: ClassVar[EventType] = EventType.MESSAGE_CREATED
    message: Message


@dataclass(frozen=True)
class ToolExecutionStarted(ChatEvent):
    type: ClassVar[EventType] = EventType.TOOL_EXECUTION_STARTED
    call_id: str
    tool_name: str
    server_id: Optional[str] = None


@dataclass(frozen=True)
class ToolExecutionFinished(ChatEvent):
    type: ClassVar[EventType] = EventType.TOOL_EXECUTION_FINISHED
    call_id: str
    tool_name: str
    result: str
    is_error: bool = False


@dataclass(frozen=True)
class SamplingRequestReceived(ChatEvent):
    """A server asked for an LLM completion and is waiting for approval.

    Resolve it with ``SamplingBridge.approve``/``reject`` using ``request_id``.
    """
    type: ClassVar[EventType] = EventType.SAMPLING_REQUEST_RECEIVED
    request_id: str
    server_id: str
    params: dict


@dataclass(frozen=True)
class ElicitationRequestReceived(ChatEvent):
    type: ClassVar[EventType] = EventType.ELICITATION_REQUEST_RECEIVED
    request: Any  # elicitation.ElicitationRequest
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ProgressNotification(ChatEvent):
    type: ClassVar[EventType] = EventType.PROGRESS_NOTIFICATION
    server_id: str
    progress: float
    total: Optional[float] = None
    message: Optional[str] = None
    progress_token: Any = None

    @property
    def percentage(self) -> Optional[float]:
        """Progress as 0-100 when the total is known."""
        if not self.total:
            return None
        return self.progress / self.total * 100


@dataclass(frozen=True)
class ToolsListChanged(ChatEvent):
    type: ClassVar[EventType] = EventType.TOOLS_LIST_CHANGED
    server_id: str


@dataclass(frozen=True)
class ResourcesListChanged(ChatEvent):
    type: ClassVar[EventType] = EventType.RESOURCES_LIST_CHANGED
    server_id: str


@dataclass(frozen=True)
class NotificationReceived(ChatEvent):
    type: ClassVar[EventType] = EventType.NOTIFICATION_RECEIVED
    server_id: str
    server_name: str
    method: str
    params: Optional[dict] = None


@dataclass(frozen=True)
class AuthenticationRequired(ChatEvent):
    type: ClassVar[EventType] = EventType.AUTHENTICATION_REQUIRED
    provider: str = ""


@dataclass(frozen=True)
class ErrorOccurred(ChatEvent):
    type: ClassVar[EventType] = EventType.ERROR_OCCURRED
    message: str
    status_code: Optional[int] = None
    kind: str = "error"

    @property
    def payment_required(self) -> bool:
        return self.status_code == 402


@dataclass(frozen=True)
class MaxIterationsReached(ChatEvent):
    type: ClassVar[EventType] = EventType.MAX_ITERATIONS_REACHED
    iterations: int


@dataclass(frozen=True)
class ConversationComplete(ChatEvent):
    type: ClassVar[EventType] = EventType.CONVERSATION_COMPLETE
    conversation_id: str
    truncated: bool = False


_CLOSED = object()


class EventEmitter:
    """Broadcasts ChatEvents to listeners and subscriptions."""

    def __init__(self):
        self._listeners: list[Callable[[ChatEvent], None]] = []
        self._queues: list[asyncio.Queue] = []
        self._closed = False

    def add_listener(self, callback: Callable[[ChatEvent], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it."""
        self._listeners.append(callback)
        return lambda: self._listeners.remove(callback) if callback in self._listeners else None

    def subscribe(self) -> AsyncIterator[ChatEvent]:
        """Return an async iterator over events emitted from now on."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        return self._drain(queue)

    async def _drain(self, queue: asyncio.Queue) -> AsyncIterator[ChatEvent]:
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    return
                yield event
        finally:
            if queue in self._queues:
                self._queues.remove(queue)

    def emit(self, event: ChatEvent) -> None:
        if self._closed:
            logger.debug("Dropping %s after close", event.type.name)
            return
        # each consumer gets its own copy; payload dicts are shared with internal state
        for queue in list(self._queues):
            queue.put_nowait(copy.deepcopy(event))
        for callback in list(self._listeners):
            try:
                callback(copy.deepcopy(event))
            except Exception:
                logger.exception("Event listener failed on %s", event.type.name)

    def close(self) -> None:
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues) + len(self._listeners)
