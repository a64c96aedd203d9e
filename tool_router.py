"""Routes tool calls to the MCP server that owns each tool.

Nothing here raises on a bad call. Unknown tools, unparseable arguments
and server failures all come back as an error ToolResult whose text is
handed to the LLM like any other tool output.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from catalog import EMPTY_CATALOG, ToolCatalog, ToolServer
from elicitation import UrlElicitationRequiredError
from errors import ChatClientError, ToolArgumentParseError, ToolExecutionError, ToolNotFound
from events import ChatEvent, ToolExecutionFinished, ToolExecutionStarted
from models import Attachment, Message, MessageRole, ToolCall
from schema import AudioBlock, ImageBlock, TextBlock, parse_content

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool_name: str
    content: str
    is_error: bool = False
    server_id: Optional[str] = None
    images: tuple[Attachment, ...] = ()
    audio: tuple[Attachment, ...] = ()
    error: Optional[ChatClientError] = None

    @property
    def error_kind(self) -> Optional[str]:
        return type(self.error).__name__ if self.error is not None else None

    def to_message(self, conversation_id: str) -> Message:
        return Message(
            conversation_id=conversation_id,
            role=MessageRole.TOOL,
            content=self.content,
            tool_call_id=self.call_id,
            tool_name=self.tool_name,
            images=self.images,
            audio=self.audio,
        )


Emit = Callable[[ChatEvent], None]


def _no_emit(event: ChatEvent) -> None:
    pass


class ToolRouter:
    def __init__(
        self,
        servers: Mapping[str, ToolServer],
        catalog: ToolCatalog = EMPTY_CATALOG,
        on_url_elicitation: Optional[Callable[[UrlElicitationRequiredError], Awaitable[None]]] = None,
    ):
        self.servers = servers
        # replaced wholesale when the catalog is rebuilt
        self.catalog = catalog
        self.on_url_elicitation = on_url_elicitation

    def owns(self, tool_name: str) -> bool:
        server_id = self.catalog.owner_of(tool_name)
        return server_id is not None and server_id in self.servers

    async def execute(
        self,
        call_id: str,
        tool_name: str,
        arguments_json: str,
        emit: Emit = _no_emit,
    ) -> ToolResult:
        server_id = self.catalog.owner_of(tool_name)
        emit(ToolExecutionStarted(call_id=call_id, tool_name=tool_name, server_id=server_id))
        result = await self._dispatch(call_id, tool_name, arguments_json, server_id)
        emit(ToolExecutionFinished(
            call_id=call_id,
            tool_name=tool_name,
            result=result.content,
            is_error=result.is_error,
        ))
        return result

    async def execute_batch(
        self,
        calls: Sequence[ToolCall],
        emit: Emit = _no_emit,
    ) -> list[ToolResult]:
        """Run every call concurrently. Results come back in call order."""
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(self.execute(c.call_id, c.tool_name, c.arguments_json, emit))
                for c in calls
            ]
        return [task.result() for task in tasks]

    async def _dispatch(
        self,
        call_id: str,
        tool_name: str,
        arguments_json: str,
        server_id: Optional[str],
    ) -> ToolResult:
        def failed(error: ChatClientError) -> ToolResult:
            return ToolResult(
                call_id=call_id,
                tool_name=tool_name,
                content=str(error),
                is_error=True,
                server_id=server_id,
                error=error,
            )

        server = self.servers.get(server_id) if server_id else None
        if server is None:
            logger.warning("No server owns tool %r", tool_name)
            return failed(ToolNotFound(tool_name))

        try:
            arguments = json.loads(arguments_json) if arguments_json and arguments_json.strip() else {}
        except json.JSONDecodeError as e:
            return failed(ToolArgumentParseError(str(e)))
        if not isinstance(arguments, dict):
            return failed(ToolArgumentParseError(f"expected a JSON object, got {type(arguments).__name__}"))

        logger.info("[tool] %s(%s) -> %s", tool_name, arguments, server_id)
        try:
            raw = await server.call_tool(tool_name, arguments)
        except UrlElicitationRequiredError as e:
            if self.on_url_elicitation is not None:
                try:
                    await self.on_url_elicitation(e)
                except Exception:
                    logger.exception("Could not register URL elicitation for %s", tool_name)
            return failed(ToolExecutionError(e.message))
        except Exception as e:
            logger.warning("[tool] %s failed: %s", tool_name, e)
            return failed(ToolExecutionError(str(e)))

        blocks = parse_content((raw or {}).get("content"))
        text = "\n".join(b.text for b in blocks if isinstance(b, TextBlock))
        images = tuple(Attachment(b.data, b.mime_type) for b in blocks if isinstance(b, ImageBlock))
        audio = tuple(Attachment(b.data, b.mime_type) for b in blocks if isinstance(b, AudioBlock))

        if (raw or {}).get("isError"):
            error = ToolExecutionError(text)
            return ToolResult(
                call_id=call_id,
                tool_name=tool_name,
                content=str(error),
                is_error=True,
                server_id=server_id,
                images=images,
                audio=audio,
                error=error,
            )
        return ToolResult(
            call_id=call_id,
            tool_name=tool_name,
            content=text,
            server_id=server_id,
            images=images,
            audio=audio,
        )
