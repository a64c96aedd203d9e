"""Multi-server MCP client.

Connects to every enabled server in mcp_config.json over stdio,
streamable HTTP or SSE. Each connection lists and calls tools for the
catalog and router, and forwards the server's sampling requests,
elicitation requests and notifications to a ``SessionHandlers`` object
(the chat service) as plain dicts.
"""

import logging
from contextlib import AsyncExitStack
from typing import Any, Optional, Protocol

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError

from catalog import ToolDescriptor
from config import ServerConfig
from elicitation import URL_ELICITATION_REQUIRED, UrlElicitationRequiredError
from errors import SamplingRejectedError

logger = logging.getLogger(__name__)

# JSON-RPC code for a request the user turned down
USER_REJECTED = -1

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
    "alert": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}


def _dump(model) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(by_alias=True, mode="json", exclude_none=True)


class SessionHandlers(Protocol):
    async def handle_sampling(self, server_id: str, request_id: Any, params: dict) -> dict: ...

    async def handle_elicitation(self, server_id: str, request_id: Any, params: dict) -> dict: ...

    async def handle_notification(
        self, server_id: str, server_name: str, method: str, params: Optional[dict]
    ) -> None: ...


class MCPServerConnection:
    """One session with one MCP server."""

    def __init__(self, config: ServerConfig, handlers: Optional[SessionHandlers] = None):
        self.config = config
        self.server_id = config.server_id
        self.name = config.name
        self.handlers = handlers
        self.session: Optional[ClientSession] = None
        self._exit_stack = AsyncExitStack()

    def _transport(self):
        match self.config.transport:
            case "stdio":
                return stdio_client(StdioServerParameters(
                    command=self.config.command,
                    args=list(self.config.args),
                    env=self.config.env,
                ))
            case "sse":
                return sse_client(self.config.url, headers=self.config.headers)
            case _:
                return streamablehttp_client(self.config.url, headers=self.config.headers)

    async def connect(self) -> None:
        transport = await self._exit_stack.enter_async_context(self._transport())
        read_stream, write_stream = transport[0], transport[1]
        self.session = await self._exit_stack.enter_async_context(
            ClientSession(
                read_stream,
                write_stream,
                sampling_callback=self._sampling_callback,
                elicitation_callback=self._elicitation_callback,
                logging_callback=self._logging_callback,
                message_handler=self._message_handler,
            )
        )
        await self.session.initialize()

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError(f"MCP server {self.name!r} is not connected")
        return self.session

    async def list_tools(self) -> list[ToolDescriptor]:
        response = await self._require_session().list_tools()
        return [
            ToolDescriptor(
                name=tool.name,
                description=tool.description,
                input_schema=tool.inputSchema or {},
                owner_server_id=self.server_id,
            )
            for tool in response.tools
        ]

    async def call_tool(self, name: str, arguments: dict) -> dict[str, Any]:
        try:
            result = await self._require_session().call_tool(name=name, arguments=arguments)
        except McpError as e:
            if e.error.code == URL_ELICITATION_REQUIRED:
                raise UrlElicitationRequiredError.from_error(_dump(e.error)) from e
            raise
        return _dump(result)

    async def _sampling_callback(self, context, params: types.CreateMessageRequestParams):
        if self.handlers is None:
            return types.ErrorData(code=types.INVALID_REQUEST, message="Sampling not supported")
        try:
            result = await self.handlers.handle_sampling(
                self.server_id, context.request_id, _dump(params)
            )
            return types.CreateMessageResult.model_validate(result)
        except SamplingRejectedError as e:
            return types.ErrorData(code=USER_REJECTED, message=str(e))
        except Exception as e:
            # goes back to the server as the JSON-RPC error
            logger.warning("[mcp] %s: sampling failed: %s", self.name, e)
            return types.ErrorData(code=types.INTERNAL_ERROR, message=str(e))

    async def _elicitation_callback(self, context, params: types.ElicitRequestParams):
        if self.handlers is None:
            return types.ErrorData(code=types.INVALID_REQUEST, message="Elicitation not supported")
        try:
            response = await self.handlers.handle_elicitation(
                self.server_id, context.request_id, _dump(params)
            )
            return types.ElicitResult.model_validate(response["result"])
        except Exception as e:
            logger.warning("[mcp] %s: elicitation failed: %s", self.name, e)
            return types.ErrorData(code=types.INTERNAL_ERROR, message=str(e))

    async def _logging_callback(self, params: types.LoggingMessageNotificationParams) -> None:
        level = _LOG_LEVELS.get(str(params.level), logging.INFO)
        logger.log(level, "[mcp] %s: %s", self.name, params.data)

    async def _message_handler(self, message) -> None:
        if isinstance(message, Exception):
            logger.warning("[mcp] %s: session error: %s", self.name, message)
            return
        # requests arrive through the callbacks above
        if not isinstance(message, types.ServerNotification) or self.handlers is None:
            return
        notification = message.root
        await self.handlers.handle_notification(
            self.server_id,
            self.name,
            notification.method,
            _dump(getattr(notification, "params", None)),
        )

    async def close(self) -> None:
        await self._exit_stack.aclose()
        self.session = None


class MCPClient:
    """Connects to all configured servers and keeps them in config order."""

    def __init__(self, configs: list[ServerConfig], handlers: Optional[SessionHandlers] = None):
        self.configs = configs
        self.handlers = handlers
        # server_id -> connection; shared with the tool router
        self.connections: dict[str, MCPServerConnection] = {}

    async def connect(self) -> None:
        for config in self.configs:
            if not config.enabled:
                logger.info("[mcp] Skipping disabled server '%s'", config.name)
                continue
            connection = MCPServerConnection(config, self.handlers)
            try:
                await connection.connect()
            except Exception as e:
                logger.error("[mcp] Failed to connect to '%s': %s", config.name, e)
                await connection.close()
                continue
            self.connections[config.server_id] = connection
            logger.info("[mcp] Connected to '%s' over %s", config.name, config.transport)

    async def close(self) -> None:
        for connection in reversed(list(self.connections.values())):
            try:
                await connection.close()
            except Exception as e:
                logger.warning("[mcp] Error closing '%s': %s", connection.name, e)
        self.connections.clear()
