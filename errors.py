"""Error taxonomy for the chat client.

Tool-level errors never escape the tool router; they are attached to the
ToolResult and their text goes to the LLM. The classes below give each
failure a name so callers and tests can tell them apart.
"""

from typing import Any, Optional


class ChatClientError(Exception):
    """Base class for every error raised by the chat client."""


class ToolNotFound(ChatClientError):
    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolArgumentParseError(ChatClientError):
    def __init__(self, detail: str):
        super().__init__(f"Failed to parse tool arguments: {detail}")


class ToolExecutionError(ChatClientError):
    def __init__(self, detail: str):
        super().__init__(f"Error executing tool: {detail}")


class CompletionProviderError(ChatClientError):
    """Network, auth or rate-limit failure from the LLM endpoint.

    The raw message is preserved so callers can show it verbatim.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body

    @property
    def payment_required(self) -> bool:
        return self.status_code == 402

    @property
    def authentication_required(self) -> bool:
        return self.status_code == 401


class SamplingRejectedError(ChatClientError):
    def __init__(self, message: str = "Sampling request rejected by user"):
        super().__init__(message)


class ProtocolFormatError(ChatClientError):
    """An MCP payload did not have the shape we expected."""
