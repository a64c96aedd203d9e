"""MCP content blocks and tool declaration formats.

Servers send loosely typed JSON. This module validates content into a
closed set of block models at the boundary and drops anything it doesn't
know, so the rest of the client never handles raw maps. It also
serializes tool descriptors into each completion provider's declaration
format. Input schemas are passed through as-is; nothing is stripped or
rewritten.
"""

import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from errors import ProtocolFormatError

logger = logging.getLogger(__name__)


class _Block(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class TextBlock(_Block):
    type: Literal["text"] = "text"
    text: str


class ImageBlock(_Block):
    type: Literal["image"] = "image"
    data: str
    mime_type: str = Field(alias="mimeType")


class AudioBlock(_Block):
    type: Literal["audio"] = "audio"
    data: str
    mime_type: str = Field(alias="mimeType")


class ToolUseBlock(_Block):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)

    @field_validator("input", mode="before")
    @classmethod
    def _missing_input(cls, value: Any) -> Any:
        return {} if value is None else value


class ToolResultBlock(_Block):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str = Field(alias="toolUseId")
    # already-parsed blocks; malformed nested blocks are dropped, not fatal
    content: tuple[Any, ...] = ()
    is_error: bool = Field(default=False, alias="isError")

    @field_validator("content", mode="before")
    @classmethod
    def _parse_nested(cls, value: Any) -> tuple:
        if isinstance(value, tuple) and all(isinstance(b, _Block) for b in value):
            return value
        return tuple(parse_content(value))

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def to_json(self) -> dict:
        result = {
            "type": "tool_result",
            "toolUseId": self.tool_use_id,
            "content": [b.to_json() for b in self.content],
        }
        if self.is_error:
            result["isError"] = True
        return result


ContentBlock = Annotated[
    Union[TextBlock, ImageBlock, AudioBlock, ToolUseBlock, ToolResultBlock],
    Field(discriminator="type"),
]

_content_block = TypeAdapter(ContentBlock)
_BLOCK_TYPES = ("text", "image", "audio", "tool_use", "tool_result")


def parse_content_block(raw: Any) -> Optional[ContentBlock]:
    """Parse one content block. Returns None for unknown block types.

    Raises:
        ProtocolFormatError: a known block type fails validation.
    """
    if not isinstance(raw, dict):
        raise ProtocolFormatError(f"Content block must be an object, got {type(raw).__name__}")
    if raw.get("type") not in _BLOCK_TYPES:
        logger.debug("Dropping unsupported content block type %r", raw.get("type"))
        return None
    try:
        return _content_block.validate_python(raw)
    except ValidationError as e:
        raise ProtocolFormatError(f"Invalid {raw['type']} block: {e.errors()[0]['msg']}") from e


def parse_content(raw: Any) -> list[ContentBlock]:
    """Parse message content given as a string, a single block, or a list.

    A bare string is treated as a text block. Malformed and unknown
    blocks are dropped with a warning.
    """
    if raw is None:
        return []
    if isinstance(raw, str):
        return [TextBlock(text=raw)]
    items = raw if isinstance(raw, list) else [raw]

    blocks: list[ContentBlock] = []
    for item in items:
        if isinstance(item, str):
            blocks.append(TextBlock(text=item))
            continue
        try:
            block = parse_content_block(item)
        except ProtocolFormatError as e:
            logger.warning("Skipping malformed content block: %s", e)
            continue
        if block is not None:
            blocks.append(block)
    return blocks


def mcp_tool_to_openai(tool) -> dict:
    """Convert a tool descriptor to a chat-completions function declaration.

    Args:
        tool: Any object with .name, .description and .input_schema

    Returns:
        A ``{"type": "function", "function": {...}}`` dict.
    """
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description or "",
            "parameters": tool.input_schema or {"type": "object", "properties": {}},
        },
    }


def mcp_tool_to_gemini(tool) -> dict:
    """Convert a tool descriptor to a Gemini function declaration dict.

    The schema goes through ``parameters_json_schema`` untouched, which
    accepts full JSON Schema rather than Gemini's OpenAPI subset.
    """
    decl = {
        "name": tool.name,
        "description": tool.description or "",
    }
    if tool.input_schema:
        decl["parameters_json_schema"] = tool.input_schema
    return decl
