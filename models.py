"""Conversation and message records.

Messages are frozen so that a message handed to an event subscriber can't
be changed underneath the loop that produced it. Use ``dataclasses.replace``
to derive an updated copy.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"
    ELICITATION = "elicitation"  # local only, never sent to the LLM
    NOTIFICATION = "notification"  # sent to the LLM as context
    MODEL_CHANGE = "model-change"  # local only


@dataclass(frozen=True)
class ToolCall:
    call_id: str
    tool_name: str
    arguments_json: str = "{}"

    @classmethod
    def from_api(cls, raw: dict) -> "ToolCall":
        """Build from an OpenAI-style ``{id, function: {name, arguments}}`` dict."""
        function = raw.get("function") or {}
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            call_id=raw.get("id") or f"call_{uuid.uuid4().hex[:24]}",
            tool_name=function.get("name", ""),
            arguments_json=arguments,
        )

    def to_api(self) -> dict:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.tool_name, "arguments": self.arguments_json},
        }


@dataclass(frozen=True)
class Attachment:
    data: str  # base64
    mime_type: str

    def to_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: Optional[float] = None

    @classmethod
    def from_api(cls, raw: Optional[dict]) -> Optional["Usage"]:
        if not raw:
            return None
        return cls(
            prompt_tokens=raw.get("prompt_tokens", 0) or 0,
            completion_tokens=raw.get("completion_tokens", 0) or 0,
            total_tokens=raw.get("total_tokens", 0) or 0,
            cost=raw.get("cost"),
        )


@dataclass(frozen=True)
class Conversation:
    id: str
    title: str
    model: str
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # None means every connected server is enabled
    enabled_server_ids: Optional[frozenset] = None

    def server_enabled(self, server_id: str) -> bool:
        return self.enabled_server_ids is None or server_id in self.enabled_server_ids


@dataclass(frozen=True)
class Message:
    conversation_id: str
    role: MessageRole
    content: str = ""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    reasoning: Optional[str] = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    images: tuple[Attachment, ...] = ()
    audio: tuple[Attachment, ...] = ()
    usage: Optional[Usage] = None
    # serialized elicitation request plus its outcome once resolved
    elicitation: Optional[dict] = None
    # {"server_id", "server_name", "method", "params"}
    notification: Optional[dict] = None

    @classmethod
    def user(cls, conversation_id: str, text: str, **kwargs) -> "Message":
        return cls(conversation_id=conversation_id, role=MessageRole.USER, content=text, **kwargs)

    @classmethod
    def model_change(cls, conversation_id: str, model: str) -> "Message":
        return cls(
            conversation_id=conversation_id,
            role=MessageRole.MODEL_CHANGE,
            content=f"Model changed to {model}",
        )

    def to_api_message(self) -> Optional[dict[str, Any]]:
        """Convert to the chat-completions message shape.

        Returns None for messages that exist only for local display.
        """
        if self.role in (MessageRole.ELICITATION, MessageRole.MODEL_CHANGE):
            return None

        if self.role == MessageRole.NOTIFICATION:
            data = self.notification or {}
            text = f'[Notification from MCP server "{data.get("server_name") or "MCP Server"}"]\n'
            text += f"Method: {data.get('method') or 'unknown'}\n"
            if data.get("params") is not None:
                text += f"Params: {json.dumps(data['params'])}"
            return {"role": "user", "content": text}

        if self.role == MessageRole.TOOL:
            return {
                "role": "tool",
                "tool_call_id": self.tool_call_id,
                "name": self.tool_name,
                "content": self.content,
            }

        if self.tool_calls:
            return {
                "role": "assistant",
                "content": self.content,
                "tool_calls": [call.to_api() for call in self.tool_calls],
            }

        if self.images and self.role == MessageRole.USER:
            parts: list[dict] = []
            if self.content:
                parts.append({"type": "text", "text": self.content})
            for image in self.images:
                parts.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
            return {"role": "user", "content": parts}

        return {"role": self.role.value, "content": self.content}
