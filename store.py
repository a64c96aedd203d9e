"""Conversation and message persistence.

The chat loop only needs append/read/delete plus an update used to record
elicitation outcomes. ``InMemoryStore`` keeps everything in process; a
durable backend implements the same ``ConversationStore`` methods.
"""

import asyncio
from dataclasses import replace
from typing import Optional, Protocol

from models import Conversation, Message, utcnow


class ConversationStore(Protocol):
    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def append(self, message: Message) -> None: ...

    async def get(self, conversation_id: str, message_id: str) -> Optional[Message]: ...

    async def update(self, message: Message) -> None: ...

    async def messages(self, conversation_id: str) -> list[Message]: ...

    async def delete(self, conversation_id: str, message_ids: list[str]) -> None: ...


class InMemoryStore:
    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._lock = asyncio.Lock()

    async def save_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation
        self._messages.setdefault(conversation.id, [])

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def append(self, message: Message) -> None:
        async with self._lock:
            self._messages.setdefault(message.conversation_id, []).append(message)
            self._touch(message.conversation_id)

    async def append_many(self, messages: list[Message]) -> None:
        """Append several messages with no other write in between."""
        async with self._lock:
            for message in messages:
                self._messages.setdefault(message.conversation_id, []).append(message)
                self._touch(message.conversation_id)

    async def get(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for message in self._messages.get(conversation_id, []):
            if message.id == message_id:
                return message
        return None

    async def update(self, message: Message) -> None:
        async with self._lock:
            history = self._messages.get(message.conversation_id, [])
            for i, existing in enumerate(history):
                if existing.id == message.id:
                    history[i] = message
                    return
            raise KeyError(f"Message {message.id} not found")

    async def messages(self, conversation_id: str) -> list[Message]:
        return list(self._messages.get(conversation_id, []))

    async def delete(self, conversation_id: str, message_ids: list[str]) -> None:
        doomed = set(message_ids)
        async with self._lock:
            self._messages[conversation_id] = [
                m for m in self._messages.get(conversation_id, []) if m.id not in doomed
            ]

    def _touch(self, conversation_id: str) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is not None:
            self._conversations[conversation_id] = replace(conversation, updated_at=utcnow())
