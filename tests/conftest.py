import pytest

from events import EventEmitter
from models import Conversation, Message
from store import InMemoryStore


@pytest.fixture
def emitter():
    return EventEmitter()


@pytest.fixture
def events(emitter):
    received = []
    emitter.add_listener(received.append)
    return received


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
async def conversation(store):
    conv = Conversation(id="conv-1", title="Test", model="test-model")
    await store.save_conversation(conv)
    return conv


@pytest.fixture
async def user_message(store, conversation):
    message = Message.user(conversation.id, "What's the weather in Paris and London?")
    await store.append(message)
    return message
