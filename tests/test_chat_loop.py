import asyncio

import pytest

from catalog import aggregate
from chat_loop import DEFAULT_SYSTEM_PROMPT, ChatLoop, LoopState, split_last_turn
from completion import ReasoningDelta, TextDelta, UsageReport
from errors import CompletionProviderError
from events import (
    AuthenticationRequired,
    ContentChunk,
    ConversationComplete,
    ErrorOccurred,
    MaxIterationsReached,
    MessageCreated,
    StreamingStarted,
    ToolExecutionStarted,
)
from models import Message, MessageRole
from tool_router import ToolRouter
from tests.fakes import FakeProvider, FakeServer, of_type, text_turn, tool_call, tool_turn


async def _weather_router():
    servers = {
        "weather": FakeServer("weather", {"get_weather": lambda args: f"{args['city']}: sunny"}),
    }
    return ToolRouter(servers, await aggregate(servers))


async def test_weather_round_trip(emitter, events, store, conversation, user_message):
    provider = FakeProvider(turns=[
        tool_turn(
            tool_call("c1", "get_weather", {"city": "Paris"}),
            tool_call("c2", "get_weather", {"city": "London"}),
        ),
        text_turn("Paris is sunny, ", "and so is London."),
    ])
    loop = ChatLoop(provider, await _weather_router(), emitter, store=store)

    result = await loop.run(conversation.id, "test-model", [user_message])

    assert result.state == LoopState.DONE
    assert result.iterations == 2
    assert not result.truncated

    history = await store.messages(conversation.id)
    assert [m.role for m in history] == [
        MessageRole.USER,
        MessageRole.ASSISTANT,
        MessageRole.TOOL,
        MessageRole.TOOL,
        MessageRole.ASSISTANT,
    ]
    assistant_call, paris, london, final = history[1:]
    assert [c.call_id for c in assistant_call.tool_calls] == ["c1", "c2"]
    assert (paris.tool_call_id, paris.content) == ("c1", "Paris: sunny")
    assert (london.tool_call_id, london.content) == ("c2", "London: sunny")
    assert final.content == "Paris is sunny, and so is London."

    assert len(of_type(events, ConversationComplete)) == 1
    assert isinstance(events[-1], ConversationComplete)
    assert [e.content for e in of_type(events, ContentChunk)] == [
        "Paris is sunny, ",
        "Paris is sunny, and so is London.",
    ]
    assert [e.iteration for e in of_type(events, StreamingStarted)] == [1, 2]


async def test_second_request_carries_tool_results(emitter, store, conversation, user_message):
    provider = FakeProvider(turns=[
        tool_turn(tool_call("c1", "get_weather", {"city": "Paris"})),
        text_turn("Sunny."),
    ])
    loop = ChatLoop(provider, await _weather_router(), emitter, store=store)

    await loop.run(conversation.id, "test-model", [user_message])

    first, second = provider.stream_calls
    assert first["messages"][0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert [t.name for t in first["tools"]] == ["get_weather"]
    assert second["messages"][-2]["tool_calls"][0]["id"] == "c1"
    assert second["messages"][-1] == {
        "role": "tool",
        "tool_call_id": "c1",
        "name": "get_weather",
        "content": "Paris: sunny",
    }


async def test_tool_events_precede_tool_messages(emitter, events, store, conversation, user_message):
    provider = FakeProvider(turns=[
        tool_turn(tool_call("c1", "get_weather", {"city": "Paris"})),
        text_turn("Sunny."),
    ])
    loop = ChatLoop(provider, await _weather_router(), emitter, store=store)

    await loop.run(conversation.id, "test-model", [user_message])

    started = events.index(of_type(events, ToolExecutionStarted)[0])
    first_created = events.index(of_type(events, MessageCreated)[0])
    assert started < first_created


async def test_iteration_cap_stops_loop(emitter, events, store, conversation, user_message):
    provider = FakeProvider(turns=[tool_turn(tool_call("c1", "get_weather", {"city": "Paris"}))])
    loop = ChatLoop(provider, await _weather_router(), emitter, store=store)

    result = await loop.run(conversation.id, "test-model", [user_message], max_iterations=3)

    assert len(provider.stream_calls) == 3
    assert result.truncated
    assert of_type(events, MaxIterationsReached)[0].iterations == 3
    complete = of_type(events, ConversationComplete)
    assert len(complete) == 1 and complete[0].truncated


async def test_no_tools_answer_in_one_iteration(emitter, events, conversation, user_message):
    provider = FakeProvider(turns=[text_turn("Hello!")])
    loop = ChatLoop(provider, ToolRouter({}), emitter)

    result = await loop.run(conversation.id, "test-model", [user_message])

    assert result.iterations == 1
    assert [m.content for m in result.messages] == ["Hello!"]
    assert provider.stream_calls[0]["tools"] == []


async def test_payment_required_surfaces_error(emitter, events, store, conversation, user_message):
    provider = FakeProvider(turns=[CompletionProviderError("Insufficient credits", status_code=402)])
    loop = ChatLoop(provider, ToolRouter({}), emitter, store=store)

    result = await loop.run(conversation.id, "test-model", [user_message])

    assert result.state == LoopState.ABORTED
    error = of_type(events, ErrorOccurred)[0]
    assert error.payment_required
    assert error.message == "Insufficient credits"
    assert error.kind == "payment_required"
    assert of_type(events, ConversationComplete) == []
    assert await store.messages(conversation.id) == [user_message]


async def test_unauthorized_requests_authentication(emitter, events, conversation, user_message):
    provider = FakeProvider(turns=[CompletionProviderError("No auth credentials found", status_code=401)])
    loop = ChatLoop(provider, ToolRouter({}), emitter)

    await loop.run(conversation.id, "test-model", [user_message])

    assert of_type(events, AuthenticationRequired)[0].provider == "fake"
    assert of_type(events, ErrorOccurred)[0].status_code == 401


async def test_stream_failure_is_a_provider_error(emitter, events, conversation, user_message):
    provider = FakeProvider(turns=[[TextDelta("Partial"), ConnectionResetError("socket closed")]])
    loop = ChatLoop(provider, ToolRouter({}), emitter)

    result = await loop.run(conversation.id, "test-model", [user_message])

    assert result.state == LoopState.ABORTED
    assert isinstance(result.error, CompletionProviderError)
    assert of_type(events, ErrorOccurred)[0].kind == "completion_provider"
    assert result.messages == []


async def test_usage_and_reasoning_land_on_final_message(emitter, conversation, user_message):
    provider = FakeProvider(turns=[[
        ReasoningDelta("Thinking "),
        ReasoningDelta("hard."),
        TextDelta("42"),
        UsageReport({"prompt_tokens": 10, "completion_tokens": 2, "total_tokens": 12, "cost": 0.001}),
    ]])
    loop = ChatLoop(provider, ToolRouter({}), emitter)

    result = await loop.run(conversation.id, "test-model", [user_message])

    final = result.messages[-1]
    assert final.reasoning == "Thinking hard."
    assert final.usage.total_tokens == 12
    assert final.usage.cost == 0.001


async def test_cancel_during_tool_execution(emitter, events, store, conversation, user_message):
    tool_started = asyncio.Event()

    async def hang(args):
        await asyncio.Event().wait()

    servers = {"slow": FakeServer("slow", {"hang": hang})}
    router = ToolRouter(servers, await aggregate(servers))
    provider = FakeProvider(turns=[tool_turn(tool_call("c1", "hang"))])
    loop = ChatLoop(provider, router, emitter, store=store)
    emitter.add_listener(lambda e: tool_started.set() if isinstance(e, ToolExecutionStarted) else None)

    task = asyncio.create_task(loop.run(conversation.id, "test-model", [user_message]))
    await asyncio.wait_for(tool_started.wait(), timeout=1)
    seen = len(events)
    loop.cancel()
    result = await asyncio.wait_for(task, timeout=1)

    assert result.state == LoopState.ABORTED
    assert len(events) == seen
    assert await store.messages(conversation.id) == [user_message]


async def test_cancel_during_streaming(emitter, events, store, conversation, user_message):
    gate = asyncio.Event()
    provider = FakeProvider(turns=[[TextDelta("Once upon"), gate, TextDelta(" a time")]])
    loop = ChatLoop(provider, ToolRouter({}), emitter, store=store)

    task = asyncio.create_task(loop.run(conversation.id, "test-model", [user_message]))
    while not of_type(events, ContentChunk):
        await asyncio.sleep(0)
    loop.cancel()
    gate.set()
    result = await asyncio.wait_for(task, timeout=1)

    assert result.state == LoopState.ABORTED
    assert [e.content for e in of_type(events, ContentChunk)] == ["Once upon"]
    assert of_type(events, MessageCreated) == []
    assert await store.messages(conversation.id) == [user_message]


async def test_loop_runs_once(emitter, conversation, user_message):
    loop = ChatLoop(FakeProvider(turns=[text_turn("hi")]), ToolRouter({}), emitter)
    await loop.run(conversation.id, "m", [user_message])
    with pytest.raises(RuntimeError):
        await loop.run(conversation.id, "m", [user_message])


async def test_caller_history_is_not_modified(emitter, conversation, user_message):
    history = [user_message]
    loop = ChatLoop(FakeProvider(turns=[text_turn("hi")]), ToolRouter({}), emitter)
    await loop.run(conversation.id, "m", history)
    assert history == [user_message]


async def test_local_only_messages_are_not_sent(emitter, conversation, user_message):
    history = [
        Message.model_change(conversation.id, "other-model"),
        Message(conversation_id=conversation.id, role=MessageRole.ELICITATION, content="Pick one"),
        Message(
            conversation_id=conversation.id,
            role=MessageRole.NOTIFICATION,
            notification={"server_name": "Builds", "method": "notifications/build", "params": {"ok": True}},
        ),
        user_message,
    ]
    provider = FakeProvider(turns=[text_turn("hi")])
    loop = ChatLoop(provider, ToolRouter({}), emitter, system_prompt=None)

    await loop.run(conversation.id, "m", history)

    sent = provider.stream_calls[0]["messages"]
    assert len(sent) == 2
    assert sent[0]["content"] == (
        '[Notification from MCP server "Builds"]\n'
        "Method: notifications/build\n"
        'Params: {"ok": true}'
    )
    assert sent[1]["content"] == user_message.content


def test_split_last_turn_removes_answer_only():
    user = Message.user("c", "hi")
    answer = Message(conversation_id="c", role=MessageRole.ASSISTANT, content="hello")
    note = Message(conversation_id="c", role=MessageRole.NOTIFICATION, notification={})
    earlier = Message.user("c", "before")

    kept, removed = split_last_turn([earlier, user, answer, note])

    assert kept == [earlier, user, note]
    assert removed == [answer]
