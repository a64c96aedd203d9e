import asyncio

import pytest

from errors import CompletionProviderError, ProtocolFormatError, SamplingRejectedError
from events import SamplingRequestReceived
from sampling import (
    SamplingBridge,
    convert_finish_reason,
    convert_messages,
    convert_tool_choice,
    select_model,
)
from tool_router import ToolResult
from tests.fakes import FakeProvider, completion_text, completion_tools, of_type, tool_call


def _request(*messages, **params):
    return {"method": "sampling/createMessage", "params": {"messages": list(messages), "maxTokens": 200, **params}}


def _user(content):
    return {"role": "user", "content": content}


class FakeExecutor:
    def __init__(self, owned=("lookup",)):
        self.owned = set(owned)
        self.batches = []

    def owns(self, tool_name):
        return tool_name in self.owned

    async def execute_batch(self, calls):
        self.batches.append(list(calls))
        return [ToolResult(c.call_id, c.tool_name, f"result of {c.tool_name}") for c in calls]


@pytest.mark.parametrize("finish_reason, stop_reason", [
    ("stop", "endTurn"),
    ("length", "maxTokens"),
    ("tool_calls", "toolUse"),
    ("content_filter", "endTurn"),
    (None, "endTurn"),
])
def test_finish_reason_mapping(finish_reason, stop_reason):
    assert convert_finish_reason(finish_reason) == stop_reason


@pytest.mark.parametrize("tool_choice, expected", [
    ({"mode": "auto"}, "auto"),
    ({"type": "none"}, "none"),
    ({"mode": "required"}, "required"),
    ({"type": "tool", "name": "lookup"}, {"type": "function", "function": {"name": "lookup"}}),
    (None, None),
])
def test_tool_choice_mapping(tool_choice, expected):
    assert convert_tool_choice(tool_choice) == expected


def test_first_named_hint_wins():
    params = {"modelPreferences": {"hints": [{"name": ""}, {"name": "anthropic/claude"}, {"name": "x"}]}}
    assert select_model(params, "preferred", "default") == "anthropic/claude"


def test_model_falls_back_to_preferred_then_default():
    assert select_model({"modelPreferences": {"hints": []}}, "preferred", "default") == "preferred"
    assert select_model({}, None, "default") == "default"


async def test_text_response_shape():
    provider = FakeProvider(completions=[completion_text("Hi there")])
    bridge = SamplingBridge(provider, default_model="default-model")

    response = await bridge.process_sampling_request(_request(_user({"type": "text", "text": "Hello"})))

    assert response == {
        "role": "assistant",
        "content": {"type": "text", "text": "Hi there"},
        "model": "default-model",
        "stopReason": "endTurn",
    }
    assert provider.completion_calls[0]["max_tokens"] == 200


async def test_system_prompt_is_prepended():
    provider = FakeProvider(completions=[completion_text("ok")])
    bridge = SamplingBridge(provider, default_model="m")

    await bridge.process_sampling_request(_request(_user("Summarize"), systemPrompt="Be brief."))

    assert provider.completion_calls[0]["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Summarize"},
    ]


async def test_bare_params_are_accepted():
    provider = FakeProvider(completions=[completion_text("ok")])
    bridge = SamplingBridge(provider, default_model="m")

    response = await bridge.process_sampling_request({"messages": [_user("hi")]})

    assert response["content"]["text"] == "ok"


def test_non_text_content_is_dropped():
    params = {"messages": [
        _user([{"type": "text", "text": "Describe"}, {"type": "image", "data": "AAAA", "mimeType": "image/png"}]),
        _user({"type": "audio", "data": "AAAA", "mimeType": "audio/wav"}),
    ]}
    assert convert_messages(params) == [{"role": "user", "content": "Describe"}]


def test_tool_use_and_results_fold_into_chat_messages():
    params = {"messages": [
        _user("What is 1+1?"),
        {"role": "assistant", "content": [{"type": "tool_use", "id": "t1", "name": "calc", "input": {"expr": "1+1"}}]},
        _user([{"type": "tool_result", "toolUseId": "t1", "content": [
            {"type": "text", "text": "2"},
            {"type": "text", "text": "(exact)"},
        ]}]),
    ]}

    api_messages = convert_messages(params)

    assert api_messages[1] == {
        "role": "assistant",
        "tool_calls": [{"id": "t1", "type": "function", "function": {"name": "calc", "arguments": '{"expr": "1+1"}'}}],
    }
    assert api_messages[2] == {"role": "tool", "tool_call_id": "t1", "content": "2\n(exact)"}


def test_unknown_role_is_a_protocol_error():
    with pytest.raises(ProtocolFormatError):
        convert_messages({"messages": [{"role": "system", "content": "x"}]})


async def test_hint_overrides_preferred_model():
    provider = FakeProvider(completions=[completion_text("ok")])
    bridge = SamplingBridge(provider, default_model="default")

    response = await bridge.process_sampling_request(
        _request(_user("hi"), modelPreferences={"hints": [{"name": "hinted"}]}),
        preferred_model="preferred",
    )

    assert response["model"] == "hinted"
    assert provider.completion_calls[0]["model"] == "hinted"


async def test_single_tool_call_is_returned_as_list():
    provider = FakeProvider(completions=[completion_tools(tool_call("t1", "lookup", {"q": "mcp"}))])
    bridge = SamplingBridge(provider, default_model="m")

    response = await bridge.process_sampling_request(_request(
        _user("find it"),
        tools=[{"name": "lookup", "inputSchema": {"type": "object"}}],
        toolChoice={"mode": "auto"},
    ))

    assert response["stopReason"] == "toolUse"
    assert response["content"] == [{"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "mcp"}}]
    call = provider.completion_calls[0]
    assert [t.name for t in call["tools"]] == ["lookup"]
    assert call["tool_choice"] == "auto"


async def test_unparseable_tool_arguments_become_empty_input():
    bad = {"id": "t1", "type": "function", "function": {"name": "lookup", "arguments": "{oops"}}
    provider = FakeProvider(completions=[completion_tools(bad)])
    bridge = SamplingBridge(provider, default_model="m")

    response = await bridge.process_sampling_request(_request(_user("x")))

    assert response["content"][0]["input"] == {}


async def test_local_tools_run_until_text():
    provider = FakeProvider(completions=[
        completion_tools(tool_call("t1", "lookup", {"q": "a"})),
        completion_text("Found it."),
    ])
    executor = FakeExecutor()
    bridge = SamplingBridge(provider, default_model="m", tool_executor=executor)

    response = await bridge.process_sampling_request(_request(_user("find"), tools=[{"name": "lookup"}]))

    assert response["content"] == {"type": "text", "text": "Found it."}
    assert len(executor.batches) == 1
    second_messages = provider.completion_calls[1]["messages"]
    assert second_messages[-1] == {"role": "tool", "tool_call_id": "t1", "content": "result of lookup"}


async def test_inner_loop_is_capped():
    provider = FakeProvider(completions=[completion_tools(tool_call("t1", "lookup"))])
    executor = FakeExecutor()
    bridge = SamplingBridge(provider, default_model="m", tool_executor=executor)

    response = await bridge.process_sampling_request(_request(_user("loop forever")))

    assert len(provider.completion_calls) == 10
    assert len(executor.batches) == 9
    assert response["stopReason"] == "toolUse"
    assert isinstance(response["content"], list)


async def test_foreign_tools_are_returned_to_the_server():
    provider = FakeProvider(completions=[completion_tools(tool_call("t1", "server_side_tool"))])
    executor = FakeExecutor(owned=("lookup",))
    bridge = SamplingBridge(provider, default_model="m", tool_executor=executor)

    response = await bridge.process_sampling_request(_request(_user("x")))

    assert len(provider.completion_calls) == 1
    assert executor.batches == []
    assert response["content"][0]["name"] == "server_side_tool"


async def test_provider_errors_propagate():
    provider = FakeProvider(completions=[CompletionProviderError("rate limited", status_code=429)])
    bridge = SamplingBridge(provider, default_model="m")

    with pytest.raises(CompletionProviderError):
        await bridge.process_sampling_request(_request(_user("x")))


async def test_rejected_request_fails_with_user_message(emitter, events):
    provider = FakeProvider(completions=[completion_text("never sent")])
    bridge = SamplingBridge(provider, emitter.emit, default_model="m")

    task = asyncio.create_task(bridge.handle_request("weather", 7, _request(_user("hi"))["params"]))
    await asyncio.sleep(0)
    received = of_type(events, SamplingRequestReceived)[0]
    assert received.request_id == "7"
    assert received.server_id == "weather"

    bridge.reject(received.request_id)

    with pytest.raises(SamplingRejectedError, match="Sampling request rejected by user"):
        await task
    assert provider.completion_calls == []
    assert bridge.pending == []


async def test_approved_request_uses_edited_params(emitter, events):
    provider = FakeProvider(completions=[completion_text("edited answer")])
    bridge = SamplingBridge(provider, emitter.emit, default_model="m")

    task = asyncio.create_task(bridge.handle_request("weather", "r1", _request(_user("original"))["params"]))
    await asyncio.sleep(0)

    edited = _request(_user("edited"))["params"]
    approved = await bridge.approve("r1", edited_params=edited)

    assert await task == approved
    assert provider.completion_calls[0]["messages"] == [{"role": "user", "content": "edited"}]


async def test_auto_approve_skips_the_prompt(emitter, events):
    provider = FakeProvider(completions=[completion_text("ok")])
    bridge = SamplingBridge(provider, emitter.emit, default_model="m", auto_approve=True)

    response = await bridge.handle_request("weather", 1, _request(_user("hi"))["params"])

    assert response["content"]["text"] == "ok"
    assert of_type(events, SamplingRequestReceived) == []


async def test_unknown_request_id_raises():
    bridge = SamplingBridge(FakeProvider(), default_model="m")
    with pytest.raises(KeyError):
        bridge.reject("missing")
