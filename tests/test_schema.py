import pytest

from catalog import ToolDescriptor
from errors import ProtocolFormatError
from schema import (
    ImageBlock,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    mcp_tool_to_gemini,
    mcp_tool_to_openai,
    parse_content,
    parse_content_block,
)


def test_blocks_parse_from_wire_names():
    image = parse_content_block({"type": "image", "data": "AAAA", "mimeType": "image/png"})
    tool_use = parse_content_block({"type": "tool_use", "id": "t1", "name": "lookup", "input": None})

    assert image == ImageBlock(data="AAAA", mime_type="image/png")
    assert image.to_json() == {"type": "image", "data": "AAAA", "mimeType": "image/png"}
    assert tool_use.input == {}


def test_tool_result_keeps_good_nested_blocks():
    block = parse_content_block({
        "type": "tool_result",
        "toolUseId": "t1",
        "content": [{"type": "text", "text": "42"}, {"type": "text"}, {"type": "hologram"}],
        "isError": True,
    })

    assert isinstance(block, ToolResultBlock)
    assert block.content == (TextBlock(text="42"),)
    assert block.text == "42"
    assert block.to_json() == {
        "type": "tool_result",
        "toolUseId": "t1",
        "content": [{"type": "text", "text": "42"}],
        "isError": True,
    }


def test_malformed_known_block_is_a_protocol_error():
    with pytest.raises(ProtocolFormatError):
        parse_content_block({"type": "text", "text": 5})
    with pytest.raises(ProtocolFormatError):
        parse_content_block("text")


def test_unknown_block_types_are_ignored():
    assert parse_content_block({"type": "resource_link", "uri": "file:///a"}) is None


def test_parse_content_drops_bad_blocks():
    blocks = parse_content([
        "plain",
        {"type": "text", "text": "ok"},
        {"type": "image", "data": "AAAA"},
        {"type": "tool_use", "id": "t1", "name": "lookup", "input": {"q": "x"}},
    ])

    assert blocks == [
        TextBlock(text="plain"),
        TextBlock(text="ok"),
        ToolUseBlock(id="t1", name="lookup", input={"q": "x"}),
    ]


def test_tool_declarations_pass_schema_through():
    schema = {"type": "object", "properties": {"q": {"type": "string", "format": "uri"}}}
    tool = ToolDescriptor(name="lookup", description=None, input_schema=schema)

    assert mcp_tool_to_openai(tool)["function"] == {"name": "lookup", "description": "", "parameters": schema}
    assert mcp_tool_to_gemini(tool)["parameters_json_schema"] is schema
