import asyncio

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from mcph_Server_API.app.core.AuthNZ.identity import AuthContext, AuthMethod
from mcph_Server_API.app.core.MCP_unified.protocol import MCPProtocol, MCPResponse, RequestContext
from mcph_Server_API.app.core.MCP_unified.registry import ToolRegistry

ECHO_SCHEMA = {
    "type": "object",
    "properties": {"text": {"type": "string"}, "times": {"type": "integer", "minimum": 1}},
    "required": ["text"],
}


class EchoTool:
    def __init__(self):
        self.calls = []

    async def __call__(self, args, ctx):
        self.calls.append(args)
        return {"content": [{"type": "text", "text": args["text"] * args.get("times", 1)}]}


@pytest.fixture
def echo():
    return EchoTool()


@pytest.fixture
def protocol(config, echo):
    registry = ToolRegistry()
    registry.register("echo", "Echo text back", ECHO_SCHEMA, echo)
    return MCPProtocol(registry, config)


def _ctx():
    return RequestContext(
        request_id="req-1",
        auth=AuthContext(caller_id="user-1", auth_method=AuthMethod.API_KEY),
    )


async def _call(protocol, name, arguments=None, request_id=1):
    return await protocol.process_request(
        {"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": {"name": name, "arguments": arguments}},
        _ctx(),
    )


@pytest.mark.asyncio
async def test_initialize_reports_protocol_and_server(protocol, config):
    response = await protocol.process_request(
        {"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {"clientInfo": {"name": "cli"}}}, _ctx()
    )
    wire = response.to_wire()
    assert wire["id"] == 1
    assert wire["result"]["protocolVersion"] == config.protocol_version
    assert wire["result"]["serverInfo"]["name"] == config.server_name
    assert "tools" in wire["result"]["capabilities"]


@pytest.mark.asyncio
async def test_tools_list_describes_registered_tools(protocol):
    response = await protocol.process_request({"jsonrpc": "2.0", "id": "a", "method": "tools/list"}, _ctx())
    tools = response.result["tools"]
    assert tools == [{"name": "echo", "description": "Echo text back", "inputSchema": ECHO_SCHEMA}]


@pytest.mark.asyncio
async def test_tools_call_returns_handler_result(protocol, echo):
    response = await _call(protocol, "echo", {"text": "ab", "times": 2})
    assert response.error is None
    assert response.result["content"][0]["text"] == "abab"
    assert echo.calls == [{"text": "ab", "times": 2}]


@settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    name=st.text(min_size=1, max_size=30).filter(lambda s: s != "echo"),
    arguments=st.dictionaries(st.text(max_size=5), st.integers() | st.text(max_size=5), max_size=3),
)
def test_unknown_tool_is_method_not_found(protocol, echo, name, arguments):
    response = asyncio.run(_call(protocol, name, arguments))
    assert response.error.code == -32601
    assert echo.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "arguments",
    [
        {},
        {"text": 5},
        {"text": "x", "times": 0},
        {"text": "x", "times": "many"},
    ],
)
async def test_schema_invalid_arguments_never_reach_handler(protocol, echo, arguments):
    response = await _call(protocol, "echo", arguments)

    assert response.error.code == -32602
    issues = response.error.data["issues"]
    assert issues
    assert all("message" in issue and "path" in issue for issue in issues)
    assert echo.calls == []


@pytest.mark.asyncio
async def test_non_object_arguments_are_invalid_params(protocol, echo):
    response = await _call(protocol, "echo", ["not", "an", "object"])
    assert response.error.code == -32602
    assert echo.calls == []


@pytest.mark.asyncio
async def test_unknown_method(protocol):
    response = await protocol.process_request({"jsonrpc": "2.0", "id": 9, "method": "resources/list"}, _ctx())
    assert response.error.code == -32601
    assert response.id == 9


@pytest.mark.asyncio
async def test_notifications_never_produce_a_response(protocol, echo):
    assert await protocol.process_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, _ctx()) is None
    assert await protocol.process_request({"jsonrpc": "2.0", "method": "does/not/exist"}, _ctx()) is None
    assert await protocol.process_request(
        {"jsonrpc": "2.0", "method": "tools/call", "params": {"name": "echo", "arguments": {"text": "n"}}}, _ctx()
    ) is None
    # Executed, but silently
    assert echo.calls == [{"text": "n"}]


@pytest.mark.asyncio
async def test_malformed_envelopes(protocol):
    wrong_version = await protocol.process_request({"jsonrpc": "1.0", "id": 3, "method": "ping"}, _ctx())
    assert wrong_version.error.code == -32600
    assert wrong_version.id == 3

    no_method = await protocol.process_request({"jsonrpc": "2.0", "id": 4}, _ctx())
    assert no_method.error.code == -32600

    assert (await protocol.process_request("ping", _ctx())).error.code == -32600
    assert (await protocol.process_request([], _ctx())).error.code == -32600


@pytest.mark.asyncio
async def test_batch_skips_notifications(protocol):
    responses = await protocol.process_request(
        [
            {"jsonrpc": "2.0", "id": 1, "method": "ping"},
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            {"jsonrpc": "2.0", "id": 2, "method": "nope"},
        ],
        _ctx(),
    )
    assert [r.id for r in responses] == [1, 2]
    assert responses[0].result["pong"] is True
    assert responses[1].error.code == -32601

    only_notifications = await protocol.process_request(
        [{"jsonrpc": "2.0", "method": "notifications/initialized"}], _ctx()
    )
    assert only_notifications is None


@pytest.mark.asyncio
async def test_handler_crash_is_internal_error_without_details(make_config):
    async def boom(args, ctx):
        raise RuntimeError("database password=hunter2 leaked")

    registry = ToolRegistry()
    registry.register("boom", "Always fails", {"type": "object"}, boom)
    protocol = MCPProtocol(registry, make_config(debug_mode=False))

    response = await _call(protocol, "boom", {})
    assert response.error.code == -32603
    assert response.error.message == "Internal error"


def test_response_requires_exactly_one_of_result_or_error():
    with pytest.raises(ValueError):
        MCPResponse(id=1)
    wire = MCPResponse(result={"ok": True}, id=1).to_wire()
    assert wire == {"jsonrpc": "2.0", "result": {"ok": True}, "id": 1}
