"""Tests for the MCP capability provider with an in-memory session."""
from contextlib import AsyncExitStack
from types import SimpleNamespace

import pytest

from vaultagent.engine.errors import ToolExecutionError
from vaultagent.engine.models import McpServerConfig, ToolCall
from vaultagent.engine.permissions import classify_tool
from vaultagent.engine.tools.mcp_client import (
    McpCapabilityProvider,
    _Connected,
    result_text,
)


class FakeSession:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return self.result


def _call(name, **tool_input):
    return ToolCall(id="t1", name=name, input=tool_input, identity=classify_tool(name))


def _provider_with(session):
    config = McpServerConfig(id="mcp-1", name="calendar", command="calendar-mcp")
    provider = McpCapabilityProvider([config])
    provider._connected["calendar"] = _Connected(config, session, [{
        "name": "mcp__calendar__list_events",
        "description": "List events",
        "input_schema": {"type": "object", "properties": {}},
    }])
    return provider


def test_result_text_joins_parts():
    result = SimpleNamespace(content=[
        SimpleNamespace(type="text", text="Standup 9:00"),
        SimpleNamespace(type="image"),
        SimpleNamespace(type="text", text="Review 14:00"),
    ])
    assert result_text(result) == "Standup 9:00\n[image]\nReview 14:00"


def test_result_text_empty():
    assert result_text(SimpleNamespace(content=None)) == ""


def test_disabled_servers_are_not_started():
    provider = McpCapabilityProvider([
        McpServerConfig(id="a", name="on", command="x"),
        McpServerConfig(id="b", name="off", command="y", enabled=False),
    ])
    assert [c.name for c in provider._configs] == ["on"]
    assert provider.definitions() == []


@pytest.mark.asyncio
async def test_invoke_routes_to_server_operation():
    session = FakeSession(SimpleNamespace(
        content=[SimpleNamespace(type="text", text="2 events")], isError=False,
    ))
    provider = _provider_with(session)
    call = _call("mcp__calendar__list_events", day="today")

    assert provider.handles(call)
    result = await provider.invoke(call)

    assert session.calls == [("list_events", {"day": "today"})]
    assert result.content == "2 events"
    assert not result.is_error
    assert provider.connected_servers == ["calendar"]


@pytest.mark.asyncio
async def test_server_error_flag_carried():
    session = FakeSession(SimpleNamespace(
        content=[SimpleNamespace(type="text", text="no access")], isError=True,
    ))
    result = await _provider_with(session).invoke(_call("mcp__calendar__list_events"))
    assert result.is_error
    assert result.content == "no access"


@pytest.mark.asyncio
async def test_invoke_on_missing_server():
    provider = McpCapabilityProvider([])
    with pytest.raises(ToolExecutionError, match="'notes' is not running"):
        await provider.invoke(_call("mcp__notes__search"))


@pytest.mark.asyncio
async def test_close_without_start_is_a_no_op():
    provider = McpCapabilityProvider([])
    await provider.close()
    await provider.start()
    await provider.close()
    assert provider.connected_servers == []


@pytest.mark.asyncio
async def test_start_connects_each_server_on_one_stack(monkeypatch):
    provider = McpCapabilityProvider([
        McpServerConfig(id="a", name="calendar", command="x"),
        McpServerConfig(id="b", name="broken", command="y"),
    ])
    stacks = []

    async def fake_connect(stack, config):
        stacks.append(stack)
        if config.name == "broken":
            raise OSError("no such command")
        provider._connected[config.name] = _Connected(config, FakeSession(None), [])

    monkeypatch.setattr(provider, "_connect", fake_connect)
    await provider.start()
    await provider.start()

    assert len(stacks) == 2
    assert isinstance(stacks[0], AsyncExitStack)
    assert stacks[0] is stacks[1]
    assert provider.connected_servers == ["calendar"]
    await provider.close()
