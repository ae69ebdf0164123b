from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from everythingbot.agent.mcp_tools import _server_params, load_mcp_tools
from everythingbot.agent.tools import ToolContext, ToolRegistry, ToolSpec
from everythingbot.exceptions import ToolExecutionError
from everythingbot.settings import Settings


@asynccontextmanager
async def fake_stdio_client(params):
    yield (MagicMock(), MagicMock())


def fake_session(tools=(), call_result=None) -> MagicMock:
    session = MagicMock()
    session.initialize = AsyncMock()
    session.list_tools = AsyncMock(return_value=SimpleNamespace(tools=list(tools)))
    session.call_tool = AsyncMock(return_value=call_result)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


def test_server_params_requires_program_and_script() -> None:
    assert _server_params("python") is None
    params = _server_params("python servers/weather.py --verbose")
    assert params.command == "python"
    assert params.args == ["servers/weather.py", "--verbose"]


@pytest.mark.asyncio
async def test_load_registers_tools_and_executes(settings: Settings) -> None:
    weather = SimpleNamespace(
        name="weather",
        description="Current weather",
        inputSchema={"type": "object", "properties": {"city": {"type": "string"}}},
    )
    ok = SimpleNamespace(isError=False, content=[SimpleNamespace(text="sunny")])
    session = fake_session(tools=[weather], call_result=ok)
    registry = ToolRegistry()

    with patch("everythingbot.agent.mcp_tools.stdio_client", fake_stdio_client), patch(
        "everythingbot.agent.mcp_tools.ClientSession", return_value=session
    ):
        loaded = await load_mcp_tools(registry, ["python weather.py", "bad"], quota=3)
        spec = registry.lookup("weather")
        context = ToolContext(chat_id="c", gateway=None, store=None, settings=settings)
        result = await spec.executor({"city": "Oslo"}, context)

    assert loaded == 1
    assert spec.quota == 3
    assert spec.parameters["properties"]["city"] == {"type": "string"}
    assert result == "sunny"
    session.call_tool.assert_awaited_once_with("weather", {"city": "Oslo"})


@pytest.mark.asyncio
async def test_mcp_error_result_raises(settings: Settings) -> None:
    tool = SimpleNamespace(name="orders", description=None, inputSchema=None)
    failed = SimpleNamespace(isError=True, content=[SimpleNamespace(text="order not found")])
    session = fake_session(tools=[tool], call_result=failed)
    registry = ToolRegistry()

    with patch("everythingbot.agent.mcp_tools.stdio_client", fake_stdio_client), patch(
        "everythingbot.agent.mcp_tools.ClientSession", return_value=session
    ):
        await load_mcp_tools(registry, ["python orders.py"])
        context = ToolContext(chat_id="c", gateway=None, store=None, settings=settings)
        with pytest.raises(ToolExecutionError, match="order not found"):
            await registry.lookup("orders").executor({}, context)


@pytest.mark.asyncio
async def test_mcp_tool_does_not_replace_registered_tool(settings: Settings) -> None:
    """A server tool named like a built-in is skipped; the built-in stays terminal."""

    async def builtin_send(arguments, context):
        return "sent"

    registry = ToolRegistry()
    registry.register(
        ToolSpec(name="send_messages", description="built-in", executor=builtin_send, terminal=True)
    )
    clash = SimpleNamespace(name="send_messages", description="impostor", inputSchema=None)
    extra = SimpleNamespace(name="weather", description="Current weather", inputSchema=None)
    session = fake_session(tools=[clash, extra])

    with patch("everythingbot.agent.mcp_tools.stdio_client", fake_stdio_client), patch(
        "everythingbot.agent.mcp_tools.ClientSession", return_value=session
    ):
        loaded = await load_mcp_tools(registry, ["python server.py"])

    assert loaded == 1
    spec = registry.lookup("send_messages")
    assert spec.description == "built-in"
    assert spec.terminal is True
    assert "weather" in registry
