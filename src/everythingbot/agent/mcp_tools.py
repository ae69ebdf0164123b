import json
import logging
import os
from typing import Any, Dict, List

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client

from ..exceptions import ToolExecutionError
from .tools import ToolContext, ToolExecutor, ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)


def _server_params(cmd: str) -> StdioServerParameters | None:
    cmd_parts = cmd.split()
    if len(cmd_parts) < 2:
        logger.warning("Invalid MCP command format: %s", cmd)
        return None
    return StdioServerParameters(
        command=cmd_parts[0],
        args=cmd_parts[1:],
        env={**os.environ},
    )


def _make_executor(params: StdioServerParameters, name: str) -> ToolExecutor:
    """Executor that opens a fresh MCP session per call and runs ``name``."""

    async def execute(arguments: Dict[str, Any], context: ToolContext) -> str:
        logger.info("Calling MCP tool %s for chat %s", name, context.chat_id)
        async with stdio_client(params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                result = await session.call_tool(name, arguments)
        if getattr(result, "isError", False):
            text = result.content[0].text if result.content else "unknown error"
            raise ToolExecutionError(text)
        if result.content:
            return result.content[0].text or ""
        return json.dumps(result, indent=2, default=str)

    return execute


async def load_mcp_tools(
    registry: ToolRegistry,
    commands: List[str],
    quota: int | None = None,
) -> int:
    """Register every tool exposed by the given stdio MCP servers.

    Args:
        registry: Registry to add tools to.
        commands: Server start commands, e.g. ``"python servers/weather.py"``.
        quota: Per-session quota applied to each loaded tool.

    Returns:
        int: Number of tools registered.
    """
    loaded = 0
    for cmd in commands:
        params = _server_params(cmd)
        if params is None:
            continue
        try:
            async with stdio_client(params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    tools_result = await session.list_tools()
        except (OSError, ConnectionError, TimeoutError) as e:
            logger.warning("Failed to connect to MCP server '%s': %s", cmd, e)
            continue

        for tool_info in tools_result.tools:
            if tool_info.name in registry:
                logger.warning(
                    "MCP tool %s from '%s' clashes with a registered tool; skipping",
                    tool_info.name,
                    cmd,
                )
                continue
            registry.register(
                ToolSpec(
                    name=tool_info.name,
                    description=tool_info.description or "",
                    parameters=tool_info.inputSchema or {"type": "object", "properties": {}},
                    executor=_make_executor(params, tool_info.name),
                    quota=quota,
                )
            )
            loaded += 1
        logger.info("Loaded tools from MCP server '%s' (%d total)", cmd, loaded)
    return loaded
