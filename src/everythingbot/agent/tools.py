import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Union

from ..settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessagesSent:
    """Returned by terminal tools once they have delivered their own output."""

    count: int


@dataclass
class ToolContext:
    """Per-call services handed to tool executors."""

    chat_id: str
    gateway: Any
    store: Any
    settings: Settings
    reply_to: int | None = None


ToolResult = Union[str, MessagesSent]
ToolExecutor = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolSpec:
    """A registered tool: schema for the model plus how to run it."""

    name: str
    description: str
    executor: ToolExecutor
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    quota: int | None = None
    terminal: bool = False

    def schema(self) -> Dict[str, Any]:
        """Return the OpenAI function-tool schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Static name -> ToolSpec mapping. Read-only once the app has started."""

    def __init__(self) -> None:
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            logger.warning("Tool %s registered twice; replacing", spec.name)
        self._tools[spec.name] = spec

    def lookup(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def schemas(self) -> List[Dict[str, Any]]:
        return [spec.schema() for spec in self._tools.values()]

    def quotas(self) -> Dict[str, int]:
        """Tools with a declared per-session quota."""
        return {
            name: spec.quota
            for name, spec in self._tools.items()
            if spec.quota is not None
        }

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


_SEARCH_TOPICS = {
    "web": "web",
    "news": "news",
}


def describe_tool_call(name: str, arguments: Dict[str, Any]) -> str:
    """Human-readable status line for a tool that is about to run."""
    if name == "search":
        topic = arguments.get("topic", "web")
        return f'Searching {_SEARCH_TOPICS.get(topic, topic)} for: "{arguments.get("query", "")}"'

    if name == "messages":
        action = arguments.get("action", "get")
        params = arguments.get("params") or {}
        if action == "get":
            return f"Retrieving messages from {params.get('timeframe', '24h')}"
        if action == "search":
            return f'Searching chat history for: "{params.get("query", "")}"'
        return f"Processing messages ({action})"

    if name == "calculate":
        return f"Calculating: {arguments.get('expression', '')}"

    if name == "fetch_url":
        return f"📄 Fetching content from: {arguments.get('url', '')}"

    if name == "send_messages":
        messages = arguments.get("messages") or []
        return f"Sending {len(messages) or 1} chat messages"

    return f"⚙️ Executing {name}"


def build_tool_registry(settings: Settings) -> ToolRegistry:
    """Register the built-in tools with quotas taken from settings."""
    from .builtin_tools import builtin_tool_specs

    registry = ToolRegistry()
    for spec in builtin_tool_specs(settings):
        if not spec.terminal:
            spec.quota = settings.tool_quotas.get(spec.name, settings.default_tool_quota)
        elif spec.name in settings.tool_quotas:
            spec.quota = settings.tool_quotas[spec.name]
        registry.register(spec)
    logger.info("Loaded %d tools: %s", len(registry), ", ".join(registry.names()))
    return registry
