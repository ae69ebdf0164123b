import ast
import asyncio
import logging
import math
import operator
import re
from datetime import datetime, timezone
from typing import Any, Dict, List

import httpx

from ..exceptions import PersistenceError, ToolExecutionError
from ..models import ConversationRecord
from ..settings import Settings
from .tools import MessagesSent, ToolContext, ToolSpec

logger = logging.getLogger(__name__)

SERPER_ENDPOINTS = {
    "web": "https://google.serper.dev/search",
    "news": "https://google.serper.dev/news",
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MATH_NAMES: Dict[str, Any] = {
    name: getattr(math, name) for name in dir(math) if not name.startswith("_")
}
_MATH_NAMES.update({"abs": abs, "round": round, "min": min, "max": max})
_MAX_EXPONENT = 10000
_MAX_RESULT_BITS = 10000
_MAX_COMBINATORIC_ARG = 1000
_COMBINATORIC = {"factorial", "comb", "perm"}


def _check_int_size(op: ast.operator, left: Any, right: Any) -> None:
    """Reject integer products and powers whose result would exceed the bit cap."""
    if not (isinstance(left, int) and isinstance(right, int)):
        return
    if isinstance(op, ast.Pow) and right > 0:
        bits = max(left.bit_length(), 1) * right
    elif isinstance(op, ast.Mult):
        bits = left.bit_length() + right.bit_length()
    else:
        return
    if bits > _MAX_RESULT_BITS:
        raise ToolExecutionError("result too large")


def _eval_node(node: ast.AST) -> Any:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        if isinstance(node.op, ast.Pow) and abs(right) > _MAX_EXPONENT:
            raise ToolExecutionError("exponent too large")
        _check_int_size(node.op, left, right)
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Name) and node.id in _MATH_NAMES:
        value = _MATH_NAMES[node.id]
        if callable(value):
            raise ToolExecutionError(f"{node.id} is a function, not a value")
        return value
    if (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and callable(_MATH_NAMES.get(node.func.id))
        and not node.keywords
    ):
        args = [_eval_node(a) for a in node.args]
        if node.func.id in _COMBINATORIC and any(
            isinstance(a, (int, float)) and abs(a) > _MAX_COMBINATORIC_ARG for a in args
        ):
            raise ToolExecutionError(f"{node.func.id} argument too large")
        return _MATH_NAMES[node.func.id](*args)
    raise ToolExecutionError(f"Unsupported expression element: {ast.dump(node)[:60]}")


def evaluate_expression(expression: str) -> str:
    """Evaluate an arithmetic expression without ``eval``.

    ``^`` is treated as power. Names resolve to the ``math`` module only.
    """
    source = expression.strip().replace("^", "**")
    if not source:
        raise ToolExecutionError("Empty expression")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ToolExecutionError(f"Invalid expression: {expression}") from e
    try:
        result = _eval_node(tree)
    except (ZeroDivisionError, OverflowError, ValueError, TypeError) as e:
        raise ToolExecutionError(f"Cannot evaluate {expression}: {e}") from e
    if isinstance(result, float) and result.is_integer():
        result = int(result)
    if isinstance(result, int) and result.bit_length() > _MAX_RESULT_BITS:
        raise ToolExecutionError(f"Result of {expression} is too large")
    return str(result)


async def calculate(arguments: Dict[str, Any], context: ToolContext) -> str:
    expression = str(arguments.get("expression", ""))
    logger.info("Calculate: %s", expression)
    return await asyncio.to_thread(evaluate_expression, expression)


def parse_timeframe(timeframe: str) -> int:
    """Convert "6h" / "3d" style timeframes to hours."""
    match = re.fullmatch(r"\s*(\d+)\s*([hd])\s*", timeframe or "", re.IGNORECASE)
    if not match:
        raise ToolExecutionError(f"Invalid timeframe: {timeframe!r}")
    amount = int(match.group(1))
    return amount * 24 if match.group(2).lower() == "d" else amount


def _format_record(record: ConversationRecord) -> str:
    when = datetime.fromtimestamp(record.timestamp, tz=timezone.utc).strftime(
        "%Y-%m-%d %H:%M"
    )
    return f"[{when}] {record.sender}: {record.text}"


async def messages(arguments: Dict[str, Any], context: ToolContext) -> str:
    """Chat-history lookup: ``get`` recent messages or ``search`` them by text."""
    action = arguments.get("action", "get")
    params = arguments.get("params") or {}
    hours = parse_timeframe(params.get("timeframe", "24h"))
    limit = int(params.get("maxMessages", 50))

    records = await context.store.recent(context.chat_id, hours, limit)
    if action == "search":
        query = str(params.get("query", "")).strip().lower()
        if not query:
            raise ToolExecutionError("search requires params.query")
        records = [r for r in records if query in r.text.lower()]
    elif action != "get":
        raise ToolExecutionError(f"Unknown messages action: {action}")

    if not records:
        return "No matching messages found."
    return "\n".join(_format_record(r) for r in records)


_TAG_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>|<[^>]+>", re.DOTALL | re.IGNORECASE)


async def fetch_url(arguments: Dict[str, Any], context: ToolContext) -> str:
    url = str(arguments.get("url", "")).strip()
    if not url.startswith(("http://", "https://")):
        raise ToolExecutionError(f"Unsupported URL: {url!r}")
    async with httpx.AsyncClient(timeout=context.settings.tool_timeout_seconds, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
    text = re.sub(r"\s+", " ", _TAG_RE.sub(" ", response.text)).strip()
    return text[: context.settings.max_content_length]


async def search(arguments: Dict[str, Any], context: ToolContext) -> str:
    query = str(arguments.get("query", "")).strip()
    topic = arguments.get("topic", "web")
    if not query:
        raise ToolExecutionError("search requires a query")
    endpoint = SERPER_ENDPOINTS.get(topic)
    if endpoint is None:
        raise ToolExecutionError(f"Unsupported search topic: {topic}")

    async with httpx.AsyncClient(timeout=context.settings.tool_timeout_seconds) as client:
        response = await client.post(
            endpoint,
            headers={"X-API-KEY": context.settings.serper_api_key or ""},
            json={"q": query, "num": 8},
        )
        response.raise_for_status()
        data = response.json()

    items = data.get("organic") or data.get("news") or []
    lines = []
    for i, item in enumerate(items[:8], 1):
        lines.append(f"{i}. {item.get('title', '')}\n   {item.get('link', '')}\n   {item.get('snippet', '')}")
    return "\n".join(lines) if lines else f"No results for: {query}"


def _pacing_delay(settings: Settings, next_message: str) -> float:
    bonus = min(
        len(next_message) * settings.send_messages_per_char_delay_seconds,
        settings.send_messages_max_bonus_seconds,
    )
    return settings.send_messages_base_delay_seconds + bonus


async def send_messages(arguments: Dict[str, Any], context: ToolContext) -> MessagesSent:
    """Deliver the final answer directly, one chat message per item."""
    outgoing: List[str] = [str(m) for m in arguments.get("messages") or [] if str(m).strip()]
    if not outgoing:
        raise ToolExecutionError("send_messages requires at least one message")
    logger.info("send_messages: %d messages for chat %s", len(outgoing), context.chat_id)

    for i, text in enumerate(outgoing):
        ref = await context.gateway.send(context.chat_id, text, reply_to=context.reply_to)
        try:
            await context.store.append(
                context.chat_id,
                ConversationRecord(
                    is_from_bot=True,
                    sender="Bot",
                    text=ref.text or text,
                    external_message_id=ref.message_id,
                ),
            )
        except PersistenceError as e:
            logger.error("Failed to persist sent message %s: %s", ref.message_id, e)
        if i < len(outgoing) - 1:
            await asyncio.sleep(_pacing_delay(context.settings, outgoing[i + 1]))

    return MessagesSent(count=len(outgoing))


def builtin_tool_specs(settings: Settings) -> List[ToolSpec]:
    """Specs for the tools shipped with the bot. ``search`` needs a Serper key."""
    specs = [
        ToolSpec(
            name="calculate",
            description="Perform mathematical calculations and expressions.",
            executor=calculate,
            parameters={
                "type": "object",
                "properties": {
                    "expression": {
                        "type": "string",
                        "description": "Expression such as '2 + 2 * 3' or 'sqrt(16)'",
                    }
                },
                "required": ["expression"],
            },
        ),
        ToolSpec(
            name="messages",
            description="Access chat conversation history: get recent messages or search them.",
            executor=messages,
            parameters={
                "type": "object",
                "properties": {
                    "action": {"type": "string", "enum": ["get", "search"]},
                    "params": {
                        "type": "object",
                        "properties": {
                            "timeframe": {
                                "type": "string",
                                "description": 'Time period such as "6h", "24h", "3d" (default 24h)',
                            },
                            "query": {"type": "string"},
                            "maxMessages": {"type": "integer"},
                        },
                    },
                },
                "required": ["action"],
            },
        ),
        ToolSpec(
            name="fetch_url",
            description="Fetch a web page and return its text content.",
            executor=fetch_url,
            parameters={
                "type": "object",
                "properties": {
                    "url": {"type": "string"},
                    "instruction": {"type": "string"},
                },
                "required": ["url"],
            },
        ),
        ToolSpec(
            name="send_messages",
            description="Send final response messages to the user. This ENDS the conversation loop.",
            executor=send_messages,
            parameters={
                "type": "object",
                "properties": {
                    "messages": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["messages"],
            },
            terminal=True,
        ),
    ]
    if settings.serper_api_key:
        specs.insert(
            0,
            ToolSpec(
                name="search",
                description="Search the web or news for current information.",
                executor=search,
                parameters={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string"},
                        "topic": {"type": "string", "enum": list(SERPER_ENDPOINTS)},
                    },
                    "required": ["query"],
                },
            ),
        )
    return specs


__all__ = [
    "builtin_tool_specs",
    "evaluate_expression",
    "parse_timeframe",
]
