import logging
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .agent import (
    AgentOrchestrator,
    ReasoningClient,
    build_cancellation_registry,
    build_tool_registry,
)
from .agent.mcp_tools import load_mcp_tools
from .handlers import CommandHandlers
from .services.conversation_store import build_conversation_store
from .services.redis import RedisCrudService, get_redis_crud_service
from .services.telegram import get_telegram_gateway
from .settings import get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure and return the package logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("everythingbot")
    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


async def _connect_redis() -> RedisCrudService | None:
    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        return None
    try:
        await redis_crud.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        LOGGER.warning("Redis unavailable, falling back to in-memory state: %s", e)
        return None
    return redis_crud


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire gateway, store, tools and orchestrator at startup; close clients on shutdown."""
    redis_crud = await _connect_redis()
    store = build_conversation_store(
        redis_crud, settings.conversation_ttl_seconds, settings.history_max_records
    )
    cancellation = build_cancellation_registry(redis_crud, settings.cancellation_ttl_seconds)
    gateway = get_telegram_gateway()

    registry = build_tool_registry(settings)
    if settings.mcp_server_cmds:
        LOGGER.info("Loading MCP tools at startup...")
        try:
            count = await load_mcp_tools(
                registry, settings.mcp_server_cmds, quota=settings.default_tool_quota
            )
            LOGGER.info("Loaded %d MCP tools", count)
        except (ValueError, RuntimeError) as e:
            LOGGER.exception("Failed to load MCP tools: %s", e)
        except Exception as e:
            LOGGER.exception("Unexpected error loading MCP tools: %s", e)

    orchestrator = AgentOrchestrator(
        reasoning=ReasoningClient(settings=settings),
        registry=registry,
        gateway=gateway,
        store=store,
        cancellation=cancellation,
        settings=settings,
    )
    app.state.handlers = CommandHandlers(
        orchestrator=orchestrator,
        gateway=gateway,
        store=store,
        cancellation=cancellation,
        settings=settings,
    )

    yield

    LOGGER.info("Shutting down...")
    await gateway.close()
    if redis_crud is not None:
        await redis_crud.close()


app = FastAPI(
    title="Everything Bot",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: JSON response with status field.
    """
    return {"status": "ok"}


@app.post("/telegram/webhook")
async def telegram_webhook(request: Request, background_tasks: BackgroundTasks) -> dict[str, Any]:
    """Telegram update endpoint.

    Commands are answered inline; bot queries are scheduled as background
    tasks so the webhook returns immediately and a later ``/cancel`` can be
    processed while the session is still running.
    """
    try:
        update = await request.json()
    except ValueError as e:
        LOGGER.error("Invalid webhook payload (not JSON): %s", e)
        return {"ok": False}

    message = update.get("message") if isinstance(update, dict) else None
    if not message:
        return {"ok": True}

    session = await request.app.state.handlers.handle_message(message)
    if session is not None:
        LOGGER.info("Scheduling agent session for chat %s", session.chat_id)
        background_tasks.add_task(request.app.state.handlers.run_session, session)
    return {"ok": True}
