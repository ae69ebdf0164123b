import logging
import re
from typing import Any, Dict

from .agent.cancellation import CancellationRegistry
from .agent.orchestrator import AgentOrchestrator, summarize
from .agent.status import MessagingGateway
from .exceptions import GatewayError, PersistenceError
from .models import ConversationRecord, MessageRef, Session
from .services.conversation_store import ConversationStore
from .settings import Settings

logger = logging.getLogger(__name__)

_ROBOT_RE = re.compile(r"^robot[\s,]+", re.IGNORECASE)
_PERSONA_RE = re.compile(r"^(.+?)\s*-\s*bot[\s,]*", re.IGNORECASE)

HELP_TEXT = (
    "🤖 *Everything Bot Help*\n\n"
    "*Basic usage:*\n"
    "• Start messages with `robot` to ask questions\n"
    "• Use a persona with `<name>-bot`, e.g. `scientist-bot, explain entropy`\n\n"
    "*Commands:*\n"
    "• `/help` - Show this help message\n"
    "• `/clearmessages [number]` - Delete the bot's last messages (default: 4, max: 20)\n"
    "• `/cancel` - Cancel the current bot operation\n\n"
    "I can search, look through our chat history, fetch pages and do math."
)

INTRO_TEXT = (
    "👋 Hello everyone! I'm Everything Bot, an AI assistant for this chat.\n\n"
    "🔍 *What I can do:*\n"
    "• Search the web and news\n"
    "• Look through chat history and find specific messages\n"
    "• Read web pages and summarize them\n"
    "• Do calculations\n\n"
    "🗣️ *How to use me:*\n"
    "• Start messages with `robot,` or `robot ` to ask questions\n"
    "• Use a persona like `scientist-bot,` or `pirate-bot,`\n"
    "• Send /help for detailed usage instructions\n\n"
    "🎯 *Examples:*\n"
    "• robot, what's the latest news on AI?\n"
    "• robot summarize what we discussed yesterday\n"
    "• robot calculate 15% of 87.50"
)

UNKNOWN_COMMAND_TEXT = (
    "Unknown command: {command}\n\n"
    "Use /help to see available commands or start your message with 'robot' "
    "or 'x-bot' to ask questions."
)

CLEAR_FAILED_TEXT = "❌ Failed to delete messages. Please try again later."
DEFAULT_CLEAR_COUNT = 4
MAX_CLEAR_COUNT = 20


def _sender_name(message: Dict[str, Any]) -> str:
    sender = message.get("from") or {}
    name = f"{sender.get('first_name', '')} {sender.get('last_name', '')}".strip()
    return name or sender.get("username") or "Unknown"


def _parse_count(text: str) -> int:
    parts = text.split()
    if len(parts) > 1:
        try:
            parsed = int(parts[1])
        except ValueError:
            return DEFAULT_CLEAR_COUNT
        if parsed > 0:
            return parsed
    return DEFAULT_CLEAR_COUNT


class CommandHandlers:
    """Routes incoming chat messages to commands, agent sessions or history."""

    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        gateway: MessagingGateway,
        store: ConversationStore,
        cancellation: CancellationRegistry,
        settings: Settings,
    ) -> None:
        self._orchestrator = orchestrator
        self._gateway = gateway
        self._store = store
        self._cancellation = cancellation
        self._settings = settings

    async def handle_message(self, message: Dict[str, Any]) -> Session | None:
        """Handle one chat message.

        Args:
            message: Telegram ``message`` object from an update.

        Returns:
            Session | None: a new session when the message is a bot query; the
                caller is expected to run it with ``run_session``.
        """
        members = message.get("new_chat_members") or []
        if any(m.get("is_bot") and m.get("username") for m in members):
            chat = message.get("chat") or {}
            logger.info("Bot added to chat %s (%s)", chat.get("id"), chat.get("title", "Unknown"))
            await self._reply(str(chat.get("id", "")), INTRO_TEXT)
            return None

        sender = message.get("from") or {}
        if sender.get("is_bot"):
            logger.info("Ignoring message from bot: %s", sender.get("first_name", "Unknown"))
            return None

        chat_id = str((message.get("chat") or {}).get("id", ""))
        text = (message.get("text") or message.get("caption") or "").strip()
        message_id = message.get("message_id")
        if not chat_id or not text:
            return None

        if text.startswith("/help"):
            await self._reply(chat_id, HELP_TEXT)
            return None

        if text.startswith("/cancel"):
            await self._cancellation.request(chat_id)
            await self._reply(
                chat_id,
                "🛑 Cancellation requested. The bot will stop processing after the current operation.",
                reply_to=message_id,
            )
            return None

        if text.startswith("/clearmessages"):
            await self.clear_messages(chat_id, _parse_count(text))
            return None

        if text.startswith("/"):
            command = text.split()[0]
            logger.info("Unknown command %s in chat %s", command, chat_id)
            await self._reply(chat_id, UNKNOWN_COMMAND_TEXT.format(command=command))
            return None

        if _ROBOT_RE.match(text):
            return self._new_session(chat_id, _ROBOT_RE.sub("", text, count=1), "", message_id)

        persona_match = _PERSONA_RE.match(text)
        if persona_match:
            persona = persona_match.group(1).strip().lower()
            query = text[persona_match.end():].strip()
            logger.info('Detected persona: "%s", query: "%s"', persona, query[:200])
            return self._new_session(chat_id, query, persona, message_id)

        try:
            await self._store.append(
                chat_id,
                ConversationRecord(
                    is_from_bot=False,
                    sender=_sender_name(message),
                    text=text,
                    external_message_id=message_id,
                ),
            )
        except PersistenceError as e:
            logger.error("Failed to store message for chat %s: %s", chat_id, e)
        return None

    def _new_session(
        self, chat_id: str, query: str, persona: str, message_id: int | None
    ) -> Session | None:
        query = query.strip()
        if not query:
            logger.info("Empty query for chat %s; ignoring", chat_id)
            return None
        return Session(
            chat_id=chat_id,
            query=query,
            persona=persona,
            request_message_id=message_id,
        )

    async def run_session(self, session: Session) -> None:
        """Snapshot recent history, then run the agent loop."""
        session.recent_history = await self._store.recent(
            session.chat_id,
            self._settings.history_hours,
            self._settings.history_limit,
        )
        await self._orchestrator.run(session)
        logger.info("Session summary: %s", summarize(session))

    async def clear_messages(self, chat_id: str, count: int = DEFAULT_CLEAR_COUNT) -> int:
        """Delete the bot's newest ``count`` messages from the chat and from history.

        ``count`` is clamped to 1..20. Messages that cannot be deleted on the
        platform are skipped. Success is silent; a storage failure is reported
        to the chat.

        Returns:
            int: number of messages deleted on the platform.
        """
        count = max(1, min(count, MAX_CLEAR_COUNT))
        try:
            records = await self._store.recent(
                chat_id,
                max(1, self._settings.conversation_ttl_seconds // 3600),
                self._settings.history_max_records,
            )
            targets = [
                r.external_message_id
                for r in reversed(records)
                if r.is_from_bot and r.external_message_id is not None
            ][:count]

            deleted = 0
            for message_id in targets:
                try:
                    await self._gateway.delete(MessageRef(chat_id, message_id))
                    deleted += 1
                except GatewayError as e:
                    logger.warning("Could not delete message %s in chat %s: %s", message_id, chat_id, e)

            removed = await self._store.remove(chat_id, targets)
            logger.info(
                "Cleared %d bot messages in chat %s (%d removed from history)", deleted, chat_id, removed
            )
            return deleted
        except PersistenceError as e:
            logger.error("Failed to clear messages in chat %s: %s", chat_id, e)
            await self._reply(chat_id, CLEAR_FAILED_TEXT)
            return 0

    async def _reply(self, chat_id: str, text: str, reply_to: int | None = None) -> None:
        try:
            await self._gateway.send(chat_id, text, reply_to=reply_to)
        except GatewayError as e:
            logger.error("Failed to reply in chat %s: %s", chat_id, e)
