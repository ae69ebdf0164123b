import asyncio
import logging
import re
from typing import Awaitable, Callable, List, Sequence, Union

from ..exceptions import GatewayError, PersistenceError
from ..models import ConversationRecord, MessageRef, Session
from ..services.conversation_store import ConversationStore
from ..settings import Settings
from .status import MessagingGateway, StatusReporter

logger = logging.getLogger(__name__)

_MD_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_MD_MARKERS_RE = re.compile(r"(\*\*|__|\*|_|`)")


def split_response(text: str, max_length: int) -> List[str]:
    """Split text into chunks of at most ``max_length`` characters.

    Breaks on line boundaries where possible; a line that is longer than
    ``max_length`` on its own is cut into ``max_length`` pieces. Chunks are
    stripped and empty ones dropped.
    """
    if max_length <= 0:
        raise ValueError("max_length must be positive")

    chunks: List[str] = []
    current = ""

    def flush() -> None:
        nonlocal current
        if current.strip():
            chunks.append(current.strip())
        current = ""

    for line in text.split("\n"):
        while len(line) > max_length:
            flush()
            chunks.append(line[:max_length])
            line = line[max_length:]
        if not current:
            current = line
        elif len(current) + 1 + len(line) <= max_length:
            current = f"{current}\n{line}"
        else:
            flush()
            current = line
    flush()
    return [c for c in chunks if c.strip()]


def strip_markup(text: str) -> str:
    """Plain-text fallback: keep link labels, drop Markdown emphasis and code marks."""
    return _MD_MARKERS_RE.sub("", _MD_LINK_RE.sub(r"\1", text))


def pacing_delay(index: int, settings: Settings) -> float:
    """Delay after chunk ``index`` before the next one; grows then caps."""
    return min(
        settings.delivery_base_delay_seconds + index * settings.delivery_delay_step_seconds,
        settings.delivery_max_delay_seconds,
    )


class DeliverySplitter:
    """Sends a final answer as a short series of bounded chat messages."""

    def __init__(
        self,
        gateway: MessagingGateway,
        store: ConversationStore,
        status: StatusReporter,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._status = status
        self._settings = settings
        self._sleep = sleep

    def chunk(self, answer: Union[str, Sequence[str]]) -> List[str]:
        """Split ``answer`` and cap the result at ``max_chunks``."""
        parts = [answer] if isinstance(answer, str) else list(answer)
        chunks: List[str] = []
        for part in parts:
            chunks.extend(split_response(part, self._settings.max_chunk_length))
        if len(chunks) > self._settings.max_chunks:
            logger.warning(
                "%d chunks exceed limit, truncating to %d",
                len(chunks),
                self._settings.max_chunks,
            )
            chunks = chunks[: self._settings.max_chunks]
        return chunks

    async def _persist(self, chat_id: str, ref: MessageRef) -> None:
        try:
            await self._store.append(
                chat_id,
                ConversationRecord(
                    is_from_bot=True,
                    sender="Bot",
                    text=ref.text,
                    external_message_id=ref.message_id,
                ),
            )
        except PersistenceError as e:
            logger.error("Failed to persist message %s: %s", ref.message_id, e)

    async def deliver(self, answer: Union[str, Sequence[str]], session: Session) -> int:
        """Send ``answer`` to the session's chat. Returns the number of messages sent.

        Never raises: a failed send switches to a single plain-text message,
        and a failed fallback is only logged.
        """
        chunks = self.chunk(answer)
        logger.info("Sending %d response messages to chat %s", len(chunks), session.chat_id)

        if session.status is not None:
            await self._status.release(session.status)

        sent = 0
        try:
            for i, text in enumerate(chunks):
                ref = await self._gateway.send(
                    session.chat_id, text, reply_to=session.request_message_id
                )
                sent += 1
                await self._persist(session.chat_id, ref)
                if i < len(chunks) - 1:
                    await self._sleep(pacing_delay(i, self._settings))
            return sent
        except GatewayError as e:
            logger.error("Error sending final messages: %s", e)

        full = answer if isinstance(answer, str) else " ".join(answer)
        plain = strip_markup(full)[: self._settings.max_chunk_length]
        try:
            ref = await self._gateway.send(
                session.chat_id,
                plain,
                reply_to=session.request_message_id,
                parse_mode=None,
            )
        except GatewayError as e:
            logger.error("Fallback response failed for chat %s: %s", session.chat_id, e)
            return sent
        await self._persist(session.chat_id, ref)
        return sent + 1
