import logging
from dataclasses import dataclass
from typing import Protocol

from ..exceptions import GatewayError
from ..models import MessageRef, Session

logger = logging.getLogger(__name__)


class MessagingGateway(Protocol):
    async def send(
        self,
        chat_id: str,
        text: str,
        reply_to: int | None = None,
        parse_mode: str | None = "Markdown",
    ) -> MessageRef: ...

    async def edit(self, ref: MessageRef, text: str) -> MessageRef | None: ...

    async def delete(self, ref: MessageRef) -> None: ...


@dataclass
class StatusHandle:
    """The single in-place progress message of a session."""

    chat_id: str
    ref: MessageRef | None = None
    released: bool = False


class StatusReporter:
    """Edits one progress message in place while the loop runs.

    Progress reporting never aborts a session: every gateway failure is
    logged and swallowed. Once a handle is released, all further calls on
    it are no-ops.
    """

    def __init__(self, gateway: MessagingGateway, initial_text: str) -> None:
        self._gateway = gateway
        self._initial_text = initial_text

    async def start(self, session: Session) -> StatusHandle:
        handle = StatusHandle(chat_id=session.chat_id)
        try:
            handle.ref = await self._gateway.send(
                session.chat_id,
                self._initial_text,
                reply_to=session.request_message_id,
            )
            logger.info(
                "Sent status message %s to chat %s", handle.ref.message_id, session.chat_id
            )
        except GatewayError as e:
            logger.warning("Could not send status message to chat %s: %s", session.chat_id, e)
        return handle

    async def update(self, handle: StatusHandle, text: str) -> None:
        if handle.released or handle.ref is None:
            return
        try:
            edited = await self._gateway.edit(handle.ref, text)
        except GatewayError as e:
            logger.warning("Failed to update status message %s: %s", handle.ref.message_id, e)
            return
        if edited is not None:
            handle.ref = edited

    async def release(self, handle: StatusHandle) -> None:
        """Delete the status message. Safe to call any number of times."""
        if handle.released:
            return
        handle.released = True
        if handle.ref is None:
            return
        try:
            await self._gateway.delete(handle.ref)
            logger.info("Deleted status message %s", handle.ref.message_id)
        except GatewayError as e:
            logger.warning("Failed to delete status message %s: %s", handle.ref.message_id, e)

    async def finalize(self, handle: StatusHandle, text: str) -> MessageRef | None:
        """Turn the status message into a final notice and release the handle.

        Returns the edited message, or None if there was nothing to edit or
        the edit failed.
        """
        if handle.released:
            return None
        handle.released = True
        if handle.ref is None:
            return None
        try:
            return await self._gateway.edit(handle.ref, text)
        except GatewayError as e:
            logger.warning("Failed to finalize status message %s: %s", handle.ref.message_id, e)
            return None
