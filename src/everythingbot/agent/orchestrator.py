import asyncio
import logging
from typing import Any, Dict

from ..exceptions import GatewayError, PersistenceError, ProtocolError, ReasoningError
from ..models import (
    Cancelled,
    ConversationRecord,
    Failed,
    FinalContent,
    MessagesDelivered,
    Outcome,
    Session,
    TimedOut,
    ToolInvocation,
)
from ..services.conversation_store import ConversationStore
from ..settings import Settings
from .cancellation import CancellationRegistry
from .delivery import DeliverySplitter
from .prompts import build_system_prompt, build_user_content
from .reasoning import FinalAnswer, ReasoningClient, ToolProposal
from .status import MessagingGateway, StatusReporter
from .tools import MessagesSent, ToolContext, ToolRegistry, ToolSpec, describe_tool_call

logger = logging.getLogger(__name__)


class AgentOrchestrator:
    """Drives the reason / act loop for one session at a time.

    Each call to ``run`` owns its Session exclusively; the orchestrator
    itself holds only collaborators, so one instance serves every
    concurrent session.
    """

    def __init__(
        self,
        reasoning: ReasoningClient,
        registry: ToolRegistry,
        gateway: MessagingGateway,
        store: ConversationStore,
        cancellation: CancellationRegistry,
        settings: Settings,
        status: StatusReporter | None = None,
        delivery: DeliverySplitter | None = None,
    ) -> None:
        self._reasoning = reasoning
        self._registry = registry
        self._gateway = gateway
        self._store = store
        self._cancellation = cancellation
        self._settings = settings
        self._status = status or StatusReporter(gateway, settings.status_initial_text)
        self._delivery = delivery or DeliverySplitter(
            gateway, store, self._status, settings
        )

    async def run(self, session: Session) -> Outcome:
        """Run the loop to completion and return the session's outcome.

        Never raises for session-level failures; those come back as ``Failed``.
        """
        logger.info("Starting agent session for chat %s", session.chat_id)
        session.tool_usage = {name: 0 for name in self._registry.quotas()}

        try:
            session.status = await self._status.start(session)
            outcome = await self._loop(session)
            session.terminated = outcome
            await self._finish(session, outcome)
        except Exception as e:
            logger.exception("Unexpected error in session for chat %s: %s", session.chat_id, e)
            session.terminated = Failed(error=str(e) or type(e).__name__)
            await self._deliver_notice(session, self._settings.failure_text)
        finally:
            await self._persist_query(session)

        logger.info(
            "Session for chat %s ended after %d iterations: %s",
            session.chat_id,
            session.loop_count,
            type(session.terminated).__name__,
        )
        return session.terminated

    async def _loop(self, session: Session) -> Outcome:
        system_prompt = build_system_prompt(self._settings, self._registry, session.persona)
        schemas = self._registry.schemas()

        while True:
            if await self._cancellation.consume(session.session_id):
                logger.info("Cancellation detected for chat %s, stopping loop", session.chat_id)
                await self._deliver_notice(session, self._settings.cancelled_text)
                return Cancelled()

            if session.loop_count >= self._settings.max_loops:
                logger.info("Maximum loops (%d) reached without final response", self._settings.max_loops)
                return TimedOut(reason="max_loops")

            session.loop_count += 1
            logger.info("Agent loop iteration %d for chat %s", session.loop_count, session.chat_id)

            try:
                decision = await asyncio.wait_for(
                    self._reasoning.decide(system_prompt, build_user_content(session), schemas),
                    timeout=self._settings.reasoning_timeout_seconds,
                )
            except (ReasoningError, ProtocolError, asyncio.TimeoutError) as e:
                return await self._fail(session, e)

            if isinstance(decision, FinalAnswer):
                logger.info("Model provided final response")
                return FinalContent(text=decision.text)

            spec = self._registry.lookup(decision.name)
            if spec is None:
                return await self._fail(session, ProtocolError(f"Unknown tool: {decision.name}"))

            if self._quota_exhausted(session, spec):
                logger.info("Tool %s usage limit (%s) reached", spec.name, spec.quota)
                session.append_context(
                    f"[Note: Reached usage limit for {spec.name} tool - "
                    "proceeding with available information]"
                )
                return await self._after_quota(session, system_prompt)

            if spec.quota is not None:
                session.tool_usage[spec.name] += 1
                logger.info(
                    "Tool %s usage count: %d/%d",
                    spec.name,
                    session.tool_usage[spec.name],
                    spec.quota,
                )

            await self._status.update(session.status, describe_tool_call(spec.name, decision.arguments))

            outcome = await self._execute(session, spec, decision)
            if outcome is not None:
                return outcome

    def _quota_exhausted(self, session: Session, spec: ToolSpec) -> bool:
        if spec.quota is None:
            return False
        return session.tool_usage.get(spec.name, 0) >= spec.quota

    async def _execute(
        self, session: Session, spec: ToolSpec, decision: ToolProposal
    ) -> Outcome | None:
        """Run one tool. Returns an outcome only when a terminal tool succeeded."""
        invocation = ToolInvocation(name=spec.name, arguments=decision.arguments)
        session.invocations.append(invocation)
        context = ToolContext(
            chat_id=session.chat_id,
            gateway=self._gateway,
            store=self._store,
            settings=self._settings,
            reply_to=session.request_message_id,
        )

        try:
            result = await asyncio.wait_for(
                spec.executor(decision.arguments, context),
                timeout=self._settings.tool_timeout_seconds,
            )
        except asyncio.TimeoutError:
            invocation.error_text = f"timed out after {self._settings.tool_timeout_seconds:g}s"
        except Exception as e:
            invocation.error_text = str(e) or type(e).__name__

        if invocation.error_text is not None:
            logger.error("Tool %s error: %s", spec.name, invocation.error_text)
            session.append_context(f"{spec.name} failed: {invocation.error_text}")
            return None

        if spec.terminal or isinstance(result, MessagesSent):
            count = result.count if isinstance(result, MessagesSent) else 0
            invocation.result_text = f"{count} messages sent"
            logger.info("Terminal tool %s delivered %d messages, ending loop", spec.name, count)
            await self._status.release(session.status)
            return MessagesDelivered(count=count)

        invocation.result_text = str(result)
        session.append_context(f"{spec.name} result:\n{invocation.result_text}")
        logger.info("Tool %s completed successfully", spec.name)
        return None

    async def _after_quota(self, session: Session, system_prompt: str) -> Outcome:
        """Stop after a quota hit, optionally asking once more for an answer."""
        if (
            not self._settings.synthesize_on_quota_exhausted
            or session.loop_count >= self._settings.max_loops
        ):
            return TimedOut(reason="quota_exhausted")

        session.loop_count += 1
        try:
            decision = await asyncio.wait_for(
                self._reasoning.decide(system_prompt, build_user_content(session), None),
                timeout=self._settings.reasoning_timeout_seconds,
            )
        except (ReasoningError, ProtocolError, asyncio.TimeoutError) as e:
            logger.warning("Synthesis after quota exhaustion failed: %s", e)
            return TimedOut(reason="quota_exhausted")
        if isinstance(decision, FinalAnswer):
            return FinalContent(text=decision.text)
        return TimedOut(reason="quota_exhausted")

    async def _fail(self, session: Session, error: BaseException) -> Failed:
        message = str(error) or type(error).__name__
        logger.error("Reasoning failed for chat %s: %s", session.chat_id, message)
        await self._deliver_notice(session, self._settings.failure_text)
        return Failed(error=message)

    async def _finish(self, session: Session, outcome: Outcome) -> None:
        if isinstance(outcome, FinalContent):
            await self._delivery.deliver(outcome.text, session)
        elif isinstance(outcome, TimedOut):
            await self._deliver_notice(session, self._settings.incomplete_text)

    async def _deliver_notice(self, session: Session, text: str) -> None:
        """Show ``text`` in place of the status message and persist it.

        Falls back to a new reply when there is no status message to edit.
        """
        ref = None
        if session.status is not None:
            ref = await self._status.finalize(session.status, text)
        if ref is None:
            try:
                ref = await self._gateway.send(
                    session.chat_id, text, reply_to=session.request_message_id
                )
            except GatewayError as e:
                logger.error("Failed to send notice to chat %s: %s", session.chat_id, e)
                return
        await self._append(
            session.chat_id,
            ConversationRecord(
                is_from_bot=True,
                sender="Bot",
                text=ref.text or text,
                external_message_id=ref.message_id,
            ),
        )

    async def _persist_query(self, session: Session) -> None:
        await self._append(
            session.chat_id,
            ConversationRecord(
                is_from_bot=False,
                sender="user",
                text=session.query,
                external_message_id=session.request_message_id,
            ),
        )

    async def _append(self, chat_id: str, record: ConversationRecord) -> None:
        try:
            await self._store.append(chat_id, record)
        except PersistenceError as e:
            logger.error("Failed to persist record for chat %s: %s", chat_id, e)


def summarize(session: Session) -> Dict[str, Any]:
    """Compact view of a finished session, for logs and the HTTP layer."""
    return {
        "chat_id": session.chat_id,
        "outcome": type(session.terminated).__name__,
        "iterations": session.loop_count,
        "tool_usage": dict(session.tool_usage),
        "tools_called": [i.name for i in session.invocations],
    }
