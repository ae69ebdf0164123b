import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from everythingbot.exceptions import GatewayError  # noqa: E402
from everythingbot.models import MessageRef  # noqa: E402
from everythingbot.services.conversation_store import InMemoryConversationStore  # noqa: E402
from everythingbot.settings import Settings  # noqa: E402


class FakeGateway:
    """Records every gateway call; individual calls can be made to fail."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.edits: List[Dict[str, Any]] = []
        self.deleted: List[MessageRef] = []
        self.failing_sends: set[int] = set()
        self.edit_fails = False
        self.delete_fails = False
        self._send_calls = 0
        self._next_id = 100

    async def send(
        self,
        chat_id: str,
        text: str,
        reply_to: int | None = None,
        parse_mode: str | None = "Markdown",
    ) -> MessageRef:
        call = self._send_calls
        self._send_calls += 1
        if call in self.failing_sends:
            raise GatewayError(f"send #{call} failed")
        self._next_id += 1
        self.sent.append(
            {"chat_id": chat_id, "text": text, "reply_to": reply_to, "parse_mode": parse_mode}
        )
        return MessageRef(chat_id=chat_id, message_id=self._next_id, text=text)

    async def edit(self, ref: MessageRef, text: str) -> MessageRef | None:
        self.edits.append({"message_id": ref.message_id, "text": text})
        if self.edit_fails:
            return None
        return MessageRef(chat_id=ref.chat_id, message_id=ref.message_id, text=text)

    async def delete(self, ref: MessageRef) -> None:
        if self.delete_fails:
            raise GatewayError("message to delete not found")
        self.deleted.append(ref)

    @property
    def sent_texts(self) -> List[str]:
        return [m["text"] for m in self.sent]


class ScriptedReasoning:
    """Returns queued decisions in order and records each call."""

    def __init__(self, script: List[Any]) -> None:
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []
        self.before_call: Callable[[int], None] | None = None

    async def decide(self, system_prompt: str, user_content: str, tools: Any) -> Any:
        self.calls.append(
            {"system_prompt": system_prompt, "user_content": user_content, "tools": tools}
        )
        if not self.script:
            raise AssertionError("reasoning called more times than scripted")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step()
        return step


@pytest.fixture
def settings() -> Settings:
    """Settings with no pacing delays and short timeouts."""
    return Settings(
        max_loops=10,
        reasoning_timeout_seconds=2.0,
        tool_timeout_seconds=2.0,
        delivery_base_delay_seconds=0.0,
        delivery_delay_step_seconds=0.0,
        delivery_max_delay_seconds=0.0,
        send_messages_base_delay_seconds=0.0,
        send_messages_per_char_delay_seconds=0.0,
        send_messages_max_bonus_seconds=0.0,
        serper_api_key=None,
        redis_url=None,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()
