import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union


@dataclass(frozen=True)
class MessageRef:
    """Handle to a message that exists on the chat platform."""

    chat_id: str
    message_id: int
    text: str = ""


@dataclass
class ConversationRecord:
    """One persisted conversation turn (user or bot)."""

    is_from_bot: bool
    sender: str
    text: str
    external_message_id: int | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class ToolInvocation:
    """A tool call made during one iteration, with its outcome."""

    name: str
    arguments: Dict[str, Any]
    result_text: str | None = None
    error_text: str | None = None


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class FinalContent:
    text: str


@dataclass(frozen=True)
class MessagesDelivered:
    count: int = 0


@dataclass(frozen=True)
class TimedOut:
    """Loop stopped without an answer: ``max_loops`` or ``quota_exhausted``."""

    reason: str = "max_loops"


@dataclass(frozen=True)
class Cancelled:
    pass


@dataclass(frozen=True)
class Failed:
    error: str


Outcome = Union[Pending, FinalContent, MessagesDelivered, TimedOut, Cancelled, Failed]


@dataclass
class Session:
    """Per-request state for one run of the agent loop."""

    chat_id: str
    query: str
    persona: str = ""
    request_message_id: int | None = None
    recent_history: List[ConversationRecord] = field(default_factory=list)
    accumulated_context: str = ""
    loop_count: int = 0
    tool_usage: Dict[str, int] = field(default_factory=dict)
    invocations: List[ToolInvocation] = field(default_factory=list)
    terminated: Outcome = field(default_factory=Pending)
    status: Any = None

    @property
    def session_id(self) -> str:
        return self.chat_id

    def append_context(self, text: str) -> None:
        self.accumulated_context += f"\n{text}\n"
