import json
from datetime import datetime, timezone
from typing import List

from ..models import ConversationRecord, Session
from ..settings import Settings
from .tools import ToolRegistry


def _is_default_persona(persona: str) -> bool:
    return persona.strip().lower() in ("", "default", "robot")


def build_system_prompt(
    settings: Settings,
    registry: ToolRegistry,
    persona: str = "",
    now: datetime | None = None,
) -> str:
    """System prompt for a persona, with today's date and the tool list."""
    now = now or datetime.now(timezone.utc)
    if _is_default_persona(persona):
        persona_section = settings.default_persona_prompt
    else:
        persona_section = settings.persona_prompt_template.format(persona=persona.strip())

    tool_lines = []
    for name in registry.names():
        spec = registry.lookup(name)
        tool_lines.append(f" - {name}: {spec.description}")

    return settings.agent_system_prompt.format(
        now=now.strftime("%A, %B %d, %Y %H:%M UTC"),
        persona=persona_section,
        tools="\n".join(tool_lines) or " (no tools available)",
    )


def _history_json(history: List[ConversationRecord]) -> str:
    return json.dumps(
        [
            {
                "from": r.sender,
                "isBot": r.is_from_bot,
                "text": r.text,
                "timestamp": int(r.timestamp),
            }
            for r in history
        ],
        ensure_ascii=False,
    )


def build_user_content(session: Session) -> str:
    return (
        f"Question: {session.query}\n\n"
        f"Recent conversation context:\n{_history_json(session.recent_history)}\n\n"
        f"Accumulated research context:\n{session.accumulated_context}"
    )
