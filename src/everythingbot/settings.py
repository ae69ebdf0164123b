from typing import Dict, List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    gateway_timeout_seconds: float = 30.0

    model: str = "gpt-4.1"
    temperature: float = 0.7
    max_tokens: int = 3000
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"

    max_loops: int = 10
    reasoning_timeout_seconds: float = 60.0
    tool_timeout_seconds: float = 60.0
    default_tool_quota: int | None = 100
    tool_quotas: Dict[str, int] = {}
    synthesize_on_quota_exhausted: bool = False

    history_hours: int = 24
    history_limit: int = 50
    history_max_records: int = 1000

    max_chunk_length: int = 4000
    max_chunks: int = 4
    delivery_base_delay_seconds: float = 0.5
    delivery_delay_step_seconds: float = 0.2
    delivery_max_delay_seconds: float = 2.0

    send_messages_base_delay_seconds: float = 0.8
    send_messages_per_char_delay_seconds: float = 0.01
    send_messages_max_bonus_seconds: float = 1.2

    max_content_length: int = 50000
    serper_api_key: str | None = None
    mcp_server_cmds: List[str] = []

    redis_url: str | None = None
    conversation_ttl_seconds: int = 604800  # 7 days
    cancellation_ttl_seconds: int = 600

    status_initial_text: str = "Processing your question..."
    cancelled_text: str = "🛑 Operation cancelled by user request."
    failure_text: str = (
        "Sorry, I encountered an error while processing your request. "
        "Please try again."
    )
    incomplete_text: str = (
        "I was unable to complete your request within the time limit. "
        "Please try a simpler question."
    )

    agent_system_prompt: str = (
        "You are Everything Bot, a versatile assistant living in a group chat.\n\n"
        "Today is {now}.\n\n"
        "{persona}\n\n"
        " Toolkit\n"
        "{tools}\n\n"
        " Workflow\n"
        " - Research first with the tools, then answer.\n"
        " - Use search tools for anything time-sensitive.\n"
        " - Call a tool only when it moves the answer forward.\n"
        " - When you are ready, either reply with plain text or call "
        "send_messages with your final messages. send_messages ENDS the loop.\n\n"
        "Keep answers concise and conversational."
    )
    default_persona_prompt: str = (
        " Identity\n"
        "You are a robotic, analytical, precise assistant. State facts clearly, "
        "lead with the core answer and use minimal words.\n"
        "Message limit: 2 messages maximum."
    )
    persona_prompt_template: str = (
        " Persona\n"
        "Fully embody the persona of \"{persona}\": adopt their voice, vocabulary "
        "and worldview, and never break character.\n"
        "Message limit: 3 messages maximum."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
