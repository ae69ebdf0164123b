import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

import openai
from openai import AsyncOpenAI

from ..exceptions import ProtocolError, ReasoningError
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProposal:
    """The model asked for a tool. Only the first proposed call is kept."""

    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    ignored_calls: int = 0


@dataclass(frozen=True)
class FinalAnswer:
    text: str


Decision = Union[ToolProposal, FinalAnswer]


class ReasoningClient:
    """One chat-completions call per loop iteration."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or AsyncOpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url,
        )

    async def decide(
        self,
        system_prompt: str,
        user_content: str,
        tools: List[Dict[str, Any]] | None,
    ) -> Decision:
        """Ask the model for either a tool call or final content.

        Args:
            system_prompt: Persona system prompt.
            user_content: Query, recent history and accumulated tool results.
            tools: OpenAI tool schemas; None or empty asks for content only.

        Returns:
            Decision: a ToolProposal for the first tool call, otherwise a FinalAnswer.

        Raises:
            ReasoningError: the request failed in transport.
            ProtocolError: the response held neither a tool call nor content,
                or the tool arguments were not a JSON object.
        """
        request: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        try:
            response = await self._client.chat.completions.create(**request)
        except openai.APIError as e:
            raise ReasoningError(f"Reasoning request failed: {e}") from e

        return parse_decision(response)


def parse_decision(response: Any) -> Decision:
    """Turn a chat-completions response into a Decision."""
    try:
        message = response.choices[0].message
    except (AttributeError, IndexError, TypeError) as e:
        raise ProtocolError(f"Response has no message: {e}") from e

    tool_calls = getattr(message, "tool_calls", None) or []
    if tool_calls:
        first = tool_calls[0]
        if len(tool_calls) > 1:
            logger.info(
                "Model proposed %d tool calls; honoring only %s",
                len(tool_calls),
                first.function.name,
            )
        raw_args = first.function.arguments or "{}"
        try:
            arguments = json.loads(raw_args)
        except json.JSONDecodeError as e:
            raise ProtocolError(
                f"Invalid arguments for {first.function.name}: {e}"
            ) from e
        if not isinstance(arguments, dict):
            raise ProtocolError(f"Arguments for {first.function.name} are not an object")
        return ToolProposal(
            name=first.function.name,
            arguments=arguments,
            ignored_calls=len(tool_calls) - 1,
        )

    content = getattr(message, "content", None)
    if content and content.strip():
        return FinalAnswer(text=content)

    raise ProtocolError("Response contained neither a tool call nor content")
