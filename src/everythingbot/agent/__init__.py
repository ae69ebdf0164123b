"""Agent package for the Everything Bot reason / act loop.

This package exposes the orchestrator and its collaborators while keeping
implementation details (tools, prompts, delivery, status reporting) organized
in separate modules.
"""

from .cancellation import (
    CancellationRegistry,
    InMemoryCancellationRegistry,
    RedisCancellationRegistry,
    build_cancellation_registry,
)
from .delivery import DeliverySplitter, split_response
from .orchestrator import AgentOrchestrator
from .reasoning import ReasoningClient
from .status import StatusReporter
from .tools import MessagesSent, ToolContext, ToolRegistry, ToolSpec, build_tool_registry

__all__ = [
    "AgentOrchestrator",
    "CancellationRegistry",
    "DeliverySplitter",
    "InMemoryCancellationRegistry",
    "MessagesSent",
    "ReasoningClient",
    "RedisCancellationRegistry",
    "StatusReporter",
    "ToolContext",
    "ToolRegistry",
    "ToolSpec",
    "build_cancellation_registry",
    "build_tool_registry",
    "split_response",
]
