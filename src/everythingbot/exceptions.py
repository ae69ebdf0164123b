"""
Custom exceptions for everythingbot.

Contains:
- ProtocolError: malformed reasoning response or unknown tool (fatal for a session)
- ReasoningError: reasoning service transport failure (fatal for a session)
- ToolExecutionError: a tool rejected its input or failed (recovered in-loop)
- GatewayError: chat platform send/delete failure (non-fatal)
- PersistenceError: conversation store append failure (non-fatal)
"""


class ProtocolError(Exception):
    """
    Raised when the reasoning service returns neither a tool call nor content,
    returns unparseable tool arguments, or proposes a tool that is not registered.
    """


class ReasoningError(Exception):
    """
    Raised when the call to the reasoning service fails in transport.
    """


class ToolExecutionError(Exception):
    """
    Raised by a tool executor when it cannot produce a result.
    """


class GatewayError(Exception):
    """
    Raised when the messaging gateway fails to send or delete a message.
    """


class PersistenceError(Exception):
    """
    Raised when a conversation record cannot be appended to the store.
    """
