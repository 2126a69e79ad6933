"""
Error taxonomy for chatvault.

Only DecodeFault is recovered inside the core (the stream assembler skips
the bad fragment). Everything else propagates to the session controller or
the HTTP/CLI layer, which decides what the user sees.
"""

from __future__ import annotations


class ChatVaultError(Exception):
    """Base class for all chatvault errors."""


class StorageFault(ChatVaultError):
    """The durable medium is unavailable or rejected a write."""


class NotFound(ChatVaultError, KeyError):
    """A referenced conversation id does not exist."""

    def __init__(self, conversation_id: int):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return self.args[0]


class Conflict(ChatVaultError):
    """A write was based on a stale version of the conversation."""

    def __init__(self, conversation_id: int, expected: int, actual: int):
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conversation {conversation_id} changed underneath the write "
            f"(expected version {expected}, found {actual})"
        )


class DecodeFault(ChatVaultError):
    """A single stream fragment could not be decoded into an event."""

    def __init__(self, reason: str, fragment=None):
        self.reason = reason
        self.fragment = fragment
        super().__init__(reason)


class UpstreamFault(ChatVaultError):
    """The model-invocation call failed or was rejected."""

    def __init__(self, message: str, status_code: int = 0, backend_name: str = ""):
        self.status_code = status_code
        self.backend_name = backend_name
        super().__init__(message)
