"""
Data models for conversation storage.
These define the shape of data flowing between the store, the service
and the session controller.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass
class Message:
    """A single message in a conversation."""
    role: str = ""           # "user", "assistant", "system"
    content: str = ""

    ROLES = ("user", "assistant", "system")

    def __post_init__(self):
        if self.role not in self.ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")
        if not isinstance(self.content, str):
            raise ValueError("Message content must be a string")

    def to_dict(self) -> dict:
        """The {role, content} pair used by the model request and backups."""
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(role=data.get("role", ""), content=data.get("content", ""))


@dataclass
class Conversation:
    """An ordered message history plus its store metadata."""
    id: int | None = None    # assigned by the store
    created_at: int = field(default_factory=now_ms)
    messages: list[Message] = field(default_factory=list)
    version: int = 0         # bumped by every successful put

    @property
    def is_empty(self) -> bool:
        return not self.messages

    def first_user_message(self) -> Message | None:
        for msg in self.messages:
            if msg.role == "user":
                return msg
        return None

    def to_dict(self) -> dict:
        """Export in the backup document shape."""
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "messages": [m.to_dict() for m in self.messages],
        }
