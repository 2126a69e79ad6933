"""
Backup document codec.

A backup is a single JSON document:

    {"conversations": [{"id": 1, "createdAt": 1718000000000,
                        "messages": [{"role": "user", "content": "hi"}, ...]}, ...],
     "systemPrompt": "..."}

`parse_document` validates the shape before anything touches the store, so a
bad file never leaves the store half-cleared.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from chatvault.storage.models import Conversation, Message

logger = logging.getLogger(__name__)


class BackupFormatError(ValueError):
    """The backup document does not have the expected shape."""


@dataclass
class Backup:
    conversations: list[Conversation]
    system_prompt: str | None = None   # None: document carried no prompt


def build_document(conversations: list[Conversation], system_prompt: str) -> dict:
    return {
        "conversations": [c.to_dict() for c in conversations],
        "systemPrompt": system_prompt,
    }


def _parse_conversation(index: int, raw) -> Conversation:
    if not isinstance(raw, dict):
        raise BackupFormatError(f"conversations[{index}] is not an object")

    conv_id = raw.get("id")
    created_at = raw.get("createdAt")
    messages = raw.get("messages")
    # bool is an int subclass; reject it explicitly
    if not isinstance(conv_id, int) or isinstance(conv_id, bool):
        raise BackupFormatError(f"conversations[{index}].id must be an integer")
    if not isinstance(created_at, int) or isinstance(created_at, bool):
        raise BackupFormatError(f"conversations[{index}].createdAt must be an integer")
    if not isinstance(messages, list):
        raise BackupFormatError(f"conversations[{index}].messages must be a list")

    parsed = []
    for j, m in enumerate(messages):
        if not isinstance(m, dict):
            raise BackupFormatError(f"conversations[{index}].messages[{j}] is not an object")
        try:
            parsed.append(Message(role=m.get("role"), content=m.get("content")))
        except ValueError as e:
            raise BackupFormatError(f"conversations[{index}].messages[{j}]: {e}") from e

    return Conversation(id=conv_id, created_at=created_at, messages=parsed)


def parse_document(doc) -> Backup:
    """Validate a decoded backup document and turn it into models."""
    if not isinstance(doc, dict):
        raise BackupFormatError("Backup must be a JSON object")
    raw_conversations = doc.get("conversations")
    if not isinstance(raw_conversations, list):
        raise BackupFormatError("Backup is missing the 'conversations' list")

    conversations = [_parse_conversation(i, c) for i, c in enumerate(raw_conversations)]
    ids = [c.id for c in conversations]
    if len(set(ids)) != len(ids):
        raise BackupFormatError("Backup contains duplicate conversation ids")

    prompt = doc.get("systemPrompt")
    if prompt is not None and not isinstance(prompt, str):
        raise BackupFormatError("'systemPrompt' must be a string")

    return Backup(conversations=conversations, system_prompt=prompt)


def write_backup(path: str | Path, doc: dict, pretty: bool = False) -> None:
    indent = 2 if pretty else None
    with open(path, "w", encoding="utf-8") as f:
        json.dump(doc, f, indent=indent, ensure_ascii=False)
    logger.info("Wrote backup with %d conversations to %s", len(doc["conversations"]), path)


def read_backup(path: str | Path) -> dict:
    """Load a backup file. Invalid JSON surfaces as BackupFormatError."""
    with open(path, encoding="utf-8") as f:
        try:
            return json.load(f)
        except json.JSONDecodeError as e:
            raise BackupFormatError(f"{path} is not valid JSON: {e}") from e
