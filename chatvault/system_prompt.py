"""
system_prompt.py — the persisted system prompt.

The prompt lives in a plain text file (default ./data/system_prompt.md) so it
can be edited by hand as well as through the API/CLI. It is hot-reloaded on
every read via an mtime check, so edits apply without a restart.

    system_prompt:
        path: ./data/system_prompt.md   # optional, default shown
"""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_PATH = "./data/system_prompt.md"


class SystemPromptFile:
    """Read/write access to the system prompt file with mtime caching."""

    def __init__(self, path: str | Path = DEFAULT_PATH):
        self.path = Path(path)
        self._text = ""
        self._mtime = 0.0

    @classmethod
    def from_config(cls, cfg: dict) -> SystemPromptFile:
        sp_cfg = cfg.get("system_prompt", {})
        return cls(sp_cfg.get("path", DEFAULT_PATH))

    def get(self) -> str:
        """Return the current prompt, reloading if the file changed. Missing file → ''."""
        if not self.path.exists():
            if self._text:
                logger.debug("%s not found, system prompt cleared", self.path)
                self._text = ""
                self._mtime = 0.0
            return ""

        try:
            mtime = self.path.stat().st_mtime
        except OSError:
            return self._text

        if mtime == self._mtime:
            return self._text

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to reload %s: %s", self.path, e)
            return self._text
        if text != self._text:
            logger.info("System prompt reloaded (%d chars)", len(text))
        self._text = text
        self._mtime = mtime
        return self._text

    def set(self, text: str) -> None:
        """Write a new prompt. OSError propagates to the caller."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text, encoding="utf-8")
        self._text = text
        self._mtime = 0.0  # force a reload on the next read
        logger.info("System prompt written (%d chars)", len(text))
