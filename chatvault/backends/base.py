"""
Base backend abstraction.
A backend is the model-invocation collaborator: given the conversation so
far and a system prompt, it returns an async stream of opaque fragments
(one per wire-level event). Decoding those fragments is the stream
assembler's job, not the backend's.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class BaseBackend(abc.ABC):
    """
    Abstract base for model backends.
    Sampling parameters are fixed per backend instance (from config).
    """

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    def stream(self, messages: list[dict], system_prompt: str = "") -> AsyncIterator[str]:
        """
        Invoke the model and yield raw event fragments as they arrive.
        `messages` is an ordered list of {"role", "content"} dicts.
        Raises UpstreamFault if the call fails or is rejected.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
