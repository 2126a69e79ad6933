"""
Anthropic Messages API backend.

Streams POST /v1/messages with `"stream": true` and yields the JSON payload
of every SSE `data:` line unchanged. The payloads are the same event records
(`message_start`, `content_block_delta`, ...) that the stream assembler
decodes.
"""

from __future__ import annotations

import logging

import httpx

from chatvault.backends.base import BaseBackend
from chatvault.errors import UpstreamFault

logger = logging.getLogger(__name__)


class AnthropicBackend(BaseBackend):
    """
    Streaming backend for the Anthropic Messages API (or anything that
    speaks the same SSE event protocol).
    """

    def __init__(
        self,
        name: str,
        url: str,
        api_key: str = "",
        model: str = "claude-3-5-sonnet-20240620",
        anthropic_version: str = "2023-06-01",
        max_tokens: int = 8192,
        temperature: float = 0.3,
        top_p: float = 1.0,
        timeout: int = 120,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name, url, timeout)
        self.api_key = api_key
        self.model = model
        self.anthropic_version = anthropic_version
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.top_p = top_p
        self._transport = transport

    def _headers(self) -> dict:
        headers = {
            "anthropic-version": self.anthropic_version,
            "content-type": "application/json",
        }
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def build_body(self, messages: list[dict], system_prompt: str = "") -> dict:
        """
        Build the request body. The Messages API takes the system prompt as
        a top-level field, so any system-role history entries are folded
        into it rather than sent as turns.
        """
        system_parts = [system_prompt] if system_prompt else []
        turns = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                turns.append({"role": msg["role"], "content": msg["content"]})

        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "messages": turns,
            "stream": True,
        }
        if system_parts:
            body["system"] = "\n\n".join(system_parts)
        return body

    async def stream(self, messages: list[dict], system_prompt: str = ""):
        """Stream a completion, yielding the JSON text of each SSE data line."""
        if not self.api_key:
            # same status as a rejected key
            raise UpstreamFault("No API key configured", status_code=401, backend_name=self.name)

        body = self.build_body(messages, system_prompt)
        event_name = ""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/messages",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        detail = (await resp.aread()).decode("utf-8", errors="replace")
                        raise UpstreamFault(
                            f"HTTP {resp.status_code}: {detail[:200]}",
                            status_code=resp.status_code,
                            backend_name=self.name,
                        )
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        if line.startswith("event:"):
                            event_name = line[6:].strip()
                            continue
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if event_name == "error":
                            raise UpstreamFault(
                                f"Stream error event: {data[:200]}",
                                backend_name=self.name,
                            )
                        yield data
        except httpx.TimeoutException as e:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise UpstreamFault(f"Timeout after {self.timeout}s", backend_name=self.name) from e
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise UpstreamFault(str(e) or type(e).__name__, backend_name=self.name) from e
