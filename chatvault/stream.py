"""
Stream assembly — turn model-output fragments into the final message.

Each fragment is one wire-level event from the model call. It is decoded on
its own into an event record; only `content_block_delta` events carry text
(`delta.text`), everything else is lifecycle signalling and is ignored.

A fragment that fails to decode is reported to the fault callback and
skipped. The assembler keeps one growing buffer and hands the *whole*
buffer to the sink after every append, so the sink can re-render the
complete-so-far text without tracking deltas.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterable, Awaitable, Callable, Union

from chatvault.errors import DecodeFault

logger = logging.getLogger(__name__)

CONTENT_DELTA = "content_block_delta"

Sink = Callable[[str], Union[None, Awaitable[None]]]
FaultHandler = Callable[[DecodeFault], None]


def _fragment_bytes(fragment) -> bytes | str:
    """Unwrap the payload of a fragment (raw bytes/str or a Bedrock-style envelope)."""
    if isinstance(fragment, (bytes, bytearray, str)):
        return fragment
    if isinstance(fragment, dict):
        chunk = fragment.get("chunk")
        if isinstance(chunk, dict) and isinstance(chunk.get("bytes"), (bytes, bytearray)):
            return chunk["bytes"]
    raise DecodeFault(f"Unsupported fragment type: {type(fragment).__name__}", fragment)


def decode_fragment(fragment) -> str | None:
    """
    Decode one fragment.

    Returns the delta text for a content-delta event, None for any other
    event type. Raises DecodeFault for malformed bytes, invalid JSON or an
    unexpected shape.
    """
    payload = _fragment_bytes(fragment)
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeFault(f"Fragment is not valid UTF-8: {e}", fragment) from e

    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeFault(f"Fragment is not valid JSON: {e}", fragment) from e

    if not isinstance(event, dict) or "type" not in event:
        raise DecodeFault("Fragment is not an event record with a type tag", fragment)

    if event["type"] != CONTENT_DELTA:
        return None

    delta = event.get("delta")
    if not isinstance(delta, dict):
        raise DecodeFault("content_block_delta without a delta object", fragment)
    # Non-text deltas (e.g. tool input JSON) carry no display text
    if delta.get("type", "text_delta") != "text_delta":
        return None
    text = delta.get("text")
    if not isinstance(text, str):
        raise DecodeFault("content_block_delta without delta.text", fragment)
    return text


def _log_fault(fault: DecodeFault):
    logger.warning("Skipping undecodable fragment: %s", fault.reason)


class StreamAssembler:
    """
    Accumulate content deltas from an async fragment stream.

    One assembler drives one stream. `cancel()` may be called from another
    task while `assemble()` is running: no further sink calls are made and
    the source is closed.
    """

    def __init__(self, on_fault: FaultHandler | None = None):
        self.on_fault = on_fault or _log_fault
        self.buffer = ""
        self.fault_count = 0
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self):
        """Stop assembling. Safe to call at any time, more than once."""
        self._cancelled.set()

    async def assemble(self, fragments: AsyncIterable, sink: Sink | None = None) -> str:
        """
        Consume `fragments` until exhausted or cancelled and return the text.
        `sink` may be a plain function or a coroutine function.
        """
        iterator = fragments.__aiter__()
        try:
            while not self.cancelled:
                next_fragment = asyncio.ensure_future(iterator.__anext__())
                cancel_wait = asyncio.ensure_future(self._cancelled.wait())
                try:
                    done, _ = await asyncio.wait(
                        {next_fragment, cancel_wait},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    cancel_wait.cancel()
                    if not next_fragment.done():
                        next_fragment.cancel()
                        await asyncio.gather(next_fragment, return_exceptions=True)

                if next_fragment not in done or next_fragment.cancelled():
                    break
                try:
                    fragment = next_fragment.result()
                except StopAsyncIteration:
                    break

                try:
                    text = decode_fragment(fragment)
                except DecodeFault as fault:
                    self.fault_count += 1
                    self.on_fault(fault)
                    continue

                if text is None or self.cancelled:
                    continue
                self.buffer += text
                if sink is not None:
                    result = sink(self.buffer)
                    if asyncio.iscoroutine(result):
                        await result
        finally:
            await self._close(iterator)

        if self.cancelled:
            logger.debug("Stream assembly cancelled after %d chars", len(self.buffer))
        return self.buffer

    @staticmethod
    async def _close(iterator):
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except RuntimeError:
            # generator is still running; it was cancelled above and will finish on its own
            logger.debug("Fragment source already closing")
