"""Play codec output against a transport write coroutine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from btbridge.core.errors import NotConnectedError
from btbridge.core.model import Chunk, DelayChunk

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_TOTAL_DELAY_MS = 30_000


async def transmit(
    chunks: Sequence[Chunk],
    write: Callable[[bytes], Awaitable[None]],
    *,
    is_live: Callable[[], bool],
    max_total_delay_ms: int = DEFAULT_MAX_TOTAL_DELAY_MS,
    label: str = "device",
) -> int:
    """Write data chunks in order, sleeping for delay chunks.

    Returns the number of payload bytes written. Delays past
    ``max_total_delay_ms`` for this send are clipped. Raises
    ``NotConnectedError`` if the link went away before a data chunk.
    """
    bytes_sent = 0
    delay_budget_ms = max(0, max_total_delay_ms)

    for chunk in chunks:
        if isinstance(chunk, DelayChunk):
            wait_ms = min(chunk.milliseconds, delay_budget_ms)
            if wait_ms < chunk.milliseconds:
                LOGGER.warning(
                    "Delay budget exhausted for %s; clipping %dms delay to %dms",
                    label,
                    chunk.milliseconds,
                    wait_ms,
                )
            delay_budget_ms -= wait_ms
            LOGGER.debug("Delaying %dms", wait_ms)
            if wait_ms:
                await asyncio.sleep(wait_ms / 1000)
            continue

        if not is_live():
            raise NotConnectedError(f"Device {label} disconnected during send")

        await write(chunk.data)
        bytes_sent += len(chunk.data)
        LOGGER.debug("Sent %d bytes to %s", len(chunk.data), label)

    return bytes_sent
