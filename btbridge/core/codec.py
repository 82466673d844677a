"""Framed data codec: split a payload into data runs and inline delays.

A delay marker is the four byte sequence ``1B 7E 44 DD`` where ``DD`` is the
delay in milliseconds (0-255). Everything else is payload.
"""

from __future__ import annotations

from btbridge.core.model import Chunk, DataChunk, DelayChunk

DELAY_MARKER = b"\x1b\x7e\x44"
_MARKER_LEN = len(DELAY_MARKER) + 1


def encode(payload: bytes | bytearray | memoryview) -> list[Chunk]:
    if not isinstance(payload, (bytes, bytearray, memoryview)):
        raise TypeError(f"payload must be bytes-like, got {type(payload).__name__}")

    buffer = bytes(payload)
    chunks: list[Chunk] = []
    run = bytearray()
    i = 0

    while i < len(buffer):
        if i + _MARKER_LEN <= len(buffer) and buffer[i:i + len(DELAY_MARKER)] == DELAY_MARKER:
            if run:
                chunks.append(DataChunk(data=bytes(run)))
                run = bytearray()
            chunks.append(DelayChunk(milliseconds=buffer[i + len(DELAY_MARKER)]))
            i += _MARKER_LEN
        else:
            run.append(buffer[i])
            i += 1

    if run:
        chunks.append(DataChunk(data=bytes(run)))

    return chunks


def describe(chunks: list[Chunk]) -> list[str]:
    """Render chunks as short human-readable lines (used by the CLI)."""
    lines: list[str] = []
    for chunk in chunks:
        if isinstance(chunk, DelayChunk):
            lines.append(f"delay {chunk.milliseconds}ms")
        else:
            lines.append(f"data  {chunk.data.hex()} ({len(chunk.data)} bytes)")
    return lines
