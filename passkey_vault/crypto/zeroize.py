"""
Best-effort wiping of key material held in mutable buffers.

``bytes`` objects are immutable and cannot be cleared in place, so key
material that must be discarded is kept in ``bytearray`` buffers and wiped
through wipe() once it is no longer needed.
"""

from __future__ import annotations


def wipe(buffer: bytearray | memoryview | None) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if buffer is None:
        return
    if isinstance(buffer, memoryview):
        if buffer.readonly:
            return
        buffer[:] = b"\x00" * len(buffer)
        return
    for i in range(len(buffer)):
        buffer[i] = 0
