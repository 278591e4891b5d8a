"""Async line stream over a local log file.

Lines are read in batches on a worker thread so a large file never blocks the
event loop. Memory usage: O(batch); the file is never loaded whole.
"""
from __future__ import annotations

import asyncio
import os
from typing import AsyncGenerator, Callable

from ..errors import FileSourceError

LineSource = Callable[[str], AsyncGenerator[str, None]]

# Size hint passed to readlines(); roughly 64 KiB of text per batch.
_BATCH_HINT = 64 * 1024


async def open_line_stream(path: str, batch_hint: int = _BATCH_HINT) -> AsyncGenerator[str, None]:
    """Yield the lines of ``path`` without their line terminators.

    Decoding is UTF-8 with replacement characters for invalid bytes. Failing
    to open or read the file raises :class:`FileSourceError`.
    """
    try:
        fh = await asyncio.to_thread(open, path, encoding="utf-8", errors="replace")
    except OSError as exc:
        raise FileSourceError(path, exc.strerror or str(exc)) from exc

    try:
        while True:
            try:
                batch = await asyncio.to_thread(fh.readlines, batch_hint)
            except OSError as exc:
                raise FileSourceError(path, exc.strerror or str(exc)) from exc
            if not batch:
                return
            for line in batch:
                yield line.rstrip("\r\n")
    finally:
        fh.close()


def remove_file(path: str) -> bool:
    """Delete ``path``. Returns False when it was already gone."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return False
    return True
