"""Transcript polling.

The record log has no push notifications, so clients re-read a transcript
on an interval and surface entries that are new or whose rendering changed
since the last read. Reads are blocking (SQLite or HTTP), so they run off
the event loop via ``asyncio.to_thread``.

An entry is emitted again when its text or decryption state changes, e.g.
when a sender's self-copy lands after a poll already showed the
placeholder. Entries that drop out of the transcript (soft-deleted, or
pushed past the limit) are reported through ``removed``.

Usage:
    poller = alice.conversation_poller(bob.address)
    async for entries in poller.stream():
        for entry in entries:
            print(entry.sender, entry.text)
        for message_id in poller.removed:
            print("gone:", message_id)

Cancel the consuming task to stop polling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, AsyncIterator

from .errors import SealedlogError

if TYPE_CHECKING:
    from .transcript import TranscriptEntry

logger = logging.getLogger(__name__)


def _rendering(entry: TranscriptEntry) -> tuple[str, bool]:
    return entry.text, entry.decrypted


class TranscriptPoller:
    """Re-reads a transcript and yields new or changed entries.

    Only the entries of the latest read are remembered, so memory stays
    bounded by the transcript limit.

    Args:
        read_fn: Blocking function returning the current transcript
        interval: Seconds to sleep between reads
    """

    def __init__(
        self,
        read_fn: Callable[[], list[TranscriptEntry]],
        interval: float = 3.0,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be > 0, got {interval}")
        self._read_fn = read_fn
        self.interval = interval
        self._shown: dict[str, tuple[str, bool]] = {}
        self._removed: list[str] = []

    @property
    def seen(self) -> frozenset[str]:
        """Message ids in the latest read."""
        return frozenset(self._shown)

    @property
    def removed(self) -> list[str]:
        """Ids shown before that the latest read no longer contains."""
        return list(self._removed)

    def _changes(self, entries: list[TranscriptEntry]) -> list[TranscriptEntry]:
        current = {e.message_id: _rendering(e) for e in entries}
        changed = [e for e in entries if self._shown.get(e.message_id) != current[e.message_id]]
        self._removed = [message_id for message_id in self._shown if message_id not in current]
        self._shown = current
        return changed

    async def poll_once(self) -> list[TranscriptEntry]:
        """Read once and return entries that are new or changed (possibly empty)."""
        entries = await asyncio.to_thread(self._read_fn)
        return self._changes(entries)

    async def stream(self) -> AsyncIterator[list[TranscriptEntry]]:
        """Yield a batch of new or changed entries whenever the transcript changes.

        The first batch is everything currently in the transcript. A batch
        is empty when the only change is removals; ``removed`` holds them
        until the next read. Read errors are logged and retried on the next
        interval.
        """
        while True:
            try:
                fresh = await self.poll_once()
            except SealedlogError:
                logger.warning("Transcript poll failed; retrying in %.1fs", self.interval, exc_info=True)
                await asyncio.sleep(self.interval)
                continue
            if fresh or self._removed:
                yield fresh
            await asyncio.sleep(self.interval)
