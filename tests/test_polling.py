"""Tests for transcript polling."""

import asyncio
import threading

import pytest

from sealedlog.decryption import SENDER_COPY_UNAVAILABLE
from sealedlog.errors import LogReadError
from sealedlog.log import InMemoryRecordLog
from sealedlog.polling import TranscriptPoller
from sealedlog.records import DirectMessageRecord
from sealedlog.testing import ALICE, BOB, make_messenger
from sealedlog.transcript import TranscriptEntry


def _entry(message_id: str, text: str = "x", decrypted: bool = True) -> TranscriptEntry:
    return TranscriptEntry(
        message_id=message_id,
        sender="0x" + "a1" * 20,
        timestamp=1000,
        text=text,
        decrypted=decrypted,
        outgoing=False,
    )


class ScriptedReads:
    """Returns a fixed sequence of transcripts, repeating the last one."""

    def __init__(self, *transcripts):
        self.transcripts = list(transcripts)
        self.calls = 0

    def __call__(self):
        index = min(self.calls, len(self.transcripts) - 1)
        self.calls += 1
        result = self.transcripts[index]
        if isinstance(result, Exception):
            raise result
        return result


class HoldingLog(InMemoryRecordLog):
    """Holds every direct-message publish after the first until released."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self._direct_publishes = 0

    def publish(self, publisher, records):
        if records[0].schema_id == DirectMessageRecord.SCHEMA.id:
            self._direct_publishes += 1
            if self._direct_publishes > 1:
                self.release.wait(timeout=5)
        return super().publish(publisher, records)


class TestTranscriptPoller:
    """Tests for TranscriptPoller."""

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            TranscriptPoller(lambda: [], interval=0)

    @pytest.mark.asyncio
    async def test_poll_once_returns_only_new(self):
        reads = ScriptedReads([_entry("a")], [_entry("a"), _entry("b")])
        poller = TranscriptPoller(reads, interval=0.01)

        assert [e.message_id for e in await poller.poll_once()] == ["a"]
        assert [e.message_id for e in await poller.poll_once()] == ["b"]
        assert await poller.poll_once() == []
        assert poller.seen == frozenset({"a", "b"})

    @pytest.mark.asyncio
    async def test_changed_entry_is_emitted_again(self):
        reads = ScriptedReads(
            [_entry("a", SENDER_COPY_UNAVAILABLE, decrypted=False)],
            [_entry("a", "hello")],
        )
        poller = TranscriptPoller(reads, interval=0.01)

        [first] = await poller.poll_once()
        assert first.text == SENDER_COPY_UNAVAILABLE
        [second] = await poller.poll_once()
        assert second.text == "hello"
        assert second.decrypted
        assert await poller.poll_once() == []

    @pytest.mark.asyncio
    async def test_removed_entries_are_reported_and_forgotten(self):
        reads = ScriptedReads([_entry("a"), _entry("b")], [_entry("b")])
        poller = TranscriptPoller(reads, interval=0.01)

        await poller.poll_once()
        assert poller.removed == []
        assert await poller.poll_once() == []
        assert poller.removed == ["a"]
        assert poller.seen == frozenset({"b"})

        await poller.poll_once()
        assert poller.removed == []

    @pytest.mark.asyncio
    async def test_stream_yields_removal_only_batches(self):
        reads = ScriptedReads([_entry("a")], [])
        poller = TranscriptPoller(reads, interval=0.001)

        batches = []
        async for batch in poller.stream():
            batches.append(([e.message_id for e in batch], poller.removed))
            if len(batches) == 2:
                break

        assert batches == [(["a"], []), ([], ["a"])]

    @pytest.mark.asyncio
    async def test_stream_skips_empty_batches(self):
        reads = ScriptedReads([], [], [_entry("a")], [_entry("a"), _entry("b")])
        poller = TranscriptPoller(reads, interval=0.001)

        batches = []
        async for batch in poller.stream():
            batches.append([e.message_id for e in batch])
            if len(batches) == 2:
                break

        assert batches == [["a"], ["b"]]

    @pytest.mark.asyncio
    async def test_stream_survives_read_errors(self):
        reads = ScriptedReads(LogReadError("server down"), [_entry("a")])
        poller = TranscriptPoller(reads, interval=0.001)

        stream = poller.stream()
        batch = await asyncio.wait_for(stream.__anext__(), timeout=5)
        await stream.aclose()
        assert [e.message_id for e in batch] == ["a"]
        assert reads.calls == 2

    @pytest.mark.asyncio
    async def test_messenger_poller(self, alice, bob, clock):
        poller = bob.conversation_poller(alice.address)
        assert await poller.poll_once() == []

        alice.send_direct_message(bob.address, "ping")
        [entry] = await poller.poll_once()
        assert entry.text == "ping"

        clock.advance()
        alice.send_direct_message(bob.address, "pong")
        assert [e.text for e in await poller.poll_once()] == ["pong"]

    @pytest.mark.asyncio
    async def test_sender_placeholder_upgrades_when_self_copy_lands(self, clock):
        log = HoldingLog()
        alice = make_messenger(ALICE, log, clock)
        make_messenger(BOB, log, clock).close()

        sent = alice.send_direct_message(BOB, "hello")
        poller = alice.conversation_poller(BOB)
        [pending] = await poller.poll_once()
        assert pending.text == SENDER_COPY_UNAVAILABLE

        log.release.set()
        sent.self_copy.result(timeout=5)
        [landed] = await poller.poll_once()
        assert landed.message_id == pending.message_id
        assert landed.text == "hello"
        assert await poller.poll_once() == []
        alice.close()

    @pytest.mark.asyncio
    async def test_messenger_poller_reports_cleared_messages(self, alice, bob):
        sent = alice.send_direct_message(bob.address, "oops")
        alice.wait_for_background()
        poller = bob.conversation_poller(alice.address)
        assert [e.text for e in await poller.poll_once()] == ["oops"]

        alice.clear_chat(bob.address)
        assert await poller.poll_once() == []
        assert poller.removed == [sent.message_id]
