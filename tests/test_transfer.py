import asyncio
import json
import os
from typing import List

import pytest

from fakes import FakeChannel, run
from pairchat import TransferConfig
from pairchat.channel.protocol import DataChannelProtocol, parse_frame
from pairchat.channel.transfer import FileTransferEngine, percent
from pairchat.errors import FileTransferAborted, SendFailure
from pairchat.session import FileMetadata, FileTransferState, ReceivedFile, TransferDirection


class Recorder:
    def __init__(self) -> None:
        self.progress: List[tuple] = []
        self.completed: List[ReceivedFile] = []
        self.aborted: List[tuple] = []

    def on_progress(self, direction: TransferDirection, metadata: FileMetadata, value: int) -> None:
        self.progress.append((direction, metadata.name, value))

    def on_complete(self, artifact: ReceivedFile) -> None:
        self.completed.append(artifact)

    def on_abort(self, direction: TransferDirection, metadata, reason: str) -> None:
        self.aborted.append((direction, metadata.name if metadata else None, reason))


def make_engine(channel: FakeChannel, recorder: Recorder, **kwargs) -> FileTransferEngine:
    return FileTransferEngine(
        DataChannelProtocol(channel),
        FileTransferState(),
        TransferConfig(),
        on_progress=recorder.on_progress,
        on_complete=recorder.on_complete,
        on_abort=recorder.on_abort,
        **kwargs,
    )


def test_percent_rounds_and_handles_empty_files() -> None:
    assert percent(0, 0) == 100
    assert percent(16384, 50000) == 33
    assert percent(50000, 50000) == 100


def test_fifty_thousand_bytes_are_sent_as_four_chunks() -> None:
    channel = FakeChannel()
    recorder = Recorder()
    engine = make_engine(channel, recorder)
    data = os.urandom(50_000)

    metadata = run(engine.send_file("photo.bin", data))

    frames = channel.frames()
    assert frames[0] == {
        "type": "file-metadata",
        "name": "photo.bin",
        "size": 50_000,
        "mimeType": "application/octet-stream",
    }
    assert frames[-1] == {"type": "file-complete"}
    chunks = frames[1:-1]
    assert [len(chunk) for chunk in chunks] == [16384, 16384, 16384, 848]
    assert b"".join(chunks) == data
    assert metadata.size == 50_000
    assert recorder.progress[-1] == (TransferDirection.SENDING, "photo.bin", 100)
    assert engine.state.direction is TransferDirection.NONE


def test_reassembly_is_byte_identical_and_only_after_complete() -> None:
    sender_channel = FakeChannel()
    sender = make_engine(sender_channel, Recorder())
    data = os.urandom(40_000)
    run(sender.send_file("notes.txt", data, "text/plain"))

    recorder = Recorder()
    receiver = make_engine(FakeChannel(), recorder)
    frames = sender_channel.sent
    for frame in frames[:-1]:
        assert receiver.handle(parse_frame(frame))
    assert recorder.completed == []
    assert receiver.state.direction is TransferDirection.RECEIVING
    assert receiver.state.received_bytes == 40_000

    receiver.handle(parse_frame(frames[-1]))

    assert len(recorder.completed) == 1
    artifact = recorder.completed[0]
    assert artifact.data == data
    assert artifact.name == "notes.txt"
    assert artifact.mime_type == "text/plain"
    assert receiver.state.direction is TransferDirection.NONE
    assert recorder.progress[-1] == (TransferDirection.RECEIVING, "notes.txt", 100)


def test_backpressure_waits_below_threshold_before_each_chunk() -> None:
    channel = FakeChannel(buffer_growth=True)
    sleeps: List[float] = []

    async def drain(delay: float) -> None:
        sleeps.append(delay)
        channel.buffered_amount = max(0, channel.buffered_amount - 20_000)

    engine = make_engine(channel, Recorder(), sleep=drain)
    run(engine.send_file("big.bin", b"x" * (16_384 * 12)))

    chunk_buffers = [
        buffered for frame, buffered in zip(channel.sent, channel.buffered_at_send) if isinstance(frame, bytes)
    ]
    assert len(chunk_buffers) == 12
    assert all(buffered <= 65_536 for buffered in chunk_buffers)
    assert sleeps and all(delay == pytest.approx(0.05) for delay in sleeps)


def test_empty_file_reports_full_progress() -> None:
    channel = FakeChannel()
    recorder = Recorder()
    engine = make_engine(channel, recorder)

    run(engine.send_file("empty", b""))

    assert [frame["type"] for frame in channel.frames()] == ["file-metadata", "file-complete"]
    assert recorder.progress == [(TransferDirection.SENDING, "empty", 100)]


def test_channel_failure_mid_send_aborts_without_retry() -> None:
    channel = FakeChannel()
    channel.fail_on_send = 2
    recorder = Recorder()
    engine = make_engine(channel, recorder)

    with pytest.raises(FileTransferAborted):
        run(engine.send_file("a.bin", b"y" * 40_000))

    assert len(channel.sent) == 2
    assert engine.state.direction is TransferDirection.NONE
    assert recorder.aborted and recorder.aborted[0][0] is TransferDirection.SENDING


def test_send_requires_open_channel() -> None:
    engine = make_engine(FakeChannel(connected=False), Recorder())

    with pytest.raises(SendFailure):
        run(engine.send_file("a", b"z"))


def test_cannot_send_while_receiving() -> None:
    engine = make_engine(FakeChannel(), Recorder())
    engine.handle_metadata(FileMetadata(name="incoming", size=10))

    with pytest.raises(FileTransferAborted):
        run(engine.send_file("outgoing", b"abc"))
    assert engine.state.direction is TransferDirection.RECEIVING


def test_abort_mid_receive_discards_partial_data() -> None:
    recorder = Recorder()
    engine = make_engine(FakeChannel(), recorder)
    engine.handle_metadata(FileMetadata(name="half", size=100))
    engine.handle_chunk(b"a" * 40)

    assert engine.abort("peer disconnected") is True

    assert engine.state.direction is TransferDirection.NONE
    assert engine.state.chunks == []
    assert recorder.aborted == [(TransferDirection.RECEIVING, "half", "peer disconnected")]
    # A late completion never produces an artifact.
    assert engine.handle_complete() is None
    assert recorder.completed == []
    assert engine.abort("again") is False


def test_oversized_chunk_aborts_receive() -> None:
    recorder = Recorder()
    engine = make_engine(FakeChannel(), recorder)
    engine.handle_metadata(FileMetadata(name="tiny", size=4))

    engine.handle_chunk(b"12345")

    assert engine.state.direction is TransferDirection.NONE
    assert recorder.aborted[0][1] == "tiny"


def test_short_completion_discards_truncated_file() -> None:
    recorder = Recorder()
    engine = make_engine(FakeChannel(), recorder)
    engine.handle_metadata(FileMetadata(name="cut.bin", size=100))
    engine.handle_chunk(b"a" * 60)

    assert engine.handle_complete() is None

    assert recorder.completed == []
    assert recorder.aborted == [(TransferDirection.RECEIVING, "cut.bin", "cut.bin completed with 60 of 100 bytes")]
    assert engine.state.direction is TransferDirection.NONE
    assert engine.state.chunks == []


def test_stray_frames_are_ignored() -> None:
    recorder = Recorder()
    engine = make_engine(FakeChannel(), recorder)

    engine.handle_chunk(b"orphan")
    assert engine.handle_complete() is None
    assert engine.state.direction is TransferDirection.NONE
    assert recorder.completed == [] and recorder.aborted == []


def test_new_metadata_restarts_receive() -> None:
    recorder = Recorder()
    engine = make_engine(FakeChannel(), recorder)
    engine.handle_metadata(FileMetadata(name="first", size=10))
    engine.handle_chunk(b"12345")

    engine.handle_metadata(FileMetadata(name="second", size=3))
    engine.handle_chunk(b"abc")
    artifact = engine.handle_complete()

    assert recorder.aborted[0][1] == "first"
    assert artifact is not None and artifact.data == b"abc"


def test_cancelled_send_resets_state() -> None:
    channel = FakeChannel(buffer_growth=True)
    channel.buffered_amount = 100_000
    recorder = Recorder()

    async def never_drains(delay: float) -> None:
        await asyncio.sleep(0)

    engine = make_engine(channel, recorder, sleep=never_drains)

    async def scenario() -> None:
        task = asyncio.ensure_future(engine.send_file("stuck", b"q" * 20_000))
        for _ in range(5):
            await asyncio.sleep(0)
        assert engine.state.direction is TransferDirection.SENDING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    run(scenario())

    assert engine.state.direction is TransferDirection.NONE
    # Only the metadata frame went out.
    assert [json.loads(frame)["type"] for frame in channel.sent] == ["file-metadata"]
    assert recorder.aborted[0][2] == "send cancelled"
