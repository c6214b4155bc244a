import asyncio
import json

import pytest

from fakes import FakeChannel, run
from pairchat.channel.protocol import (
    BinaryChunk,
    ControlMessage,
    DataChannelProtocol,
    FileCompleteMessage,
    FileMetadataMessage,
    PlainTextMessage,
    parse_frame,
)
from pairchat.errors import ProtocolViolation, SendFailure


def test_plain_text_frames() -> None:
    assert parse_frame("hello there") == PlainTextMessage("hello there")
    # Valid JSON without a recognised tag is still chat text.
    assert parse_frame('{"type": "greeting"}') == PlainTextMessage('{"type": "greeting"}')
    assert parse_frame("[1, 2, 3]") == PlainTextMessage("[1, 2, 3]")
    assert parse_frame("42") == PlainTextMessage("42")


def test_control_frame_keeps_payload_fields() -> None:
    message = parse_frame(json.dumps({"type": "control", "action": "mute-toggle", "muted": True}))
    assert message == ControlMessage(action="mute-toggle", payload={"muted": True})


def test_kind_is_accepted_as_tag() -> None:
    message = parse_frame(json.dumps({"kind": "control", "action": "call-end"}))
    assert isinstance(message, ControlMessage)
    assert message.action == "call-end"


def test_file_frames() -> None:
    metadata = parse_frame(json.dumps({"type": "file-metadata", "name": "a.txt", "size": 5, "mimeType": "text/plain"}))
    assert isinstance(metadata, FileMetadataMessage)
    assert metadata.metadata.name == "a.txt"
    assert metadata.metadata.size == 5
    assert metadata.metadata.mime_type == "text/plain"

    untyped = parse_frame(json.dumps({"type": "file-metadata", "name": "blob", "size": 0}))
    assert untyped.metadata.mime_type == "application/octet-stream"

    assert parse_frame('{"type": "file-complete"}') == FileCompleteMessage()


def test_binary_frames_are_chunks() -> None:
    assert parse_frame(b"\x00\x01") == BinaryChunk(b"\x00\x01")
    assert parse_frame(bytearray(b"ab")) == BinaryChunk(b"ab")
    assert len(parse_frame(memoryview(b"abc"))) == 3


@pytest.mark.parametrize(
    "frame",
    [
        {"type": "file-metadata", "name": "x", "size": "12"},
        {"type": "file-metadata", "name": "x", "size": -1},
        {"type": "file-metadata", "name": "x", "size": True},
        {"type": "file-metadata", "size": 3},
        {"type": "control"},
        {"type": "control", "action": ""},
    ],
)
def test_recognised_tag_with_bad_fields_is_a_violation(frame: dict) -> None:
    with pytest.raises(ProtocolViolation):
        parse_frame(json.dumps(frame))


def test_send_control_serialises_envelope() -> None:
    channel = FakeChannel()
    protocol = DataChannelProtocol(channel)

    run(protocol.send_control("camera-toggle", cameraOff=True))

    assert channel.frames() == [{"cameraOff": True, "type": "control", "action": "camera-toggle"}]


def test_send_on_closed_channel_raises() -> None:
    protocol = DataChannelProtocol(FakeChannel(connected=False))

    with pytest.raises(SendFailure):
        run(protocol.send_text("hi"))


def test_channel_errors_become_send_failures() -> None:
    channel = FakeChannel()
    channel.fail_on_send = 0
    protocol = DataChannelProtocol(channel)

    with pytest.raises(SendFailure):
        run(protocol.send_bytes(b"abc"))


def test_exclusive_holds_other_senders() -> None:
    channel = FakeChannel()
    protocol = DataChannelProtocol(channel)

    async def scenario() -> None:
        async with protocol.exclusive() as writer:
            writer.send_json({"type": "file-metadata", "name": "f", "size": 2})
            pending = asyncio.ensure_future(protocol.send_text("interleaved?"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            assert not pending.done()
            writer.send(b"ab")
            writer.send_json({"type": "file-complete"})
        await pending

    run(scenario())

    assert channel.sent[-1] == "interleaved?"
    assert channel.sent[1] == b"ab"
