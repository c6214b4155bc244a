import re
from typing import Any, List

import pytest

from fakes import FakePoolClient, FakePoolPeer, FakeTrack, run
from pairchat import MatchmakingConfig
from pairchat.errors import InvalidState
from pairchat.rtc.matchmaking import (
    Available,
    MatchmakingFactory,
    MatchmakingTransport,
    Unavailable,
    generate_peer_id,
    resolve_matchmaking,
)
from pairchat.rtc.transport import TransportEvents


class RecordingEvents(TransportEvents):
    def __init__(self) -> None:
        self.log: List[tuple] = []

    def on_state(self, state: str) -> None:
        self.log.append(("state", state))

    def on_channel(self, channel: Any) -> None:
        self.log.append(("channel", channel))

    def on_channel_open(self) -> None:
        self.log.append(("open",))

    def on_channel_close(self) -> None:
        self.log.append(("close",))

    def on_message(self, payload: Any) -> None:
        self.log.append(("message", payload))

    def on_error(self, error: BaseException) -> None:
        self.log.append(("error", str(error)))


def make_transport() -> tuple:
    events = RecordingEvents()
    transport = MatchmakingTransport(
        events,
        MatchmakingFactory(client=FakePoolClient, peer=FakePoolPeer),
        announce=["wss://tracker.example"],
        swarm_id="room",
    )
    return events, transport


def test_unconfigured_matchmaking_is_unavailable() -> None:
    result = resolve_matchmaking(MatchmakingConfig())
    assert isinstance(result, Unavailable)
    assert "not configured" in result.reason


def test_missing_library_is_unavailable() -> None:
    result = resolve_matchmaking(MatchmakingConfig(client="no_such_module_xyz:Client", peer="no_such_module_xyz:Peer"))
    assert isinstance(result, Unavailable)


def test_non_callable_is_unavailable() -> None:
    result = resolve_matchmaking(MatchmakingConfig(client="fakes:FakePoolClient", peer="pairchat:MODES"))
    assert isinstance(result, Unavailable)


def test_configured_matchmaking_is_available() -> None:
    result = resolve_matchmaking(MatchmakingConfig(client="fakes:FakePoolClient", peer="fakes.FakePoolPeer"))
    assert isinstance(result, Available)
    assert result.factory.client is FakePoolClient
    assert result.factory.peer is FakePoolPeer


def test_peer_id_format() -> None:
    peer_id = generate_peer_id()
    assert re.fullmatch(r"p-[0-9a-z]{9}", peer_id)


def test_start_builds_client_with_swarm_details() -> None:
    _, transport = make_transport()

    transport.start()
    transport.start()

    client = FakePoolClient.instances[-1]
    assert client.started == 1
    assert client.swarm_id == "room"
    assert client.peer_id == transport.peer_id
    assert client.announce == ["wss://tracker.example"]
    assert client.peer_factory is FakePoolPeer


def test_only_first_peer_is_bound() -> None:
    events, transport = make_transport()
    transport.start()
    client = FakePoolClient.instances[-1]
    first, second = FakePoolPeer(), FakePoolPeer()

    with pytest.raises(InvalidState):
        transport.open()

    client.emit("peer", first)
    client.emit("peer", second)

    assert transport.open() is first
    assert transport.channel is first
    assert [entry for entry in events.log if entry[0] == "channel"] == [("channel", first)]
    assert ("state", "connecting") in events.log
    assert second.handlers == {}


def test_peer_events_are_normalised() -> None:
    events, transport = make_transport()
    transport.start()
    client = FakePoolClient.instances[-1]
    peer = FakePoolPeer()
    client.emit("peer", peer)

    peer.connect()
    peer.emit("data", b"\x01\x02")
    transport.send("hello")
    peer.emit("close")

    assert events.log[-1] == ("state", "closed")
    assert ("open",) in events.log
    assert ("message", b"\x01\x02") in events.log
    assert ("close",) in events.log
    assert peer.sent == ["hello"]


def test_client_errors_are_forwarded() -> None:
    events, transport = make_transport()
    transport.start()
    FakePoolClient.instances[-1].emit("error", "tracker unreachable")
    FakePoolClient.instances[-1].emit("warning", "slow tracker")

    assert events.log == [("error", "tracker unreachable")]


def test_close_destroys_peer_and_client_once() -> None:
    _, transport = make_transport()
    transport.start()
    client = FakePoolClient.instances[-1]
    peer = FakePoolPeer()
    client.emit("peer", peer)

    run(transport.close())
    run(transport.close())

    assert peer.destroyed == 1
    assert client.destroyed == 1
    assert transport.current_state() == "closed"


def test_stream_media_goes_through_peer() -> None:
    _, transport = make_transport()
    transport.start()
    peer = FakePoolPeer()
    FakePoolClient.instances[-1].emit("peer", peer)
    track = FakeTrack("audio")

    run(transport.attach_media([track]))
    assert peer.streams == [[track]]
    run(transport.detach_media([track]))
    assert peer.streams == []
