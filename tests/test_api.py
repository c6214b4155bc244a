import json
from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from fakes import FakeCapture, Switchboard
from pairchat import MediaConfig, PairchatConfig
from pairchat.api import create_app
from pairchat.rtc.matchmaking import Unavailable
from pairchat.session import ReceivedFile
from pairchat.supervisor import ConnectionSupervisor
from pairchat.utils.pools import DEFAULT_POOLS


@pytest.fixture
def board() -> Switchboard:
    return Switchboard()


@pytest.fixture
def supervisor(tmp_path: Path, board: Switchboard) -> ConnectionSupervisor:
    config = PairchatConfig(data_dir=tmp_path, media=MediaConfig(audio=False, video=False))
    return ConnectionSupervisor(
        config,
        capture=FakeCapture(),
        direct_factory=board.factory,
        matchmaking=Unavailable("no tracker client installed"),
    )


@pytest.fixture
def client(supervisor: ConnectionSupervisor) -> Iterator[TestClient]:
    with TestClient(create_app(supervisor=supervisor)) as test_client:
        yield test_client


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "state": "idle", "mode": "manual"}


def test_offer_then_leave(client: TestClient, board: Switchboard) -> None:
    response = client.post("/session/offer")
    assert response.status_code == 200
    description = json.loads(response.json()["description"])
    assert description["type"] == "offer"

    session = client.get("/session").json()["session"]
    assert session["state"] == "awaiting-remote"
    assert session["role"] == "offerer"

    response = client.post("/session/leave")
    assert response.json()["session"]["state"] == "idle"
    assert board.created[0].close_calls == 1


def test_signaling_errors_map_to_status(client: TestClient) -> None:
    response = client.post("/session/accept", json={"answer": '{"type": "answer", "sdp": "v=0"}'})
    assert response.status_code == 409
    assert response.json()["code"] == "E_INVALID_STATE"

    response = client.post("/session/answer", json={"offer": "not a description"})
    assert response.status_code == 400
    assert response.json()["code"] == "E_SIGNALING_PARSE"


def test_pool_mode_unavailable(client: TestClient) -> None:
    response = client.post("/session/matchmaking")
    assert response.status_code == 503
    assert "no tracker client installed" in response.json()["detail"]

    snapshot = client.get("/session").json()
    assert snapshot["matchmaking"] == {"available": False, "reason": "no tracker client installed"}


def test_send_requires_connection(client: TestClient) -> None:
    response = client.post("/messages", json={"text": "hello"})
    assert response.status_code == 409
    assert response.json()["code"] == "E_SEND"

    assert client.post("/messages", json={"text": "   "}).status_code == 422
    assert client.post("/files", params={"name": "a.txt"}, content=b"abc").status_code == 409


def test_call_requires_connection(client: TestClient) -> None:
    assert client.post("/call/voice").status_code == 409
    assert client.post("/media/mute").json() == {"muted": False}


def test_mode_switch(client: TestClient, supervisor: ConnectionSupervisor) -> None:
    response = client.put("/session/mode", json={"mode": "POOL"})
    assert response.json() == {"mode": "pool"}
    assert supervisor.mode == "pool"

    assert client.put("/session/mode", json={"mode": "broadcast"}).status_code == 422


def test_pool_settings(client: TestClient) -> None:
    response = client.get("/settings/pools")
    assert response.json() == {"pools": list(DEFAULT_POOLS), "raw": ""}

    response = client.put("/settings/pools", json={"pools": "wss://a.example\nwss://b.example"})
    assert response.json() == {"pools": ["wss://a.example", "wss://b.example"], "raw": "wss://a.example\nwss://b.example"}

    response = client.post("/settings/pools/restore")
    assert response.json()["pools"] == list(DEFAULT_POOLS)


def test_received_files_are_downloadable(client: TestClient, supervisor: ConnectionSupervisor) -> None:
    artifact = ReceivedFile(name="résumé.pdf", mime_type="application/pdf", data=b"%PDF-1.4")
    supervisor.artifacts[artifact.id] = artifact

    listing = client.get("/files").json()
    assert [item["id"] for item in listing] == [artifact.id]
    assert listing[0]["size"] == 8

    response = client.get(f"/files/{artifact.id}")
    assert response.status_code == 200
    assert response.content == b"%PDF-1.4"
    assert response.headers["content-type"] == "application/pdf"
    assert "filename*=UTF-8''r%C3%A9sum%C3%A9.pdf" in response.headers["content-disposition"]

    assert client.get("/files/missing").status_code == 404


def test_transcript_download(client: TestClient, supervisor: ConnectionSupervisor) -> None:
    supervisor.transcript.extend([("me", "hi"), ("stranger", "hello there")])

    response = client.get("/transcript")

    assert response.text == "Me: hi\nStranger: hello there"
    assert 'filename="chat-' in response.headers["content-disposition"]


def test_event_stream_sends_snapshot_and_answers_ping(client: TestClient) -> None:
    with client.websocket_connect("/events") as websocket:
        init = websocket.receive_json()
        assert init["type"] == "init"
        assert init["payload"]["session"]["state"] == "idle"

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json()["type"] == "pong"

        client.post("/session/offer")
        kinds = []
        while "local-description" not in kinds:
            kinds.append(websocket.receive_json()["type"])
        assert kinds[0] == "state"
