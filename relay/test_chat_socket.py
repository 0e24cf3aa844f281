"""
End-to-end tests for the /ws chat endpoint.

Tests cover:
- Identity, join notice and online count on connect
- Submission broadcast to every client, then acknowledgment
- Idempotent retries
- Replay from serverOffset
- History scroll-back over the socket
- Leave notice and online count on disconnect
- Resuming a session by sid
"""

import pytest
from fastapi.testclient import TestClient

from relay.main import app
from relay.storage import Base, SessionLocal, append_message, engine


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


def seed_messages(count: int) -> list:
    """Store `count` plain-format messages directly and return their ids."""
    ids = []
    with SessionLocal() as db:
        for i in range(count):
            ids.append(append_message(db, f"seed-{i}", f"HappyOwl-321: message {i}").message_id)
    return ids


def receive_connect_frames(ws) -> dict:
    """Consume the frames every new connection gets and return the identity."""
    identity = ws.receive_json()
    assert identity["event"] == "alias assigned"
    joined = ws.receive_json()
    assert joined["event"] == "server message"
    count = ws.receive_json()
    assert count["event"] == "user count"
    return identity["args"][0]


def submit(ws, text: str, token: str, ack: int) -> None:
    ws.send_json({"event": "chat message", "args": [text, token], "ack": ack})


class TestConnect:
    """Test connection setup."""

    def test_identity_and_join(self, client):
        with client.websocket_connect("/ws") as ws:
            identity = ws.receive_json()
            assert identity["event"] == "alias assigned"
            assert identity["args"][0]["alias"]
            assert identity["args"][0]["color"].startswith("#")
            assert identity["args"][0]["sid"]

            joined = ws.receive_json()
            assert joined == {
                "event": "server message",
                "args": [f"{identity['args'][0]['alias']} joined the chat"],
            }
            assert ws.receive_json() == {"event": "user count", "args": [1]}

    def test_second_client_updates_count(self, client):
        with client.websocket_connect("/ws") as ws1:
            receive_connect_frames(ws1)
            with client.websocket_connect("/ws") as ws2:
                identity2 = receive_connect_frames(ws2)

                assert ws1.receive_json()["args"] == [f"{identity2['alias']} joined the chat"]
                assert ws1.receive_json() == {"event": "user count", "args": [2]}


class TestSubmit:
    """Test the submission handshake."""

    def test_broadcast_then_ack(self, client):
        with client.websocket_connect("/ws") as ws1:
            identity1 = receive_connect_frames(ws1)
            with client.websocket_connect("/ws") as ws2:
                receive_connect_frames(ws2)
                ws1.receive_json()
                ws1.receive_json()

                submit(ws1, "hello", "tok-1", ack=1)

                message = ws1.receive_json()
                assert message["event"] == "chat message"
                payload, message_id = message["args"]
                assert payload == {
                    "alias": identity1["alias"],
                    "content": "hello",
                    "color": identity1["color"],
                }
                assert ws1.receive_json() == {"ack": 1, "args": []}

                assert ws2.receive_json() == message

    def test_retry_with_same_token(self, client):
        with client.websocket_connect("/ws") as ws:
            receive_connect_frames(ws)

            submit(ws, "hello", "tok-1", ack=1)
            first = ws.receive_json()
            assert ws.receive_json() == {"ack": 1, "args": []}

            submit(ws, "hello", "tok-1", ack=2)
            # Only the ack comes back; no second broadcast
            assert ws.receive_json() == {"ack": 2, "args": []}

            submit(ws, "next", "tok-2", ack=3)
            second = ws.receive_json()
            assert second["args"][1] > first["args"][1]


class TestRecovery:
    """Test replay from serverOffset."""

    def test_replays_messages_after_offset(self, client):
        ids = seed_messages(15)

        with client.websocket_connect(f"/ws?serverOffset={ids[4]}") as ws:
            assert ws.receive_json()["event"] == "alias assigned"

            replayed = [ws.receive_json() for _ in range(10)]
            assert [frame["args"][1] for frame in replayed] == ids[5:]
            assert replayed[0]["args"][0] == {
                "alias": "HappyOwl-321",
                "content": "message 5",
                "color": "#888888",
            }

            assert ws.receive_json()["event"] == "server message"
            assert ws.receive_json()["event"] == "user count"

    def test_offset_zero_replays_nothing(self, client):
        seed_messages(3)

        with client.websocket_connect("/ws?serverOffset=0") as ws:
            receive_connect_frames(ws)
            ws.send_json({"event": "load history", "args": [], "ack": 1})

            batch = ws.receive_json()
            assert batch["event"] == "prepend history"
            assert len(batch["args"][0]) == 3

    def test_negative_offset_treated_as_zero(self, client):
        seed_messages(2)

        with client.websocket_connect("/ws?serverOffset=-5") as ws:
            receive_connect_frames(ws)

    def test_non_numeric_offset_treated_as_zero(self, client):
        seed_messages(2)

        with client.websocket_connect("/ws?serverOffset=abc") as ws:
            receive_connect_frames(ws)


class TestHistory:
    """Test scroll-back over the socket."""

    def test_load_history_before_earliest(self, client):
        ids = seed_messages(15)

        with client.websocket_connect(f"/ws?serverOffset={ids[4]}") as ws:
            ws.receive_json()
            for _ in range(12):
                ws.receive_json()

            ws.send_json({"event": "load history", "args": [ids[5]], "ack": 7})

            batch = ws.receive_json()
            assert batch["event"] == "prepend history"
            assert [item[1] for item in batch["args"][0]] == ids[:5]
            assert ws.receive_json() == {"ack": 7, "args": [5]}

            ws.send_json({"event": "load history", "args": [ids[0]], "ack": 8})
            assert ws.receive_json() == {"ack": 8, "args": [0]}


class TestDisconnect:
    """Test leave notices and resumption."""

    def test_leave_notice_and_count(self, client):
        with client.websocket_connect("/ws") as ws1:
            receive_connect_frames(ws1)
            with client.websocket_connect("/ws") as ws2:
                identity2 = receive_connect_frames(ws2)
                ws1.receive_json()
                ws1.receive_json()

            assert ws1.receive_json() == {
                "event": "server message",
                "args": [f"{identity2['alias']} left the chat"],
            }
            assert ws1.receive_json() == {"event": "user count", "args": [1]}

    def test_resume_by_sid_keeps_alias(self, client):
        with client.websocket_connect("/ws") as observer:
            receive_connect_frames(observer)

            with client.websocket_connect("/ws") as ws:
                identity = receive_connect_frames(ws)
                observer.receive_json()
                observer.receive_json()

            # Wait until the server has processed the disconnect
            assert observer.receive_json()["event"] == "server message"
            assert observer.receive_json()["event"] == "user count"

            submit(observer, "you missed this", "tok-1", ack=1)
            observer.receive_json()
            observer.receive_json()

            with client.websocket_connect(f"/ws?sid={identity['sid']}") as ws:
                resumed = ws.receive_json()
                assert resumed["args"][0]["alias"] == identity["alias"]
                assert resumed["args"][0]["sid"] == identity["sid"]

                buffered = [ws.receive_json() for _ in range(3)]
                assert [f["event"] for f in buffered] == ["server message", "user count", "chat message"]
                assert buffered[2]["args"][0]["content"] == "you missed this"
