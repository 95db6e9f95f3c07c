import asyncio
import random

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from officemafia.backend.api import SessionWebSocketHub, create_app
from officemafia.backend.errors import TransientStoreError
from officemafia.backend.lifecycle import SessionLifecycleManager
from officemafia.backend.store import InMemorySessionStore


def _client(store: InMemorySessionStore | None = None, retries: int = 3, admin_token: str | None = None) -> TestClient:
    manager = SessionLifecycleManager(store or InMemorySessionStore(), rng=random.Random(11), assignment_retries=retries)
    return TestClient(create_app(manager=manager, admin_token=admin_token))


def _create(client: TestClient, **payload) -> dict:
    response = client.post("/api/sessions", json=payload)
    assert response.status_code == 200
    return response.json()


def _join(client: TestClient, code: str, name: str):
    return client.post("/api/sessions/join", json={"code": code, "display_name": name})


def _started(client: TestClient, names=("A", "B", "C")) -> tuple[dict, list[dict]]:
    created = _create(client)
    for name in names:
        assert _join(client, created["code"], name).status_code == 200
    response = client.post(f"/api/sessions/{created['session_id']}/start", json={"host_token": created["host_token"]})
    assert response.status_code == 200
    return created, response.json()["state"]["players"]


def test_post_sessions_returns_id_code_and_host_token() -> None:
    client = _client()

    data = _create(client)

    assert data["session_id"]
    assert len(data["code"]) == 6
    assert data["host_token"]
    assert data["host_player_id"] is None


def test_post_sessions_with_host_name_adds_host_participant() -> None:
    client = _client()

    data = _create(client, host_name="Moderator")
    state = client.get(f"/api/sessions/{data['session_id']}").json()["state"]

    assert data["host_player_id"]
    assert state["players"][0]["isHost"] is True


def test_join_returns_player_and_rejects_duplicates() -> None:
    client = _client()
    created = _create(client)

    joined = _join(client, created["code"].lower(), "Alice")
    duplicate = _join(client, created["code"], "Alice")
    missing = _join(client, "ZZZZZZ", "Bob")

    assert joined.status_code == 200
    assert joined.json()["player"]["name"] == "Alice"
    assert joined.json()["player"]["alive"] is True
    assert duplicate.status_code == 409
    assert duplicate.json()["error"] == "DuplicateName"
    assert missing.status_code == 404


def test_start_requires_host_token_and_enough_players() -> None:
    client = _client()
    created = _create(client)
    session_id = created["session_id"]
    _join(client, created["code"], "A")
    _join(client, created["code"], "B")

    forbidden = client.post(f"/api/sessions/{session_id}/start", json={"host_token": "wrong"})
    too_few = client.post(f"/api/sessions/{session_id}/start", json={"host_token": created["host_token"]})
    state = client.get(f"/api/sessions/{session_id}").json()["state"]

    assert forbidden.status_code == 403
    assert too_few.status_code == 400
    assert too_few.json()["error"] == "InsufficientPlayers"
    assert state["session"]["status"] == "waiting"


def test_start_assigns_roles_and_second_start_conflicts() -> None:
    client = _client()
    created, players = _started(client)

    again = client.post(f"/api/sessions/{created['session_id']}/start", json={"host_token": created["host_token"]})

    assert sorted(player["role"] for player in players) == ["employee", "employee", "rogue"]
    assert again.status_code == 409
    assert again.json()["error"] == "AlreadyStarted"


def test_get_session_hides_roles_without_host_token() -> None:
    client = _client()
    created, _ = _started(client)
    session_id = created["session_id"]

    public = client.get(f"/api/sessions/{session_id}").json()["state"]
    host = client.get(f"/api/sessions/{session_id}", params={"token": created["host_token"]}).json()["state"]
    bad = client.get(f"/api/sessions/{session_id}", params={"token": "nope"})

    assert all(player["role"] is None for player in public["players"])
    assert all(player["role"] for player in host["players"])
    assert bad.status_code == 403


def test_player_can_read_own_role() -> None:
    client = _client()
    created, players = _started(client)

    response = client.get(f"/api/players/{players[0]['id']}")

    assert response.status_code == 200
    assert response.json()["player"]["role"] == players[0]["role"]


def test_phase_change_and_manual_end() -> None:
    client = _client()
    created, _ = _started(client)
    session_id = created["session_id"]
    token = created["host_token"]

    day = client.post(f"/api/sessions/{session_id}/phase", json={"host_token": token, "phase": "day"})
    ended = client.post(f"/api/sessions/{session_id}/end", json={"host_token": token})
    after = client.post(f"/api/sessions/{session_id}/phase", json={"host_token": token, "phase": "night"})

    assert day.json()["state"]["session"]["phase"] == "day"
    assert ended.json()["state"]["session"]["status"] == "completed"
    assert ended.json()["state"]["session"]["phase"] == "end"
    assert after.status_code == 409
    assert after.json()["error"] == "SessionClosed"


def test_eliminating_rogue_reports_employee_win() -> None:
    client = _client()
    created, players = _started(client)
    rogue = next(player for player in players if player["role"] == "rogue")

    response = client.post(f"/api/players/{rogue['id']}/eliminate", json={"host_token": created["host_token"]})

    assert response.status_code == 200
    data = response.json()
    assert data["winner"] == "employees"
    assert data["player"]["alive"] is False
    assert data["state"]["session"]["status"] == "completed"


def test_revive_requires_host_and_restores_player() -> None:
    client = _client()
    created, players = _started(client, ("A", "B", "C", "D", "E", "F", "G"))
    employee = next(player for player in players if player["role"] == "employee")
    token = created["host_token"]

    client.post(f"/api/players/{employee['id']}/eliminate", json={"host_token": token})
    forbidden = client.post(f"/api/players/{employee['id']}/revive", json={"host_token": "wrong"})
    revived = client.post(f"/api/players/{employee['id']}/revive", json={"host_token": token})

    assert forbidden.status_code == 403
    assert revived.json()["player"]["alive"] is True
    assert revived.json()["player"]["role"] == "employee"


def test_partial_assignment_surfaces_unassigned_ids_and_can_be_completed() -> None:
    class FlakyStore(InMemorySessionStore):
        broken: set[str] = set()

        def update_player_fields(self, player_id, fields):
            if "role" in fields and player_id in self.broken:
                raise TransientStoreError("timeout")
            return super().update_player_fields(player_id, fields)

    store = FlakyStore()
    client = _client(store, retries=0)
    created = _create(client)
    stuck = _join(client, created["code"], "A").json()["player"]["id"]
    _join(client, created["code"], "B")
    _join(client, created["code"], "C")
    FlakyStore.broken = {stuck}

    partial = client.post(f"/api/sessions/{created['session_id']}/start", json={"host_token": created["host_token"]})
    blocked = client.post(f"/api/players/{stuck}/eliminate", json={"host_token": created["host_token"]})
    half_state = client.get(f"/api/sessions/{created['session_id']}").json()["state"]
    FlakyStore.broken = set()
    completed = client.post(
        f"/api/sessions/{created['session_id']}/start/complete", json={"host_token": created["host_token"]}
    )

    assert partial.status_code == 500
    assert partial.json()["error"] == "PartialAssignmentError"
    assert partial.json()["unassigned_player_ids"] == [stuck]
    assert blocked.status_code == 409
    assert blocked.json()["error"] == "AssignmentIncomplete"
    assert half_state["winner"] is None
    assert completed.status_code == 200
    assert completed.json()["state"]["session"]["phase"] == "night"
    assert all(player["role"] for player in completed.json()["state"]["players"])


def test_admin_cleanup_requires_admin_token() -> None:
    client = _client(admin_token="ops-secret")

    allowed = client.post("/api/admin/cleanup", json={"admin_token": "ops-secret"})
    forbidden = client.post("/api/admin/cleanup", json={"admin_token": "guess"})

    assert allowed.status_code == 200
    assert allowed.json() == {"abandoned": 0, "purged": 0}
    assert forbidden.status_code == 403


def test_admin_cleanup_is_disabled_without_configured_token(monkeypatch) -> None:
    monkeypatch.delenv("OFFICEMAFIA_ADMIN_TOKEN", raising=False)
    client = _client()

    response = client.post("/api/admin/cleanup", json={"admin_token": "anything"})

    assert response.status_code == 404


def test_websocket_sends_initial_state_after_connect() -> None:
    client = _client()
    created = _create(client)
    session_id = created["session_id"]

    with client.websocket_connect(f"/ws/sessions/{session_id}") as websocket:
        message = websocket.receive_json()

    assert message["type"] == "state.full"
    assert message["state"]["session"]["id"] == session_id
    assert message["events"] == []


def test_websocket_rejects_invalid_token_and_unknown_session() -> None:
    client = _client()
    created = _create(client)

    with pytest.raises(Exception):
        with client.websocket_connect(f"/ws/sessions/{created['session_id']}?token=invalid"):
            pass
    with pytest.raises(Exception):
        with client.websocket_connect("/ws/sessions/missing"):
            pass


def test_websocket_broadcasts_state_and_events_to_all_clients() -> None:
    with _client() as client:
        created = _create(client)
        session_id = created["session_id"]
        host_token = created["host_token"]

        with client.websocket_connect(f"/ws/sessions/{session_id}?token={host_token}") as ws_host:
            with client.websocket_connect(f"/ws/sessions/{session_id}") as ws_player:
                ws_host.receive_json()
                ws_player.receive_json()

                _join(client, created["code"], "Alice")

                host_message = ws_host.receive_json()
                player_message = ws_player.receive_json()

    assert host_message["state"]["players"][0]["name"] == "Alice"
    assert player_message["state"]["players"][0]["name"] == "Alice"
    assert [event["kind"] for event in host_message["events"]] == ["player_joined"]
    assert host_message["events"] == player_message["events"]


def test_websocket_hides_role_events_from_players() -> None:
    with _client() as client:
        created = _create(client)
        session_id = created["session_id"]
        host_token = created["host_token"]
        for name in ("A", "B", "C"):
            _join(client, created["code"], name)

        with client.websocket_connect(f"/ws/sessions/{session_id}?token={host_token}") as ws_host:
            with client.websocket_connect(f"/ws/sessions/{session_id}") as ws_player:
                ws_host.receive_json()
                ws_player.receive_json()

                client.post(f"/api/sessions/{session_id}/start", json={"host_token": host_token})

                host_message = ws_host.receive_json()
                player_message = ws_player.receive_json()

    host_roles = [event["role"] for event in host_message["events"] if event["kind"] == "role_assigned"]
    player_roles = [event["role"] for event in player_message["events"] if event["kind"] == "role_assigned"]
    assert sorted(host_roles) == ["employee", "employee", "rogue"]
    assert player_roles == [None, None, None]
    assert all(player["role"] is None for player in player_message["state"]["players"])


class _FakeWebSocket:
    def __init__(self, refuse: bool = False) -> None:
        self.refuse = refuse
        self.accepted = False

    async def accept(self) -> None:
        if self.refuse:
            raise RuntimeError("handshake failed")
        self.accepted = True


def test_websocket_hub_does_not_subscribe_when_accept_fails() -> None:
    store = InMemorySessionStore()
    session = store.insert_session("host-1")
    hub = SessionWebSocketHub(store)

    with pytest.raises(RuntimeError):
        asyncio.run(hub.connect(session.id, _FakeWebSocket(refuse=True), is_host=False))

    assert hub.watching(session.id) is False
    assert store._feed.subscriber_count(session.id) == 0


def test_websocket_hub_releases_subscription_after_last_disconnect() -> None:
    store = InMemorySessionStore()
    session = store.insert_session("host-1")
    hub = SessionWebSocketHub(store)
    first, second = _FakeWebSocket(), _FakeWebSocket()

    asyncio.run(hub.connect(session.id, first, is_host=True))
    asyncio.run(hub.connect(session.id, second, is_host=False))
    hub.disconnect(session.id, first)

    assert hub.watching(session.id) is True
    assert store._feed.subscriber_count(session.id) == 1

    hub.disconnect(session.id, second)
    hub.disconnect(session.id, second)

    assert hub.watching(session.id) is False
    assert store._feed.subscriber_count(session.id) == 0
