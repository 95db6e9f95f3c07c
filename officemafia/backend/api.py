"""FastAPI endpoints for session hosting, joining, moderation and websocket sync."""

from __future__ import annotations

from collections import defaultdict
from datetime import timedelta
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .config import load_settings
from .errors import (
    ConflictError,
    NotFoundError,
    OfficeMafiaError,
    PartialAssignmentError,
    TransientStoreError,
    ValidationError,
)
from .events import DomainEvent, event_to_dict
from .identity import host_token_matches, new_host_token
from .lifecycle import MAX_NAME_LENGTH, SessionLifecycleManager
from .models import GamePhase, Session
from .presence import PresenceSynchronizer
from .state import build_player_state, build_snapshot
from .store import SessionStore, create_store


class CreateSessionRequest(BaseModel):
    host_token: str | None = Field(default=None, min_length=1)
    host_name: str | None = Field(default=None, min_length=1, max_length=MAX_NAME_LENGTH)


class CreateSessionResponse(BaseModel):
    session_id: str
    code: str
    host_token: str
    host_player_id: str | None = None


class JoinSessionRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)
    display_name: str = Field(min_length=1, max_length=MAX_NAME_LENGTH)


class PlayerResponse(BaseModel):
    player: dict[str, Any]


class SessionStateResponse(BaseModel):
    state: dict[str, Any]


class HostEnvelope(BaseModel):
    host_token: str = Field(min_length=1)


class PhaseEnvelope(HostEnvelope):
    phase: GamePhase


class EndEnvelope(HostEnvelope):
    reason: str = Field(default="host", max_length=200)


class EliminationResponse(BaseModel):
    player: dict[str, Any]
    winner: str
    state: dict[str, Any]


class AdminEnvelope(BaseModel):
    admin_token: str = Field(min_length=1)


class CleanupResponse(BaseModel):
    abandoned: int
    purged: int


def _status_code_for(exc: OfficeMafiaError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, TransientStoreError):
        return 503
    return 500


def _visible_event(event: DomainEvent, is_host: bool) -> dict[str, Any]:
    payload = event_to_dict(event)
    if not is_host and "role" in payload:
        payload["role"] = None
    return payload


class SessionWebSocketHub:
    """Websocket fan-out with one presence synchronizer per watched session."""

    def __init__(self, store: SessionStore) -> None:
        self._store = store
        self._connections: dict[str, dict[WebSocket, bool]] = defaultdict(dict)
        self._synchronizers: dict[str, PresenceSynchronizer] = {}
        self._pending: dict[str, list[DomainEvent]] = defaultdict(list)

    def watching(self, session_id: str) -> bool:
        return session_id in self._synchronizers

    async def connect(self, session_id: str, websocket: WebSocket, is_host: bool) -> None:
        await websocket.accept()
        if session_id not in self._synchronizers:
            synchronizer = PresenceSynchronizer(self._store, session_id)
            synchronizer.add_listener(lambda event: self._pending[session_id].append(event))
            synchronizer.start()
            self._synchronizers[session_id] = synchronizer
        self._connections[session_id][websocket] = is_host

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        connections = self._connections.get(session_id)
        if connections is None:
            return
        connections.pop(websocket, None)
        if not connections:
            self._connections.pop(session_id, None)
            self._pending.pop(session_id, None)
            synchronizer = self._synchronizers.pop(session_id, None)
            if synchronizer is not None:
                synchronizer.close()

    def refresh(self, session_id: str) -> None:
        synchronizer = self._synchronizers.get(session_id)
        if synchronizer is not None:
            synchronizer.refresh()

    async def send_state(
        self,
        websocket: WebSocket,
        session_id: str,
        is_host: bool,
        events: list[DomainEvent],
    ) -> None:
        synchronizer = self._synchronizers[session_id]
        await websocket.send_json(
            {
                "type": "state.full",
                "state": synchronizer.snapshot(include_roles=is_host),
                "events": [_visible_event(event, is_host) for event in events],
            }
        )

    async def broadcast_state(self, session_id: str) -> None:
        if session_id not in self._synchronizers:
            return
        events = self._pending.pop(session_id, [])
        stale_connections: list[WebSocket] = []
        for websocket, is_host in list(self._connections.get(session_id, {}).items()):
            try:
                await self.send_state(websocket, session_id, is_host, events)
            except RuntimeError:
                stale_connections.append(websocket)
        for websocket in stale_connections:
            self.disconnect(session_id=session_id, websocket=websocket)


def _default_manager(store: SessionStore | None) -> SessionLifecycleManager:
    settings = load_settings()
    if store is None:
        store = create_store(
            database_url=settings.database_url,
            stale_after=timedelta(minutes=settings.stale_after_minutes),
            purge_after=timedelta(hours=settings.purge_after_hours),
        )
    return SessionLifecycleManager(store, assignment_retries=settings.assignment_retries)


def create_app(
    store: SessionStore | None = None,
    manager: SessionLifecycleManager | None = None,
    admin_token: str | None = None,
) -> FastAPI:
    app = FastAPI(title="Office Mafia API", version="0.1.0")
    cleanup_token = admin_token if admin_token is not None else load_settings().admin_token
    lifecycle = manager if manager is not None else _default_manager(store)
    websocket_hub = SessionWebSocketHub(lifecycle.store)
    app.state.websocket_hub = websocket_hub
    app.state.manager = lifecycle

    @app.exception_handler(OfficeMafiaError)
    async def handle_game_error(request: Request, exc: OfficeMafiaError) -> JSONResponse:
        content: dict[str, Any] = {"detail": exc.message, "error": type(exc).__name__}
        if isinstance(exc, PartialAssignmentError):
            content["unassigned_player_ids"] = exc.unassigned_player_ids
        return JSONResponse(status_code=_status_code_for(exc), content=content)

    def get_manager() -> SessionLifecycleManager:
        return lifecycle

    def require_host(session: Session, token: str | None) -> None:
        if not host_token_matches(session.host_token, token):
            raise HTTPException(status_code=403, detail="Host token invalid")

    def session_state(local: SessionLifecycleManager, session_id: str, include_roles: bool) -> dict[str, Any]:
        return build_snapshot(local.get_session(session_id), local.list_players(session_id), include_roles=include_roles)

    @app.post("/api/sessions", response_model=CreateSessionResponse)
    async def create_session(
        payload: CreateSessionRequest,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> CreateSessionResponse:
        host_token = payload.host_token or new_host_token()
        session = local.create_session(host_token=host_token)
        host_player_id = None
        if payload.host_name:
            host_player = local.join_session(session.code, payload.host_name, is_host=True)
            host_player_id = host_player.id
        return CreateSessionResponse(
            session_id=session.id,
            code=session.code,
            host_token=session.host_token,
            host_player_id=host_player_id,
        )

    @app.post("/api/sessions/join", response_model=PlayerResponse)
    async def join_session(
        payload: JoinSessionRequest,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> PlayerResponse:
        player = local.join_session(payload.code, payload.display_name)
        await websocket_hub.broadcast_state(player.session_id)
        return PlayerResponse(player=build_player_state(player, include_role=True))

    @app.get("/api/sessions/{session_id}", response_model=SessionStateResponse)
    def get_session(
        session_id: str,
        token: str | None = Query(default=None),
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> SessionStateResponse:
        session = local.get_session(session_id)
        if token is not None:
            require_host(session, token)
        return SessionStateResponse(state=session_state(local, session_id, include_roles=token is not None))

    @app.get("/api/players/{player_id}", response_model=PlayerResponse)
    def get_player(
        player_id: str,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> PlayerResponse:
        player = local.get_player(player_id)
        return PlayerResponse(player=build_player_state(player, include_role=True))

    @app.post("/api/sessions/{session_id}/start", response_model=SessionStateResponse)
    async def start_session(
        session_id: str,
        payload: HostEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> SessionStateResponse:
        require_host(local.get_session(session_id), payload.host_token)
        try:
            local.start_session(session_id)
        finally:
            await websocket_hub.broadcast_state(session_id)
        return SessionStateResponse(state=session_state(local, session_id, include_roles=True))

    @app.post("/api/sessions/{session_id}/start/complete", response_model=SessionStateResponse)
    async def complete_start(
        session_id: str,
        payload: HostEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> SessionStateResponse:
        require_host(local.get_session(session_id), payload.host_token)
        try:
            local.complete_role_assignment(session_id)
        finally:
            await websocket_hub.broadcast_state(session_id)
        return SessionStateResponse(state=session_state(local, session_id, include_roles=True))

    @app.post("/api/sessions/{session_id}/phase", response_model=SessionStateResponse)
    async def change_phase(
        session_id: str,
        payload: PhaseEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> SessionStateResponse:
        require_host(local.get_session(session_id), payload.host_token)
        local.change_phase(session_id, payload.phase)
        await websocket_hub.broadcast_state(session_id)
        return SessionStateResponse(state=session_state(local, session_id, include_roles=True))

    @app.post("/api/sessions/{session_id}/end", response_model=SessionStateResponse)
    async def end_session(
        session_id: str,
        payload: EndEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> SessionStateResponse:
        require_host(local.get_session(session_id), payload.host_token)
        local.end_session(session_id, reason=payload.reason)
        await websocket_hub.broadcast_state(session_id)
        return SessionStateResponse(state=session_state(local, session_id, include_roles=True))

    @app.post("/api/players/{player_id}/eliminate", response_model=EliminationResponse)
    async def eliminate_player(
        player_id: str,
        payload: HostEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> EliminationResponse:
        player = local.get_player(player_id)
        require_host(local.get_session(player.session_id), payload.host_token)
        outcome = local.eliminate_player(player_id)
        await websocket_hub.broadcast_state(player.session_id)
        return EliminationResponse(
            player=build_player_state(outcome.player, include_role=True),
            winner=outcome.winner.value,
            state=session_state(local, player.session_id, include_roles=True),
        )

    @app.post("/api/players/{player_id}/revive", response_model=PlayerResponse)
    async def revive_player(
        player_id: str,
        payload: HostEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> PlayerResponse:
        player = local.get_player(player_id)
        require_host(local.get_session(player.session_id), payload.host_token)
        revived = local.revive_player(player_id)
        await websocket_hub.broadcast_state(player.session_id)
        return PlayerResponse(player=build_player_state(revived, include_role=True))

    @app.post("/api/admin/cleanup", response_model=CleanupResponse)
    def run_cleanup(
        payload: AdminEnvelope,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> CleanupResponse:
        if cleanup_token is None:
            raise HTTPException(status_code=404, detail="Not Found")
        if not host_token_matches(cleanup_token, payload.admin_token):
            raise HTTPException(status_code=403, detail="Admin token invalid")
        summary = local.store.cleanup_stale_sessions()
        return CleanupResponse(abandoned=summary.abandoned, purged=summary.purged)

    @app.websocket("/ws/sessions/{session_id}")
    async def session_ws(
        websocket: WebSocket,
        session_id: str,
        local: SessionLifecycleManager = Depends(get_manager),
    ) -> None:
        session = local.store.get_session(session_id)
        if session is None:
            await websocket.close(code=1008)
            return
        token = websocket.query_params.get("token")
        is_host = False
        if token:
            if not host_token_matches(session.host_token, token):
                await websocket.close(code=1008)
                return
            is_host = True

        try:
            await websocket_hub.connect(session_id=session_id, websocket=websocket, is_host=is_host)
            await websocket_hub.send_state(websocket=websocket, session_id=session_id, is_host=is_host, events=[])
            while True:
                message = await websocket.receive_text()
                if message.strip().lower() == "refresh":
                    websocket_hub.refresh(session_id)
                    await websocket_hub.broadcast_state(session_id)
        except WebSocketDisconnect:
            pass
        finally:
            websocket_hub.disconnect(session_id=session_id, websocket=websocket)

    return app


app = create_app()
