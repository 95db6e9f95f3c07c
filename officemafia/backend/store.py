"""Persistence interfaces and implementations for session data."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import itertools
import logging
import threading
from typing import Any, Protocol
import uuid

from officemafia.backend.errors import DuplicateName, NotFoundError, TransientStoreError
from officemafia.backend.identity import generate_session_code, normalize_code
from officemafia.backend.models import (
    ChangeKind,
    CleanupSummary,
    GamePhase,
    Player,
    Role,
    RowChange,
    Session,
    SessionStatus,
)

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[RowChange], None]

SESSION_FIELDS = {"status": SessionStatus, "phase": GamePhase}
PLAYER_FIELDS = {"role": Role, "alive": bool, "bonus_score": int}
CODE_ATTEMPTS = 8


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_fields(fields: dict[str, Any], allowed: dict[str, type]) -> dict[str, Any]:
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    coerced: dict[str, Any] = {}
    for name, value in fields.items():
        kind = allowed[name]
        if value is None:
            if name != "role":
                raise ValueError(f"Field {name} cannot be null")
            coerced[name] = None
        elif kind is bool:
            coerced[name] = bool(value)
        else:
            coerced[name] = kind(value)
    if coerced.get("bonus_score", 0) < 0:
        raise ValueError("bonus_score must be >= 0")
    return coerced


class Subscription:
    """Handle returned by ``subscribe``. Unsubscribing twice is harmless."""

    def __init__(self, feed: ChangeFeed, session_id: str, callback: ChangeCallback) -> None:
        self._feed = feed
        self.session_id = session_id
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self)


class ChangeFeed:
    """Per-session change notifications.

    Writers publish while holding their own write lock, so subscribers of one
    session observe changes in write order. Nothing is promised across sessions.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, session_id: str, callback: ChangeCallback) -> Subscription:
        subscription = Subscription(self, session_id, callback)
        with self._lock:
            self._subscriptions[session_id].append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.session_id)
            if subscriptions is None:
                return
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self._subscriptions.pop(subscription.session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(session_id, []))

    def publish(self, session_id: str, change: RowChange) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.get(session_id, []))
        for subscription in subscriptions:
            if not subscription.active:
                continue
            try:
                subscription.callback(change)
            except Exception:
                logger.exception("Change listener failed for session %s", session_id)


class SessionStore(Protocol):
    def insert_session(self, host_token: str) -> Session:
        """Create a waiting session; the store assigns id and a unique code."""

    def insert_player(
        self,
        session_id: str,
        display_name: str,
        is_host: bool = False,
        expected_status: SessionStatus | None = None,
    ) -> Player | None:
        """Insert a roster row atomically.

        Raises DuplicateName when the name is taken in that session. Returns
        None when ``expected_status`` no longer matches the session.
        """

    def update_session_fields(
        self,
        session_id: str,
        fields: dict[str, Any],
        expected_status: SessionStatus | None = None,
    ) -> Session | None:
        """Single-row update; returns None when the status guard misses."""

    def update_player_fields(self, player_id: str, fields: dict[str, Any]) -> Player:
        """Single-row update of role, alive or bonus_score."""

    def query_players(self, session_id: str) -> list[Player]:
        """Roster ordered by join time."""

    def get_player(self, player_id: str) -> Player | None:
        """Point read."""

    def get_session(self, session_id: str) -> Session | None:
        """Point read."""

    def get_session_by_code(self, code: str) -> Session | None:
        """Lookup by share code, preferring a non-terminal session."""

    def subscribe(self, session_id: str, callback: ChangeCallback) -> Subscription:
        """Receive session and player row changes for one session."""

    def cleanup_stale_sessions(self) -> CleanupSummary:
        """Abandon stale waiting sessions and purge old finished ones."""


@dataclass
class InMemorySessionStore:
    stale_after: timedelta = timedelta(minutes=120)
    purge_after: timedelta = timedelta(hours=24)
    clock: Callable[[], datetime] = field(default=_utc_now)

    def __post_init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._players: dict[str, Player] = {}
        self._join_order: dict[str, int] = {}
        self._sequence = itertools.count()
        self._lock = threading.RLock()
        self._feed = ChangeFeed()

    def insert_session(self, host_token: str) -> Session:
        with self._lock:
            active_codes = {s.code for s in self._sessions.values() if not s.status.is_terminal}
            code = generate_session_code()
            while code in active_codes:
                code = generate_session_code()
            session = Session(
                id=str(uuid.uuid4()),
                code=code,
                host_token=host_token,
                status=SessionStatus.WAITING,
                phase=GamePhase.LOBBY,
                created_at=self.clock(),
            )
            self._sessions[session.id] = session
            self._feed.publish(session.id, RowChange(ChangeKind.INSERT, session))
            return session

    def insert_player(
        self,
        session_id: str,
        display_name: str,
        is_host: bool = False,
        expected_status: SessionStatus | None = None,
    ) -> Player | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found")
            if expected_status is not None and session.status != expected_status:
                return None
            for existing in self._players.values():
                if existing.session_id == session_id and existing.display_name == display_name:
                    raise DuplicateName()
            player = Player(
                id=str(uuid.uuid4()),
                session_id=session_id,
                display_name=display_name,
                role=None,
                alive=True,
                joined_at=self.clock(),
                is_host=is_host,
            )
            self._players[player.id] = player
            self._join_order[player.id] = next(self._sequence)
            self._feed.publish(session_id, RowChange(ChangeKind.INSERT, player))
            return player

    def update_session_fields(
        self,
        session_id: str,
        fields: dict[str, Any],
        expected_status: SessionStatus | None = None,
    ) -> Session | None:
        changes = _coerce_fields(fields, SESSION_FIELDS)
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise NotFoundError(f"Session {session_id} not found")
            if expected_status is not None and current.status != expected_status:
                return None
            updated = replace(current, **changes, version=current.version + 1)
            self._sessions[session_id] = updated
            self._feed.publish(session_id, RowChange(ChangeKind.UPDATE, updated))
            return updated

    def update_player_fields(self, player_id: str, fields: dict[str, Any]) -> Player:
        changes = _coerce_fields(fields, PLAYER_FIELDS)
        with self._lock:
            current = self._players.get(player_id)
            if current is None:
                raise NotFoundError(f"Player {player_id} not found")
            updated = replace(current, **changes, version=current.version + 1)
            self._players[player_id] = updated
            self._feed.publish(updated.session_id, RowChange(ChangeKind.UPDATE, updated))
            return updated

    def query_players(self, session_id: str) -> list[Player]:
        with self._lock:
            roster = [player for player in self._players.values() if player.session_id == session_id]
            return sorted(roster, key=lambda player: (player.joined_at, self._join_order[player.id]))

    def get_player(self, player_id: str) -> Player | None:
        with self._lock:
            return self._players.get(player_id)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def get_session_by_code(self, code: str) -> Session | None:
        wanted = normalize_code(code)
        with self._lock:
            matches = [session for session in self._sessions.values() if session.code == wanted]
        if not matches:
            return None
        matches.sort(key=lambda session: (not session.status.is_terminal, session.created_at), reverse=True)
        return matches[0]

    def subscribe(self, session_id: str, callback: ChangeCallback) -> Subscription:
        return self._feed.subscribe(session_id, callback)

    def cleanup_stale_sessions(self) -> CleanupSummary:
        now = self.clock()
        abandoned = 0
        purged = 0
        with self._lock:
            for session in list(self._sessions.values()):
                age = now - session.created_at
                if session.status == SessionStatus.WAITING and age > self.stale_after:
                    updated = replace(session, status=SessionStatus.ABANDONED, version=session.version + 1)
                    self._sessions[session.id] = updated
                    self._feed.publish(session.id, RowChange(ChangeKind.UPDATE, updated))
                    abandoned += 1
                elif session.status.is_terminal and age > self.purge_after:
                    self._purge(session)
                    purged += 1
        return CleanupSummary(abandoned=abandoned, purged=purged)

    def _purge(self, session: Session) -> None:
        for player_id in [p.id for p in self._players.values() if p.session_id == session.id]:
            del self._players[player_id]
            del self._join_order[player_id]
        del self._sessions[session.id]
        self._feed.publish(session.id, RowChange(ChangeKind.DELETE, session))


_SESSION_COLUMNS = "id, code, host_token, status, phase, created_at, version"
_PLAYER_COLUMNS = "id, session_id, display_name, role, alive, joined_at, is_host, bonus_score, version"


def _session_from_row(row: tuple) -> Session:
    session_id, code, host_token, status, phase, created_at, version = row
    return Session(
        id=str(session_id),
        code=code,
        host_token=host_token,
        status=SessionStatus(status),
        phase=GamePhase(phase),
        created_at=created_at,
        version=int(version),
    )


def _player_from_row(row: tuple) -> Player:
    player_id, session_id, display_name, role, alive, joined_at, is_host, bonus_score, version = row
    return Player(
        id=str(player_id),
        session_id=str(session_id),
        display_name=display_name,
        role=Role(role) if role is not None else None,
        alive=bool(alive),
        joined_at=joined_at,
        is_host=bool(is_host),
        bonus_score=int(bonus_score),
        version=int(version),
    )


def _db_value(value: Any) -> Any:
    if isinstance(value, (SessionStatus, GamePhase, Role)):
        return value.value
    return value


@contextmanager
def _transient_errors() -> Iterator[None]:
    import psycopg

    try:
        yield
    except psycopg.OperationalError as exc:
        raise TransientStoreError(str(exc)) from exc


@dataclass
class PostgresSessionStore:
    database_url: str
    stale_after: timedelta = timedelta(minutes=120)
    purge_after: timedelta = timedelta(hours=24)

    def __post_init__(self) -> None:
        self._feed = ChangeFeed()
        self._write_lock = threading.Lock()

    def _connect(self) -> Any:
        import psycopg

        return psycopg.connect(self.database_url)

    def insert_session(self, host_token: str) -> Session:
        import psycopg

        for _ in range(CODE_ATTEMPTS):
            try:
                with self._write_lock, _transient_errors():
                    with self._connect() as conn:
                        with conn.cursor() as cur:
                            cur.execute(
                                f"""
                                INSERT INTO sessions (id, code, host_token, status, phase, created_at, version)
                                VALUES (%s, %s, %s, 'waiting', 'lobby', %s, 1)
                                RETURNING {_SESSION_COLUMNS}
                                """,
                                (str(uuid.uuid4()), generate_session_code(), host_token, _utc_now()),
                            )
                            session = _session_from_row(cur.fetchone())
                        conn.commit()
                    self._feed.publish(session.id, RowChange(ChangeKind.INSERT, session))
                    return session
            except psycopg.errors.UniqueViolation:
                logger.debug("Session code collision, retrying")
        raise TransientStoreError("Could not allocate a unique session code")

    def insert_player(
        self,
        session_id: str,
        display_name: str,
        is_host: bool = False,
        expected_status: SessionStatus | None = None,
    ) -> Player | None:
        import psycopg

        status_value = _db_value(expected_status)
        with self._write_lock, _transient_errors():
            try:
                with self._connect() as conn:
                    with conn.cursor() as cur:
                        cur.execute(
                            f"""
                            INSERT INTO players
                                (id, session_id, display_name, role, alive, joined_at, is_host, bonus_score, version)
                            SELECT %s, s.id, %s, NULL, TRUE, %s, %s, 0, 1
                            FROM sessions s
                            WHERE s.id = %s AND (%s::text IS NULL OR s.status = %s)
                            RETURNING {_PLAYER_COLUMNS}
                            """,
                            (
                                str(uuid.uuid4()),
                                display_name,
                                _utc_now(),
                                is_host,
                                session_id,
                                status_value,
                                status_value,
                            ),
                        )
                        row = cur.fetchone()
                    conn.commit()
            except psycopg.errors.UniqueViolation as exc:
                raise DuplicateName() from exc
            if row is None:
                if self.get_session(session_id) is None:
                    raise NotFoundError(f"Session {session_id} not found")
                return None
            player = _player_from_row(row)
            self._feed.publish(session_id, RowChange(ChangeKind.INSERT, player))
            return player

    def update_session_fields(
        self,
        session_id: str,
        fields: dict[str, Any],
        expected_status: SessionStatus | None = None,
    ) -> Session | None:
        changes = _coerce_fields(fields, SESSION_FIELDS)
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params: list[Any] = [_db_value(value) for value in changes.values()]
        params.append(session_id)
        guard = ""
        if expected_status is not None:
            guard = " AND status = %s"
            params.append(expected_status.value)

        with self._write_lock, _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        UPDATE sessions
                        SET {assignments}, version = version + 1
                        WHERE id = %s{guard}
                        RETURNING {_SESSION_COLUMNS}
                        """,
                        tuple(params),
                    )
                    row = cur.fetchone()
                conn.commit()
            if row is None:
                if expected_status is None or self.get_session(session_id) is None:
                    raise NotFoundError(f"Session {session_id} not found")
                return None
            session = _session_from_row(row)
            self._feed.publish(session_id, RowChange(ChangeKind.UPDATE, session))
            return session

    def update_player_fields(self, player_id: str, fields: dict[str, Any]) -> Player:
        changes = _coerce_fields(fields, PLAYER_FIELDS)
        assignments = ", ".join(f"{name} = %s" for name in changes)
        params = [_db_value(value) for value in changes.values()] + [player_id]

        with self._write_lock, _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        UPDATE players
                        SET {assignments}, version = version + 1
                        WHERE id = %s
                        RETURNING {_PLAYER_COLUMNS}
                        """,
                        tuple(params),
                    )
                    row = cur.fetchone()
                conn.commit()
            if row is None:
                raise NotFoundError(f"Player {player_id} not found")
            player = _player_from_row(row)
            self._feed.publish(player.session_id, RowChange(ChangeKind.UPDATE, player))
            return player

    def query_players(self, session_id: str) -> list[Player]:
        with _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        SELECT {_PLAYER_COLUMNS}
                        FROM players
                        WHERE session_id = %s
                        ORDER BY joined_at ASC, join_seq ASC
                        """,
                        (session_id,),
                    )
                    rows = cur.fetchall()
        return [_player_from_row(row) for row in rows]

    def get_player(self, player_id: str) -> Player | None:
        with _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_PLAYER_COLUMNS} FROM players WHERE id = %s", (player_id,))
                    row = cur.fetchone()
        return _player_from_row(row) if row is not None else None

    def get_session(self, session_id: str) -> Session | None:
        with _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = %s", (session_id,))
                    row = cur.fetchone()
        return _session_from_row(row) if row is not None else None

    def get_session_by_code(self, code: str) -> Session | None:
        with _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        SELECT {_SESSION_COLUMNS}
                        FROM sessions
                        WHERE code = %s
                        ORDER BY (status IN ('waiting', 'in_progress')) DESC, created_at DESC
                        LIMIT 1
                        """,
                        (normalize_code(code),),
                    )
                    row = cur.fetchone()
        return _session_from_row(row) if row is not None else None

    def subscribe(self, session_id: str, callback: ChangeCallback) -> Subscription:
        return self._feed.subscribe(session_id, callback)

    def cleanup_stale_sessions(self) -> CleanupSummary:
        now = _utc_now()
        with self._write_lock, _transient_errors():
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        UPDATE sessions
                        SET status = 'abandoned', version = version + 1
                        WHERE status = 'waiting' AND created_at < %s
                        RETURNING {_SESSION_COLUMNS}
                        """,
                        (now - self.stale_after,),
                    )
                    abandoned = [_session_from_row(row) for row in cur.fetchall()]
                    cur.execute(
                        f"""
                        DELETE FROM sessions
                        WHERE status IN ('completed', 'abandoned') AND created_at < %s
                        RETURNING {_SESSION_COLUMNS}
                        """,
                        (now - self.purge_after,),
                    )
                    purged = [_session_from_row(row) for row in cur.fetchall()]
                conn.commit()
            for session in abandoned:
                self._feed.publish(session.id, RowChange(ChangeKind.UPDATE, session))
            for session in purged:
                self._feed.publish(session.id, RowChange(ChangeKind.DELETE, session))
        return CleanupSummary(abandoned=len(abandoned), purged=len(purged))


def create_store(
    database_url: str | None,
    stale_after: timedelta = timedelta(minutes=120),
    purge_after: timedelta = timedelta(hours=24),
) -> SessionStore:
    if database_url:
        return PostgresSessionStore(database_url=database_url, stale_after=stale_after, purge_after=purge_after)
    return InMemorySessionStore(stale_after=stale_after, purge_after=purge_after)
