"""Keep a device's local view of a session in step with the store."""

from __future__ import annotations

import logging
import threading
from typing import Any

from .errors import NotFoundError
from .events import (
    DomainEvent,
    EventBus,
    EventListener,
    PhaseChanged,
    PlayerEliminated,
    PlayerRevived,
    RoleAssigned,
    SessionEnded,
    SessionStarted,
    player_joined,
)
from .models import ChangeKind, Player, RowChange, Session, SessionStatus
from .state import build_snapshot
from .store import SessionStore, Subscription

logger = logging.getLogger(__name__)


def diff_session(old: Session | None, new: Session) -> list[DomainEvent]:
    if old is None:
        return []
    events: list[DomainEvent] = []
    if old.status == SessionStatus.WAITING and new.status == SessionStatus.IN_PROGRESS:
        events.append(SessionStarted(session_id=new.id))
    if new.phase != old.phase and new.status == SessionStatus.IN_PROGRESS:
        events.append(PhaseChanged(session_id=new.id, phase=new.phase))
    if new.status.is_terminal and not old.status.is_terminal:
        events.append(SessionEnded(session_id=new.id, status=new.status))
    return events


def diff_player(old: Player | None, new: Player) -> list[DomainEvent]:
    if old is None:
        events: list[DomainEvent] = [player_joined(new)]
        if new.role is not None:
            events.append(RoleAssigned(session_id=new.session_id, player_id=new.id, role=new.role))
        if not new.alive:
            events.append(PlayerEliminated(session_id=new.session_id, player_id=new.id))
        return events

    events = []
    if old.role is None and new.role is not None:
        events.append(RoleAssigned(session_id=new.session_id, player_id=new.id, role=new.role))
    if old.alive and not new.alive:
        events.append(PlayerEliminated(session_id=new.session_id, player_id=new.id))
    elif not old.alive and new.alive:
        events.append(PlayerRevived(session_id=new.session_id, player_id=new.id))
    return events


class PresenceSynchronizer:
    """Subscribe to one session and reconcile pushed row changes into a local view.

    Changes carrying a row version at or below the one already held are dropped,
    so a late or repeated notification never rolls the view back. ``refresh``
    reloads everything from the store and emits whatever the reload changed.
    """

    def __init__(self, store: SessionStore, session_id: str) -> None:
        self._store = store
        self.session_id = session_id
        self.events = EventBus()
        self._session: Session | None = None
        self._players: dict[str, Player] = {}
        self._order: dict[str, int] = {}
        self._subscription: Subscription | None = None
        self._lock = threading.RLock()

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def players(self) -> list[Player]:
        with self._lock:
            return sorted(self._players.values(), key=lambda player: (player.joined_at, self._order[player.id]))

    @property
    def running(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: EventListener):
        return self.events.add_listener(listener)

    def start(self) -> None:
        if self._subscription is not None:
            return
        # Subscribe before loading so nothing written in between is missed.
        self._subscription = self._store.subscribe(self.session_id, self._on_change)
        try:
            self._load(emit=False)
        except Exception:
            self.close()
            raise

    def refresh(self) -> list[DomainEvent]:
        return self._load(emit=True)

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def snapshot(self, include_roles: bool = False) -> dict[str, Any]:
        with self._lock:
            return build_snapshot(self._session, self.players, include_roles=include_roles)

    def _load(self, emit: bool) -> list[DomainEvent]:
        session = self._store.get_session(self.session_id)
        if session is None:
            raise NotFoundError(f"Session {self.session_id} not found")
        roster = self._store.query_players(self.session_id)

        events: list[DomainEvent] = []
        with self._lock:
            events.extend(self._apply_session(session))
            for player in roster:
                events.extend(self._apply_player(player))
            # Ties on joined_at follow the store's roster order.
            self._order = {player.id: index for index, player in enumerate(roster)}
        if emit:
            self._publish(events)
        return events

    def _on_change(self, change: RowChange) -> None:
        row = change.row
        with self._lock:
            if isinstance(row, Session):
                if change.kind == ChangeKind.DELETE:
                    events = self._forget_session(row)
                else:
                    events = self._apply_session(row)
            else:
                events = self._apply_player(row)
        self._publish(events)

    def _apply_session(self, session: Session) -> list[DomainEvent]:
        current = self._session
        if current is not None and session.version <= current.version:
            return []
        self._session = session
        return diff_session(current, session)

    def _apply_player(self, player: Player) -> list[DomainEvent]:
        current = self._players.get(player.id)
        if current is not None and player.version <= current.version:
            return []
        self._players[player.id] = player
        self._order.setdefault(player.id, len(self._order))
        return diff_player(current, player)

    def _forget_session(self, session: Session) -> list[DomainEvent]:
        current = self._session
        self._session = None
        self._players.clear()
        self._order.clear()
        logger.info("Session %s was removed from the store", session.id)
        if current is not None and not current.status.is_terminal:
            return [SessionEnded(session_id=session.id, status=session.status)]
        return []

    def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            self.events.publish(event)
