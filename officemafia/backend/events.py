"""Typed domain events derived from session and roster changes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, ClassVar, Union

from .models import GamePhase, Player, Role, SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlayerJoined:
    kind: ClassVar[str] = "player_joined"
    session_id: str
    player_id: str
    display_name: str
    is_host: bool


@dataclass(frozen=True)
class RoleAssigned:
    kind: ClassVar[str] = "role_assigned"
    session_id: str
    player_id: str
    role: Role


@dataclass(frozen=True)
class PlayerEliminated:
    kind: ClassVar[str] = "player_eliminated"
    session_id: str
    player_id: str


@dataclass(frozen=True)
class PlayerRevived:
    kind: ClassVar[str] = "player_revived"
    session_id: str
    player_id: str


@dataclass(frozen=True)
class PhaseChanged:
    kind: ClassVar[str] = "phase_changed"
    session_id: str
    phase: GamePhase


@dataclass(frozen=True)
class SessionStarted:
    kind: ClassVar[str] = "session_started"
    session_id: str


@dataclass(frozen=True)
class SessionEnded:
    kind: ClassVar[str] = "session_ended"
    session_id: str
    status: SessionStatus


DomainEvent = Union[
    PlayerJoined,
    RoleAssigned,
    PlayerEliminated,
    PlayerRevived,
    PhaseChanged,
    SessionStarted,
    SessionEnded,
]

EventListener = Callable[[DomainEvent], None]


def player_joined(player: Player) -> PlayerJoined:
    return PlayerJoined(
        session_id=player.session_id,
        player_id=player.id,
        display_name=player.display_name,
        is_host=player.is_host,
    )


def event_to_dict(event: DomainEvent) -> dict[str, Any]:
    payload: dict[str, Any] = {"kind": event.kind}
    for key, value in asdict(event).items():
        payload[key] = value.value if isinstance(value, Enum) else value
    return payload


class EventBus:
    """Fan out domain events to any number of independent listeners."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed for %s", event.kind)
