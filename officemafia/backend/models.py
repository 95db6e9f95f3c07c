"""Domain models for session rows and persistence contracts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class SessionStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ABANDONED)


class GamePhase(str, Enum):
    LOBBY = "lobby"
    NIGHT = "night"
    DAY = "day"
    VOTING = "voting"
    END = "end"


class Role(str, Enum):
    EMPLOYEE = "employee"
    ROGUE = "rogue"
    AUDITOR = "auditor"
    PROTECTOR = "protector"


class Winner(str, Enum):
    EMPLOYEES = "employees"
    ROGUE = "rogue"
    NONE = "none"


@dataclass(frozen=True)
class Session:
    id: str
    code: str
    host_token: str
    status: SessionStatus
    phase: GamePhase
    created_at: datetime
    version: int = 1


@dataclass(frozen=True)
class Player:
    id: str
    session_id: str
    display_name: str
    role: Role | None
    alive: bool
    joined_at: datetime
    is_host: bool = False
    bonus_score: int = 0
    version: int = 1


@dataclass(frozen=True)
class RoleDistribution:
    employee: int
    rogue: int
    auditor: int
    protector: int

    @property
    def total(self) -> int:
        return self.employee + self.rogue + self.auditor + self.protector

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.employee, self.rogue, self.auditor, self.protector)

    def labels(self) -> list[Role]:
        """Flat label list in archetype order, before shuffling."""
        return (
            [Role.EMPLOYEE] * self.employee
            + [Role.ROGUE] * self.rogue
            + [Role.AUDITOR] * self.auditor
            + [Role.PROTECTOR] * self.protector
        )


@dataclass(frozen=True)
class CleanupSummary:
    abandoned: int
    purged: int


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RowChange:
    kind: ChangeKind
    row: Session | Player


@dataclass(frozen=True)
class EliminationOutcome:
    player: Player
    winner: Winner
