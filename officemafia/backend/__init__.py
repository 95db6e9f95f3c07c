"""Backend package for the Office Mafia session core."""

from .config import GameSettings, load_settings
from .errors import (
    AlreadyEnded,
    AlreadyStarted,
    AssignmentIncomplete,
    ConfigurationError,
    ConflictError,
    DuplicateName,
    Expired,
    InsufficientPlayers,
    NotFound,
    NotFoundError,
    OfficeMafiaError,
    PartialAssignmentError,
    SessionClosed,
    SessionNotStarted,
    TransientStoreError,
    ValidationError,
)
from .identity import new_host_token
from .lifecycle import SessionLifecycleManager
from .models import GamePhase, Player, Role, RoleDistribution, Session, SessionStatus, Winner
from .presence import PresenceSynchronizer
from .roles import distribute
from .store import InMemorySessionStore, PostgresSessionStore, SessionStore, create_store
from .win import evaluate

__all__ = [
    "AlreadyEnded",
    "AlreadyStarted",
    "AssignmentIncomplete",
    "ConfigurationError",
    "ConflictError",
    "create_store",
    "distribute",
    "DuplicateName",
    "evaluate",
    "Expired",
    "GamePhase",
    "GameSettings",
    "InMemorySessionStore",
    "InsufficientPlayers",
    "load_settings",
    "new_host_token",
    "NotFound",
    "NotFoundError",
    "OfficeMafiaError",
    "PartialAssignmentError",
    "Player",
    "PostgresSessionStore",
    "PresenceSynchronizer",
    "Role",
    "RoleDistribution",
    "Session",
    "SessionClosed",
    "SessionLifecycleManager",
    "SessionNotStarted",
    "SessionStatus",
    "SessionStore",
    "TransientStoreError",
    "ValidationError",
    "Winner",
]
