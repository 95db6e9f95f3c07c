"""Error taxonomy for session operations."""

from __future__ import annotations


class OfficeMafiaError(Exception):
    """Base class for every error raised by the session core."""

    default_message = "Session operation failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self.args[0])


class ValidationError(OfficeMafiaError):
    """Caller-correctable input or precondition problem. Never retried automatically."""

    default_message = "Invalid request"


class InsufficientPlayers(ValidationError):
    default_message = "Minimum 3 players required to start the game"


class ConfigurationError(ValidationError):
    default_message = "Minimum 3 players required to distribute roles"


class SessionNotStarted(ValidationError):
    default_message = "Game has not started yet"


class ConflictError(OfficeMafiaError):
    """Stale local view or lost race. Refresh, then retry with corrected input."""

    default_message = "Session state changed, refresh and try again"


class DuplicateName(ConflictError):
    default_message = "A player with this name already exists in the game"


class AlreadyStarted(ConflictError):
    default_message = "Game has already started"


class AlreadyEnded(ConflictError):
    default_message = "Game has already ended"


class Expired(ConflictError):
    default_message = "Game session has expired"


class SessionClosed(ConflictError):
    default_message = "Game is over, no further changes are accepted"


class AssignmentIncomplete(ConflictError):
    default_message = "Roles are not dealt to every player yet, complete the assignment first"


class NotFoundError(OfficeMafiaError):
    default_message = "Game not found"


NotFound = NotFoundError


class TransientStoreError(OfficeMafiaError):
    """Network or store failure. Safe to retry with backoff at the call site."""

    default_message = "Session store is temporarily unavailable"


class PartialAssignmentError(OfficeMafiaError):
    """Role assignment stopped midway: some players hold roles, others do not.

    Recover with ``SessionLifecycleManager.complete_role_assignment`` which only
    assigns the missing subset. Re-running the full assignment is never correct.
    """

    default_message = "Role assignment incomplete"

    def __init__(self, session_id: str, unassigned_player_ids: list[str], message: str | None = None) -> None:
        super().__init__(message or f"Failed to assign roles to {len(unassigned_player_ids)} player(s)")
        self.session_id = session_id
        self.unassigned_player_ids = list(unassigned_player_ids)
