"""Session state machine: creation, joins, start, phases, eliminations and the end."""

from __future__ import annotations

import logging
import random

from .errors import (
    AlreadyEnded,
    AlreadyStarted,
    AssignmentIncomplete,
    DuplicateName,
    Expired,
    InsufficientPlayers,
    NotFoundError,
    PartialAssignmentError,
    SessionClosed,
    SessionNotStarted,
    TransientStoreError,
    ValidationError,
)
from .identity import new_host_token
from .models import EliminationOutcome, GamePhase, Player, Role, Session, SessionStatus, Winner
from .roles import MIN_PLAYERS, assign_roles, distribute, remaining_labels, shuffle_roles
from .store import SessionStore
from .win import evaluate

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 40


class SessionLifecycleManager:
    """Drives a session through Waiting -> InProgress -> Completed.

    Every mutation is a single-row store write. Start is the only multi-row
    operation; it claims the session with a compare-and-set on status before
    touching any role.
    """

    def __init__(
        self,
        store: SessionStore,
        rng: random.Random | None = None,
        assignment_retries: int = 3,
    ) -> None:
        self.store = store
        self._rng = rng if rng is not None else random.SystemRandom()
        self._assignment_retries = max(0, assignment_retries)

    # -- reads -------------------------------------------------------------

    def get_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def get_player(self, player_id: str) -> Player:
        player = self.store.get_player(player_id)
        if player is None:
            raise NotFoundError(f"Player {player_id} not found")
        return player

    def list_players(self, session_id: str) -> list[Player]:
        self.get_session(session_id)
        return self.store.query_players(session_id)

    def evaluate_session(self, session_id: str) -> Winner:
        return evaluate(self.list_players(session_id))

    # -- lobby -------------------------------------------------------------

    def create_session(self, host_token: str | None = None) -> Session:
        try:
            summary = self.store.cleanup_stale_sessions()
            if summary.abandoned or summary.purged:
                logger.info(
                    "Cleanup abandoned %d and purged %d stale sessions", summary.abandoned, summary.purged
                )
        except Exception as exc:
            logger.warning("Stale session cleanup failed, continuing: %s", exc)

        session = self.store.insert_session(host_token or new_host_token())
        logger.info("Created session %s with code %s", session.id, session.code)
        return session

    def join_session(self, code: str, display_name: str, is_host: bool = False) -> Player:
        name = display_name.strip()
        if not name:
            raise ValidationError("Player name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Player name must be at most {MAX_NAME_LENGTH} characters")

        session = self.store.get_session_by_code(code)
        if session is None:
            raise NotFoundError()
        _ensure_joinable(session)

        # Friendly early answer; the store constraint is what actually holds under races.
        if any(player.display_name == name for player in self.store.query_players(session.id)):
            raise DuplicateName()

        player = self.store.insert_player(
            session.id, name, is_host=is_host, expected_status=SessionStatus.WAITING
        )
        if player is None:
            _ensure_joinable(self.get_session(session.id))
            raise AlreadyStarted()
        logger.info("Player %s joined session %s", player.display_name, session.code)
        return player

    # -- start -------------------------------------------------------------

    def start_session(self, session_id: str) -> list[Player]:
        """Assign roles to every non-host player and move the game into the night."""
        session = self.get_session(session_id)
        _ensure_startable(session)

        contenders = _non_host(self.store.query_players(session_id))
        if len(contenders) < MIN_PLAYERS:
            raise InsufficientPlayers(
                f"Minimum {MIN_PLAYERS} players required to start the game, {len(contenders)} joined"
            )

        claimed = self.store.update_session_fields(
            session_id,
            {"status": SessionStatus.IN_PROGRESS},
            expected_status=SessionStatus.WAITING,
        )
        if claimed is None:
            _ensure_startable(self.get_session(session_id))
            raise AlreadyStarted()

        # Joins are refused from here on, so this read is the final roster.
        roster = _non_host(self.store.query_players(session_id))
        distribution = distribute(len(roster))
        logger.info("Assigning roles for session %s: %s", session_id, distribution)

        failed = self._write_roles(assign_roles(roster, distribution, self._rng))
        if failed:
            logger.error("Role assignment incomplete for session %s: %d player(s) missing", session_id, len(failed))
            raise PartialAssignmentError(session_id, failed)

        self.store.update_session_fields(session_id, {"phase": GamePhase.NIGHT})
        logger.info("Session %s started with %d players", session_id, len(roster))
        return self.store.query_players(session_id)

    def complete_role_assignment(self, session_id: str) -> list[Player]:
        """Finish an interrupted start by assigning only the players still without a role."""
        session = self.get_session(session_id)
        if session.status.is_terminal:
            raise SessionClosed()
        if session.status != SessionStatus.IN_PROGRESS:
            raise SessionNotStarted()

        roster = _non_host(self.store.query_players(session_id))
        unassigned = [player for player in roster if player.role is None]
        if unassigned:
            labels = remaining_labels(
                distribute(len(roster)),
                [player.role for player in roster if player.role is not None],
            )
            failed = self._write_roles(list(zip(unassigned, shuffle_roles(labels, self._rng))))
            if failed:
                raise PartialAssignmentError(session_id, failed)

        if session.phase == GamePhase.LOBBY:
            moved = self.store.update_session_fields(
                session_id, {"phase": GamePhase.NIGHT}, expected_status=SessionStatus.IN_PROGRESS
            )
            if moved is None:
                raise SessionClosed()
        return self.store.query_players(session_id)

    def _write_roles(self, assignments: list[tuple[Player, Role]]) -> list[str]:
        failed: list[str] = []
        for player, role in assignments:
            for attempt in range(self._assignment_retries + 1):
                try:
                    self.store.update_player_fields(player.id, {"role": role})
                    break
                except TransientStoreError as exc:
                    logger.warning(
                        "Role write for player %s failed (attempt %d): %s", player.id, attempt + 1, exc
                    )
            else:
                failed.append(player.id)
        return failed

    # -- in progress -------------------------------------------------------

    def change_phase(self, session_id: str, phase: GamePhase) -> Session:
        session = self.get_session(session_id)
        phase = GamePhase(phase)
        if session.status.is_terminal:
            raise SessionClosed()
        if session.status == SessionStatus.WAITING:
            if phase == GamePhase.LOBBY:
                return session
            raise SessionNotStarted()
        _ensure_roles_dealt(session)
        if phase == GamePhase.LOBBY:
            raise ValidationError("A started game cannot return to the lobby")

        updated = self.store.update_session_fields(
            session_id, {"phase": phase}, expected_status=SessionStatus.IN_PROGRESS
        )
        if updated is None:
            raise SessionClosed()
        logger.info("Session %s moved to phase %s", session_id, phase.value)
        return updated

    def eliminate_player(self, player_id: str) -> EliminationOutcome:
        player = self._player_in_running_game(player_id)
        if player.alive:
            player = self.store.update_player_fields(player_id, {"alive": False})
            logger.info("Player %s eliminated in session %s", player.display_name, player.session_id)

        winner = evaluate(self.store.query_players(player.session_id))
        if winner != Winner.NONE:
            try:
                self.end_session(player.session_id, reason=winner.value)
            except SessionClosed:
                logger.info("Session %s was already ended", player.session_id)
        return EliminationOutcome(player=player, winner=winner)

    def revive_player(self, player_id: str) -> Player:
        player = self._player_in_running_game(player_id)
        if not player.alive:
            player = self.store.update_player_fields(player_id, {"alive": True})
            logger.info("Player %s revived in session %s", player.display_name, player.session_id)
        return player

    def end_session(self, session_id: str, reason: str = "host") -> Session:
        session = self.get_session(session_id)
        if session.status.is_terminal:
            raise SessionClosed()
        ended = self.store.update_session_fields(
            session_id,
            {"status": SessionStatus.COMPLETED, "phase": GamePhase.END},
            expected_status=session.status,
        )
        if ended is None:
            raise SessionClosed()
        logger.info("Session %s completed (%s)", session_id, reason)
        return ended

    def _player_in_running_game(self, player_id: str) -> Player:
        player = self.get_player(player_id)
        session = self.get_session(player.session_id)
        if session.status.is_terminal:
            raise SessionClosed()
        if session.status != SessionStatus.IN_PROGRESS:
            raise SessionNotStarted()
        _ensure_roles_dealt(session)
        return player


def _non_host(players: list[Player]) -> list[Player]:
    return [player for player in players if not player.is_host]


def _ensure_joinable(session: Session) -> None:
    if session.status == SessionStatus.IN_PROGRESS:
        raise AlreadyStarted()
    if session.status == SessionStatus.COMPLETED:
        raise AlreadyEnded()
    if session.status == SessionStatus.ABANDONED:
        raise Expired()


def _ensure_startable(session: Session) -> None:
    if session.status.is_terminal:
        raise SessionClosed()
    if session.status == SessionStatus.IN_PROGRESS:
        raise AlreadyStarted()


def _ensure_roles_dealt(session: Session) -> None:
    # In progress but still in the lobby phase means start stopped before every role was written.
    if session.status == SessionStatus.IN_PROGRESS and session.phase == GamePhase.LOBBY:
        raise AssignmentIncomplete()
