"""Snapshot builders for session views."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from .models import GamePhase, Player, Session, SessionStatus
from .win import evaluate


def format_time_ago(timestamp: datetime, now: datetime | None = None) -> str:
    """Compact age label such as ``42s``, ``5m``, ``3h`` or ``2d``."""
    current = now if now is not None else datetime.now(timezone.utc)
    seconds = max(0, int((current - timestamp).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    if seconds < 86400:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def build_session_state(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "code": session.code,
        "status": session.status.value,
        "phase": session.phase.value,
        "createdAt": session.created_at.isoformat(),
        "version": session.version,
    }


def build_player_state(player: Player, include_role: bool, now: datetime | None = None) -> dict[str, Any]:
    return {
        "id": player.id,
        "name": player.display_name,
        "role": player.role.value if include_role and player.role is not None else None,
        "alive": player.alive,
        "isHost": player.is_host,
        "bonusScore": player.bonus_score,
        "joinedAt": player.joined_at.isoformat(),
        "joinedAgo": format_time_ago(player.joined_at, now),
        "version": player.version,
    }


def _dealt_winner(session: Session | None, roster: list[Player]) -> str | None:
    if session is None or session.status not in (SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED):
        return None
    if session.phase == GamePhase.LOBBY:
        return None
    contenders = [player for player in roster if not player.is_host]
    if not contenders or any(player.role is None for player in contenders):
        return None
    return evaluate(roster).value


def build_snapshot(
    session: Session | None,
    players: Iterable[Player],
    include_roles: bool = False,
) -> dict[str, Any]:
    """Return the JSON view shared with host and player screens.

    Roles stay hidden unless ``include_roles`` is set, which only the host view does.
    ``winner`` stays None until every non-host player holds a role, so lobbies
    that were abandoned or ended early never report one.
    """
    now = datetime.now(timezone.utc)
    roster = list(players)
    return {
        "session": build_session_state(session) if session is not None else None,
        "players": [build_player_state(player, include_role=include_roles, now=now) for player in roster],
        "winner": _dealt_winner(session, roster),
    }
