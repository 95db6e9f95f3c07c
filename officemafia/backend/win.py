"""Win condition evaluation over a roster."""

from __future__ import annotations

from collections.abc import Iterable

from .models import Player, Role, Winner


def evaluate(players: Iterable[Player]) -> Winner:
    """Return the winning side, or ``Winner.NONE`` while the game is undecided.

    Host rows never count. Parity between living rogues and everyone else
    alive is a rogue win.
    """
    alive = [player for player in players if player.alive and not player.is_host]
    rogue_alive = sum(1 for player in alive if player.role == Role.ROGUE)
    other_alive = len(alive) - rogue_alive

    if rogue_alive == 0 and alive:
        return Winner.EMPLOYEES
    if rogue_alive > 0 and rogue_alive >= other_alive:
        return Winner.ROGUE
    return Winner.NONE
