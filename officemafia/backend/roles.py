"""Role distribution and assignment helpers."""

from __future__ import annotations

import random
from collections import Counter
from collections.abc import Iterable, Sequence

from .errors import ConfigurationError
from .models import Player, Role, RoleDistribution

MIN_PLAYERS = 3

# Hand-tuned balance points for small rosters: (employee, rogue, auditor, protector).
_SMALL_TABLE: dict[int, tuple[int, int, int, int]] = {
    3: (2, 1, 0, 0),
    4: (2, 1, 1, 0),
    5: (3, 1, 1, 0),
    6: (3, 2, 1, 0),
    7: (4, 2, 1, 0),
    8: (4, 2, 1, 1),
}


def distribute(player_count: int) -> RoleDistribution:
    """Return how many players receive each role archetype for a roster size."""
    if player_count < MIN_PLAYERS:
        raise ConfigurationError(f"Minimum {MIN_PLAYERS} players required, got {player_count}")

    if player_count in _SMALL_TABLE:
        return RoleDistribution(*_SMALL_TABLE[player_count])

    rogue = player_count // 3
    special_count = min(2, player_count // 4)
    auditor = 1 if special_count >= 1 else 0
    protector = 1 if special_count >= 2 else 0
    return RoleDistribution(
        employee=player_count - rogue - auditor - protector,
        rogue=rogue,
        auditor=auditor,
        protector=protector,
    )


def shuffle_roles(labels: Sequence[Role], rng: random.Random) -> list[Role]:
    shuffled = list(labels)
    rng.shuffle(shuffled)
    return shuffled


def assign_roles(
    players: Sequence[Player],
    distribution: RoleDistribution,
    rng: random.Random,
) -> list[tuple[Player, Role]]:
    """Pair shuffled labels 1:1 with players in the order given."""
    if distribution.total != len(players):
        raise ConfigurationError(
            f"Distribution covers {distribution.total} players but roster has {len(players)}"
        )
    return list(zip(players, shuffle_roles(distribution.labels(), rng)))


def remaining_labels(distribution: RoleDistribution, assigned: Iterable[Role]) -> list[Role]:
    """Labels still owed once ``assigned`` roles have been handed out."""
    owed = Counter(distribution.labels())
    owed.subtract(Counter(assigned))
    if any(count < 0 for count in owed.values()):
        raise ConfigurationError("Assigned roles exceed the distribution for this roster")
    return [role for role in Role for _ in range(owed[role])]
