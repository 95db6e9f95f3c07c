import random
from collections import Counter
from datetime import datetime, timezone

import pytest

from officemafia.backend.errors import ConfigurationError, ValidationError
from officemafia.backend.models import Player, Role
from officemafia.backend.roles import assign_roles, distribute, remaining_labels


def _player(index: int) -> Player:
    return Player(
        id=f"p{index}",
        session_id="s1",
        display_name=f"Player {index}",
        role=None,
        alive=True,
        joined_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.parametrize(
    ("count", "expected"),
    [
        (3, (2, 1, 0, 0)),
        (4, (2, 1, 1, 0)),
        (5, (3, 1, 1, 0)),
        (6, (3, 2, 1, 0)),
        (7, (4, 2, 1, 0)),
        (8, (4, 2, 1, 1)),
    ],
)
def test_distribute_matches_balance_table(count: int, expected: tuple[int, int, int, int]) -> None:
    assert distribute(count).as_tuple() == expected


def test_distribute_scales_for_large_rosters() -> None:
    assert distribute(9).as_tuple() == (4, 3, 1, 1)
    assert distribute(12).as_tuple() == (6, 4, 1, 1)
    assert distribute(30).as_tuple() == (18, 10, 1, 1)


@pytest.mark.parametrize("count", range(3, 51))
def test_distribute_counts_are_non_negative_and_cover_roster(count: int) -> None:
    distribution = distribute(count)

    assert distribution.total == count
    assert min(distribution.as_tuple()) >= 0
    assert distribution.employee >= 0
    assert distribution.rogue >= 1


@pytest.mark.parametrize("count", [-1, 0, 1, 2])
def test_distribute_rejects_small_rosters(count: int) -> None:
    with pytest.raises(ConfigurationError):
        distribute(count)


def test_configuration_error_is_a_validation_error() -> None:
    assert issubclass(ConfigurationError, ValidationError)


def test_distribute_is_deterministic() -> None:
    assert distribute(17) == distribute(17)


def test_assign_roles_gives_each_player_one_label_from_distribution() -> None:
    players = [_player(index) for index in range(7)]

    assignments = assign_roles(players, distribute(7), random.Random(42))

    assert [player.id for player, _ in assignments] == [player.id for player in players]
    assert Counter(role for _, role in assignments) == Counter(distribute(7).labels())


def test_assign_roles_permutes_labels_with_seeded_rng() -> None:
    players = [_player(index) for index in range(8)]

    first = [role for _, role in assign_roles(players, distribute(8), random.Random(1))]
    second = [role for _, role in assign_roles(players, distribute(8), random.Random(1))]

    assert first == second


def test_assign_roles_rejects_mismatched_roster() -> None:
    with pytest.raises(ConfigurationError):
        assign_roles([_player(0), _player(1), _player(2)], distribute(4), random.Random(0))


def test_remaining_labels_returns_owed_multiset() -> None:
    owed = remaining_labels(distribute(5), [Role.EMPLOYEE, Role.ROGUE])

    assert Counter(owed) == Counter({Role.EMPLOYEE: 2, Role.AUDITOR: 1})


def test_remaining_labels_rejects_over_assignment() -> None:
    with pytest.raises(ConfigurationError):
        remaining_labels(distribute(3), [Role.ROGUE, Role.ROGUE])
