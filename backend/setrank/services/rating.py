K_FACTOR = 32.0
DEFAULT_RATING = 1500.0


def expected_score(rating: float, opponent: float) -> float:
    """Probability that a set rated ``rating`` beats one rated ``opponent``."""

    return 1 / (1 + 10 ** ((opponent - rating) / 400))


def update_ratings(
    rating_winner: float, rating_loser: float, k_factor: float = K_FACTOR
) -> tuple[float, float]:
    """Return the new ``(winner, loser)`` Elo ratings after one comparison.

    The winner scores 1 and the loser 0. Because the two expected scores sum
    to 1 the points gained by the winner equal the points lost by the loser.
    Equal ratings with the default K move each side by exactly 16 points.

    Callers are responsible for passing ``k_factor > 0``.
    """

    expected_winner = expected_score(rating_winner, rating_loser)
    delta = k_factor * (1 - expected_winner)
    return rating_winner + delta, rating_loser - delta
