"""Glicko-2 rating updates for puzzle solving.

Each solve attempt is treated as a single game between the solver and
the puzzle. The puzzle plays with a fixed, wide rating deviation so a
solver's rating moves at a steady pace regardless of how often the
puzzle has been played. Deltas are bounded, a solved puzzle never costs
rating and a failed one never earns it.

Reference: Glickman, "Example of the Glicko-2 system" (2013).
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from chess_puzzles.models import (
    DEFAULT_RATING,
    DEFAULT_RD,
    DEFAULT_VOLATILITY,
    SolverRating,
)

_SCALE = 173.7178
_TAU = 0.5
_EPSILON = 1e-6

PUZZLE_RD = 350.0
MAX_DELTA = 100.0
MIN_RD = 45.0


@dataclass(frozen=True)
class Glicko2Rating:
    rating: float = DEFAULT_RATING
    rd: float = DEFAULT_RD
    volatility: float = DEFAULT_VOLATILITY


def _g(phi: float) -> float:
    return 1.0 / math.sqrt(1.0 + 3.0 * phi * phi / (math.pi * math.pi))


def _expected(mu: float, mu_j: float, phi_j: float) -> float:
    return 1.0 / (1.0 + math.exp(-_g(phi_j) * (mu - mu_j)))


def expected_score(player: Glicko2Rating, opponent: Glicko2Rating) -> float:
    """Probability that ``player`` beats ``opponent``."""
    mu = (player.rating - DEFAULT_RATING) / _SCALE
    mu_j = (opponent.rating - DEFAULT_RATING) / _SCALE
    return _expected(mu, mu_j, opponent.rd / _SCALE)


def _new_volatility(sigma: float, phi: float, v: float, delta: float, tau: float) -> float:
    """Solve for the new volatility with the Illinois algorithm."""
    a = math.log(sigma * sigma)

    def f(x: float) -> float:
        ex = math.exp(x)
        num = ex * (delta * delta - phi * phi - v - ex)
        den = 2.0 * (phi * phi + v + ex) ** 2
        return num / den - (x - a) / (tau * tau)

    big_a = a
    if delta * delta > phi * phi + v:
        big_b = math.log(delta * delta - phi * phi - v)
    else:
        k = 1
        while f(a - k * tau) < 0:
            k += 1
        big_b = a - k * tau

    f_a, f_b = f(big_a), f(big_b)
    while abs(big_b - big_a) > _EPSILON:
        big_c = big_a + (big_a - big_b) * f_a / (f_b - f_a)
        f_c = f(big_c)
        if f_c * f_b <= 0:
            big_a, f_a = big_b, f_b
        else:
            f_a /= 2.0
        big_b, f_b = big_c, f_c
    return math.exp(big_a / 2.0)


def update_glicko2(
    player: Glicko2Rating,
    opponent: Glicko2Rating,
    score: float,
    tau: float = _TAU,
) -> Glicko2Rating:
    """Apply one rating period containing a single game.

    Args:
        player: Rating being updated.
        opponent: The other side of the game.
        score: 1.0 win, 0.5 draw, 0.0 loss.
        tau: System constant limiting volatility change.

    Returns:
        The player's new Glicko2Rating.
    """
    mu = (player.rating - DEFAULT_RATING) / _SCALE
    phi = player.rd / _SCALE
    mu_j = (opponent.rating - DEFAULT_RATING) / _SCALE
    phi_j = opponent.rd / _SCALE

    g = _g(phi_j)
    e = _expected(mu, mu_j, phi_j)
    v = 1.0 / (g * g * e * (1.0 - e))
    delta = v * g * (score - e)

    sigma = _new_volatility(player.volatility, phi, v, delta, tau)
    phi_star = math.sqrt(phi * phi + sigma * sigma)
    new_phi = 1.0 / math.sqrt(1.0 / (phi_star * phi_star) + 1.0 / v)
    new_mu = mu + new_phi * new_phi * g * (score - e)

    return Glicko2Rating(
        rating=_SCALE * new_mu + DEFAULT_RATING,
        rd=max(MIN_RD, _SCALE * new_phi),
        volatility=sigma,
    )


def rate_attempt(
    solver: SolverRating,
    puzzle_rating: float,
    won: bool,
    puzzle_rd: float = PUZZLE_RD,
    max_delta: float = MAX_DELTA,
) -> tuple[SolverRating, float]:
    """Rate a solver's first attempt at a puzzle.

    Args:
        solver: Current solver rating.
        puzzle_rating: The puzzle's difficulty rating.
        won: Whether the puzzle was solved.
        puzzle_rd: Deviation assumed for the puzzle.
        max_delta: Absolute cap on the rating change.

    Returns:
        (updated SolverRating, rating diff). The rating is rounded to a
        whole number and diff is exactly after - before.
    """
    before = solver.rating
    updated = update_glicko2(
        Glicko2Rating(solver.rating, solver.rating_deviation, solver.volatility),
        Glicko2Rating(puzzle_rating, puzzle_rd, DEFAULT_VOLATILITY),
        1.0 if won else 0.0,
    )
    diff = max(-max_delta, min(max_delta, updated.rating - before))

    if won and diff < 1:
        # Easier puzzle: small fixed gain, growing with the rating gap.
        gap = before - puzzle_rating
        diff = min(5, max(1, int(gap // 100))) if gap > 0 else 1
    elif not won and diff > 0:
        diff = 0

    after = round(before + diff)
    new_rating = SolverRating(
        solver_id=solver.solver_id,
        rating=after,
        rating_deviation=round(updated.rd, 2),
        volatility=round(updated.volatility, 6),
        games=solver.games + 1,
    )
    return new_rating, after - before
