"""Puzzle scheduling and solver rating bookkeeping.

PuzzleScheduler sits on top of a PuzzleCatalog and implements:
- the first-attempt rating rule (only the first attempt at a puzzle
  moves the solver's rating; re-attempts are logged, never re-rated)
- adaptive "next puzzle" selection around the solver's rating, optionally
  restricted to one theme
- the daily puzzle (one per UTC day, never reused)
- storm batches from a wide rating band
- theme voting, storm run high scores and the storm leaderboard

"No puzzle available" is a normal outcome and is returned as None.

CLI interface outputs JSON to stdout for tool-server integration.
"""

from __future__ import annotations

import argparse
import json
import logging
import random
import sys
import time
from datetime import date, datetime, timezone
from typing import Callable

from chess_puzzles.catalog import PuzzleCatalog
from chess_puzzles.config import load_settings
from chess_puzzles.errors import PuzzleNotFound
from chess_puzzles.models import Puzzle, SolveAttempt, SolverRating, StormRun
from chess_puzzles.rating import rate_attempt
from chess_puzzles.themes import PRIORITY_ORDER, primary_theme

logger = logging.getLogger(__name__)

NEXT_PUZZLE_OFFSET = 50
NEXT_PUZZLE_TOLERANCE = 100
THEME_PUZZLE_TOLERANCE = 100

DAILY_MIN_RATING = 1500
DAILY_MAX_RATING = 2500
DAILY_CANDIDATES = 50
DAILY_TOP = 10
DAILY_CACHE_SECONDS = 3600

STORM_MIN_RATING = 1200
STORM_MAX_RATING = 2500
STORM_DEFAULT_COUNT = 10
STORM_LEADERBOARD_SIZE = 10

THEME_VOTE_THRESHOLD = 2
VOTABLE_THEMES = frozenset(PRIORITY_ORDER)


def daily_score(puzzle: Puzzle) -> float:
    """Weighted popularity score used to rank daily candidates."""
    return puzzle.rating / 100 + puzzle.plays * 0.1 + puzzle.votes * 5


class PuzzleScheduler:
    """Rating updates and puzzle selection over a catalog."""

    def __init__(
        self,
        catalog: PuzzleCatalog,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Create a scheduler.

        Args:
            catalog: Backing store.
            rng: Random source for daily and storm picks.
            clock: Returns the current UTC datetime.
        """
        self.catalog = catalog
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._daily_cache: dict[str, tuple[float, str]] = {}

    # ------------------------------------------------------------------
    # Ratings
    # ------------------------------------------------------------------

    def rating(self, solver_id: str) -> SolverRating:
        return self.catalog.get_rating(solver_id)

    def record_attempt(
        self,
        solver_id: str,
        puzzle_id: str,
        won: bool,
        rated: bool = True,
    ) -> SolveAttempt:
        """Record a solve attempt, rating it only if it is the first.

        Args:
            solver_id: Who attempted the puzzle.
            puzzle_id: Which puzzle.
            won: Whether it was solved.
            rated: Unrated first attempts still count as the first
                attempt; they just carry no rating change.

        Returns:
            The stored SolveAttempt for the (solver, puzzle) pair.

        Raises:
            PuzzleNotFound: If the puzzle does not exist.
        """
        puzzle = self.catalog.get_puzzle(puzzle_id)
        now = self._clock().isoformat()

        existing = self.catalog.get_attempt(solver_id, puzzle_id)
        if existing is not None:
            existing.won = won
            existing.attempts += 1
            existing.last_attempt_at = now
            self.catalog.save_attempt(existing)
            logger.debug(
                "Re-attempt %d by %s on %s; rating untouched",
                existing.attempts, solver_id, puzzle_id,
            )
            return existing

        before = after = diff = None
        if rated:
            current = self.catalog.get_rating(solver_id)
            updated, diff = rate_attempt(current, puzzle.rating, won)
            before, after = current.rating, updated.rating
            self.catalog.save_rating(updated)

        attempt = SolveAttempt(
            solver_id=solver_id,
            puzzle_id=puzzle_id,
            won=won,
            rated=rated,
            rating_before=before,
            rating_after=after,
            rating_diff=diff,
            first_attempt_at=now,
            last_attempt_at=now,
        )
        self.catalog.save_attempt(attempt)

        puzzle.plays += 1
        self.catalog.update_puzzle(puzzle)
        return attempt

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def next_puzzle(
        self,
        solver_id: str,
        offset: int = NEXT_PUZZLE_OFFSET,
        tolerance: int = NEXT_PUZZLE_TOLERANCE,
    ) -> Puzzle | None:
        """Closest unattempted puzzle to the solver's rating plus offset.

        Returns:
            The puzzle, or None when nothing unattempted lies within
            tolerance of the target.
        """
        target = self.catalog.get_rating(solver_id).rating + offset
        attempted = self.catalog.attempted_puzzle_ids(solver_id)
        candidates = [
            p
            for p in self.catalog.puzzles()
            if p.id not in attempted and abs(p.rating - target) <= tolerance
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda p: (abs(p.rating - target), p.id))

    def puzzle_by_theme(
        self,
        solver_id: str,
        theme: str,
        difficulty: int = 0,
        tolerance: int = THEME_PUZZLE_TOLERANCE,
    ) -> Puzzle | None:
        """A random unattempted puzzle carrying ``theme`` near the solver's level.

        Args:
            solver_id: Solver whose rating sets the target.
            theme: Tag the puzzle must carry.
            difficulty: Added to the solver's rating, e.g. -200 or +300.
            tolerance: Maximum distance from the target rating.

        Returns:
            The puzzle, or None when no puzzle with that theme fits.
        """
        target = round(self.catalog.get_rating(solver_id).rating) + difficulty
        attempted = self.catalog.attempted_puzzle_ids(solver_id)
        candidates = sorted(
            (
                p
                for p in self.catalog.puzzles()
                if theme in p.themes
                and p.id not in attempted
                and abs(p.rating - target) <= tolerance
            ),
            key=lambda p: p.id,
        )
        if not candidates:
            logger.info("No %s puzzle within %d of %d", theme, tolerance, target)
            return None
        return self._rng.choice(candidates)

    def daily_puzzle(self, day: date | None = None) -> Puzzle | None:
        """The puzzle assigned to a UTC day, assigning one if needed.

        Candidates were never assigned a day and sit in the daily rating
        band. The most popular ones are scored and one of the top few is
        picked at random. With no fresh candidate left, the most played
        puzzle in the band is served again without reassignment.
        """
        key = (day or self._clock().date()).isoformat()

        cached = self._daily_cache.get(key)
        if cached is not None and cached[0] > time.monotonic():
            try:
                return self.catalog.get_puzzle(cached[1])
            except PuzzleNotFound:
                del self._daily_cache[key]

        puzzles = self.catalog.puzzles()
        chosen = next((p for p in puzzles if p.day == key), None)

        if chosen is None:
            in_band = [
                p for p in puzzles if DAILY_MIN_RATING <= p.rating <= DAILY_MAX_RATING
            ]
            fresh = sorted(
                (p for p in in_band if p.day is None),
                key=lambda p: (-p.plays, -p.rating),
            )[:DAILY_CANDIDATES]
            if fresh:
                top = sorted(fresh, key=daily_score, reverse=True)[:DAILY_TOP]
                chosen = self._rng.choice(top)
                chosen.day = key
                self.catalog.update_puzzle(chosen)
                logger.info("Assigned puzzle %s to %s", chosen.id, key)
            elif in_band:
                chosen = max(in_band, key=lambda p: (p.plays, p.rating))
                logger.warning("No fresh daily candidates; reusing %s", chosen.id)
            else:
                return None

        self._daily_cache[key] = (time.monotonic() + DAILY_CACHE_SECONDS, chosen.id)
        return chosen

    def storm_puzzles(self, count: int = STORM_DEFAULT_COUNT) -> list[Puzzle]:
        """A shuffled batch from the storm band, regardless of solver rating."""
        pool = [
            p
            for p in self.catalog.puzzles()
            if STORM_MIN_RATING <= p.rating <= STORM_MAX_RATING
        ]
        pool.sort(key=lambda p: -p.plays)
        pool = pool[: count * 2]
        self._rng.shuffle(pool)
        return pool[:count]

    # ------------------------------------------------------------------
    # Votes and storm runs
    # ------------------------------------------------------------------

    def vote_theme(self, solver_id: str, puzzle_id: str, theme: str) -> tuple[bool, int]:
        """Toggle a solver's vote for a theme on a puzzle.

        Themes reaching THEME_VOTE_THRESHOLD votes join the puzzle's tags
        and leave again once withdrawn votes take them below it. Tags the
        puzzle already carried are never removed by voting.

        Returns:
            (voted, vote count for that theme) after the toggle.

        Raises:
            ValueError: If the theme is not a known tag.
            PuzzleNotFound: If the puzzle does not exist.
        """
        if theme not in VOTABLE_THEMES:
            raise ValueError(f"Unknown theme: {theme}")

        puzzle = self.catalog.get_puzzle(puzzle_id)
        votes = self.catalog.theme_votes(puzzle_id)
        voters = votes.setdefault(theme, [])
        if solver_id in voters:
            voters.remove(solver_id)
            puzzle.votes = max(0, puzzle.votes - 1)
            voted = False
        else:
            voters.append(solver_id)
            puzzle.votes += 1
            voted = True
        self.catalog.save_theme_votes(puzzle_id, votes)

        confirmed = {t for t, s in votes.items() if len(s) >= THEME_VOTE_THRESHOLD}
        for tag in list(puzzle.voted_themes):
            if tag not in confirmed:
                puzzle.voted_themes.remove(tag)
                if tag in puzzle.themes:
                    puzzle.themes.remove(tag)
        for tag in sorted(confirmed):
            if tag not in puzzle.themes:
                puzzle.themes.append(tag)
                puzzle.voted_themes.append(tag)
        puzzle.primary_theme = primary_theme(puzzle.themes)
        self.catalog.update_puzzle(puzzle)
        return voted, len(voters)

    def record_storm_run(
        self,
        solver_id: str,
        score: int,
        moves: int = 0,
        accuracy: float = 0.0,
        combo: int = 0,
        duration_s: int = 0,
    ) -> dict:
        """Store a storm run and report the solver's high scores.

        Returns:
            Dict with the run, all-time and today's high score, and
            whether this run set a new all-time high.
        """
        now = self._clock()
        previous = self.catalog.storm_runs(solver_id)
        best_before = max((r.score for r in previous), default=None)

        run = StormRun(
            solver_id=solver_id,
            score=score,
            moves=moves,
            accuracy=accuracy,
            combo=combo,
            duration_s=duration_s,
            created_at=now.isoformat(),
        )
        self.catalog.add_storm_run(run)

        today = now.date().isoformat()
        today_scores = [
            r.score for r in previous if r.created_at[:10] == today
        ] + [score]
        return {
            "run": run.to_dict(),
            "high_score": max(score, best_before or 0),
            "today_high": max(today_scores),
            "new_high": best_before is None or score > best_before,
        }

    def storm_leaderboard(self, limit: int = STORM_LEADERBOARD_SIZE) -> list[dict]:
        """Best storm runs across all solvers, highest score first.

        Each run is its own entry, so one solver can hold several ranks.
        Equal scores keep the earlier run ahead.
        """
        runs = sorted(
            self.catalog.storm_runs(), key=lambda r: (-r.score, r.created_at)
        )
        return [
            {
                "rank": rank,
                "solver_id": run.solver_id,
                "score": run.score,
                "created_at": run.created_at,
            }
            for rank, run in enumerate(runs[:limit], 1)
        ]


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def main() -> None:
    """CLI entry point for scheduler.py."""
    parser = argparse.ArgumentParser(
        description="Puzzle scheduler - rated solving, daily and storm puzzles"
    )
    parser.add_argument("--catalog", type=str, default=None,
                        help="Catalog JSON path (default: CHESS_PUZZLES_CATALOG)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    next_parser = subparsers.add_parser("next", help="Next puzzle for a solver")
    next_parser.add_argument("solver", type=str)
    next_parser.add_argument("--offset", type=int, default=NEXT_PUZZLE_OFFSET)

    solve_parser = subparsers.add_parser("solve", help="Record a solve attempt")
    solve_parser.add_argument("solver", type=str)
    solve_parser.add_argument("puzzle_id", type=str)
    solve_parser.add_argument("--failed", action="store_true",
                              help="Record a failed attempt")
    solve_parser.add_argument("--unrated", action="store_true")

    theme_parser = subparsers.add_parser("theme", help="Puzzle with a given theme")
    theme_parser.add_argument("solver", type=str)
    theme_parser.add_argument("theme", type=str)
    theme_parser.add_argument("--difficulty", type=int, default=0,
                              help="Offset from the solver's rating")

    daily_parser = subparsers.add_parser("daily", help="Daily puzzle")
    daily_parser.add_argument("--day", type=str, default=None, help="YYYY-MM-DD")

    storm_parser = subparsers.add_parser("storm", help="Storm puzzle batch")
    storm_parser.add_argument("--count", type=int, default=STORM_DEFAULT_COUNT)

    board_parser = subparsers.add_parser("leaderboard", help="Best storm runs")
    board_parser.add_argument("--limit", type=int, default=STORM_LEADERBOARD_SIZE)

    vote_parser = subparsers.add_parser("vote", help="Toggle a theme vote")
    vote_parser.add_argument("solver", type=str)
    vote_parser.add_argument("puzzle_id", type=str)
    vote_parser.add_argument("theme", type=str)

    rating_parser = subparsers.add_parser("rating", help="Show a solver's rating")
    rating_parser.add_argument("solver", type=str)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = load_settings()
    scheduler = PuzzleScheduler(PuzzleCatalog(args.catalog or settings.catalog_path))

    try:
        if args.command == "next":
            puzzle = scheduler.next_puzzle(args.solver, offset=args.offset)
            _print({"puzzle": puzzle.to_dict() if puzzle else None})
        elif args.command == "solve":
            attempt = scheduler.record_attempt(
                args.solver, args.puzzle_id, won=not args.failed, rated=not args.unrated
            )
            _print(attempt.to_dict())
        elif args.command == "theme":
            puzzle = scheduler.puzzle_by_theme(
                args.solver, args.theme, difficulty=args.difficulty
            )
            _print({"puzzle": puzzle.to_dict() if puzzle else None})
        elif args.command == "daily":
            day = date.fromisoformat(args.day) if args.day else None
            puzzle = scheduler.daily_puzzle(day)
            _print({"puzzle": puzzle.to_dict() if puzzle else None})
        elif args.command == "storm":
            _print({"puzzles": [p.to_dict() for p in scheduler.storm_puzzles(args.count)]})
        elif args.command == "leaderboard":
            _print({"leaderboard": scheduler.storm_leaderboard(args.limit)})
        elif args.command == "vote":
            voted, count = scheduler.vote_theme(args.solver, args.puzzle_id, args.theme)
            _print({"voted": voted, "votes": count})
        elif args.command == "rating":
            _print(scheduler.rating(args.solver).to_dict())
    except (PuzzleNotFound, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
