"""MCP server for the chess puzzle pipeline.

Exposes engine analysis and puzzle scheduling tools via FastMCP.
One engine session is opened lazily and reused across analysis calls;
the catalog is the JSON file named by CHESS_PUZZLES_CATALOG.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

# Add project root to path for imports
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_PROJECT_ROOT))

import chess  # noqa: E402
from mcp.server.fastmcp import FastMCP  # noqa: E402

from chess_puzzles.catalog import PuzzleCatalog  # noqa: E402
from chess_puzzles.config import configure_logging, load_settings  # noqa: E402
from chess_puzzles.errors import EngineError, InvalidMove, PuzzleNotFound  # noqa: E402
from chess_puzzles.models import Puzzle  # noqa: E402
from chess_puzzles.scheduler import (  # noqa: E402
    STORM_DEFAULT_COUNT,
    STORM_LEADERBOARD_SIZE,
    PuzzleScheduler,
)
from chess_puzzles.session import AnalysisSession  # noqa: E402

mcp = FastMCP("chess-puzzles")

_settings = load_settings()
_scheduler: PuzzleScheduler | None = None
_session: AnalysisSession | None = None
_session_lock = asyncio.Lock()


def _get_scheduler() -> PuzzleScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = PuzzleScheduler(PuzzleCatalog(_settings.catalog_path))
    return _scheduler


async def _get_session() -> AnalysisSession:
    """Return the shared session, replacing it if the engine has died.

    Concurrent callers wait on one lock so only a single engine is ever
    spawned and owned at a time.
    """
    global _session
    async with _session_lock:
        if _session is not None and not _session.is_ready():
            await _session.shutdown()
            _session = None
        if _session is None:
            _session = await AnalysisSession.open(
                _settings.stockfish_path, init_timeout=_settings.init_timeout
            )
        return _session


def _puzzle_view(puzzle: Puzzle) -> dict:
    """Puzzle as shown to a solver: the solution stays hidden."""
    board = chess.Board(puzzle.fen, chess960=puzzle.chess960)
    return {
        "id": puzzle.id,
        "fen": puzzle.fen,
        "side_to_move": "white" if board.turn == chess.WHITE else "black",
        "rating": round(puzzle.rating),
        "themes": puzzle.themes,
        "primary_theme": puzzle.primary_theme,
        "plays": puzzle.plays,
        "solution_length": len(puzzle.solution),
        "chess960": puzzle.chess960,
    }


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_position(
    fen: str,
    depth: int = 15,
    multipv: int = 3,
) -> dict:
    """Analyze any chess position at full strength.

    Args:
        fen: FEN string of the position to analyze.
        depth: Analysis depth (default 15).
        multipv: Number of principal variations (default 3).

    Returns:
        Dict with best_move, san, score_cp, mate_plies, depth and ranked
        lines (each with rank, score_cp, mate_plies, depth, pv).
    """
    try:
        board = chess.Board(fen)
        if not board.is_valid():
            return {"error": f"Invalid FEN position: {fen}"}
    except ValueError as exc:
        return {"error": f"Invalid FEN: {exc}"}

    try:
        session = await _get_session()
        result = await session.analyze(fen, depth=depth, multipv=multipv)
    except (EngineError, InvalidMove, FileNotFoundError) as exc:
        return {"error": str(exc)}
    return result.to_dict()


# ---------------------------------------------------------------------------
# Puzzles
# ---------------------------------------------------------------------------


@mcp.tool()
def next_puzzle(solver_id: str) -> dict:
    """Closest unattempted puzzle to the solver's rating.

    Args:
        solver_id: Solver identifier.

    Returns:
        Puzzle dict without its solution, or an error when nothing fits.
    """
    puzzle = _get_scheduler().next_puzzle(solver_id)
    if puzzle is None:
        return {"error": "No unattempted puzzle near this rating"}
    return _puzzle_view(puzzle)


@mcp.tool()
def puzzle_by_theme(solver_id: str, theme: str, difficulty: int = 0) -> dict:
    """Unattempted puzzle with a theme, within 100 of the solver's rating.

    Args:
        solver_id: Solver identifier.
        theme: Theme tag, e.g. ``fork`` or ``mateIn2``.
        difficulty: Offset added to the solver's rating.

    Returns:
        Puzzle dict without its solution, or an error when nothing fits.
    """
    puzzle = _get_scheduler().puzzle_by_theme(solver_id, theme, difficulty)
    if puzzle is None:
        return {"error": f"No puzzle with theme {theme!r} near this rating"}
    return _puzzle_view(puzzle)


@mcp.tool()
def solve_puzzle(solver_id: str, puzzle_id: str, moves: list[str]) -> dict:
    """Check a solver's moves against the puzzle solution and rate the attempt.

    Only the solver's moves (every other ply of the solution) are compared.
    The first attempt at a puzzle moves the rating; later ones do not.

    Args:
        solver_id: Solver identifier.
        puzzle_id: Puzzle id.
        moves: Solver moves in UCI notation.

    Returns:
        Dict with won, solution (SAN), rating_before, rating_after,
        rating_diff and attempts.
    """
    scheduler = _get_scheduler()
    try:
        puzzle = scheduler.catalog.get_puzzle(puzzle_id)
    except PuzzleNotFound as exc:
        return {"error": str(exc)}

    expected = puzzle.solution[::2]
    won = [m.strip().lower() for m in moves] == expected
    attempt = scheduler.record_attempt(solver_id, puzzle_id, won)
    return {
        "puzzle_id": puzzle_id,
        "won": won,
        "solution": puzzle.solution_san,
        "rating_before": attempt.rating_before,
        "rating_after": attempt.rating_after,
        "rating_diff": attempt.rating_diff,
        "attempts": attempt.attempts,
    }


@mcp.tool()
def daily_puzzle() -> dict:
    """Today's puzzle (UTC), assigning one on first request of the day."""
    puzzle = _get_scheduler().daily_puzzle()
    if puzzle is None:
        return {"error": "No puzzles in the daily rating band"}
    return {**_puzzle_view(puzzle), "day": puzzle.day}


@mcp.tool()
def storm_puzzles(count: int = STORM_DEFAULT_COUNT) -> dict:
    """A shuffled batch of puzzles for a timed run.

    Solutions are included since storm runs are checked client-side.
    """
    puzzles = _get_scheduler().storm_puzzles(count)
    return {
        "count": len(puzzles),
        "puzzles": [
            {**_puzzle_view(p), "solution": p.solution} for p in puzzles
        ],
    }


@mcp.tool()
def record_storm_run(
    solver_id: str,
    score: int,
    moves: int = 0,
    accuracy: float = 0.0,
    combo: int = 0,
    duration_s: int = 0,
) -> dict:
    """Store a finished storm run and report high scores."""
    return _get_scheduler().record_storm_run(
        solver_id, score, moves, accuracy, combo, duration_s
    )


@mcp.tool()
def storm_leaderboard(limit: int = STORM_LEADERBOARD_SIZE) -> dict:
    """Highest-scoring storm runs across all solvers."""
    return {"leaderboard": _get_scheduler().storm_leaderboard(limit)}


@mcp.tool()
def vote_theme(solver_id: str, puzzle_id: str, theme: str) -> dict:
    """Toggle a vote for a theme on a puzzle.

    Args:
        solver_id: Voter.
        puzzle_id: Puzzle id.
        theme: Theme tag, e.g. ``fork`` or ``backRankMate``.

    Returns:
        Dict with voted, votes for the theme and the puzzle's themes.
    """
    scheduler = _get_scheduler()
    try:
        voted, count = scheduler.vote_theme(solver_id, puzzle_id, theme)
    except (PuzzleNotFound, ValueError) as exc:
        return {"error": str(exc)}
    puzzle = scheduler.catalog.get_puzzle(puzzle_id)
    return {
        "puzzle_id": puzzle_id,
        "theme": theme,
        "voted": voted,
        "votes": count,
        "themes": puzzle.themes,
    }


@mcp.tool()
def solver_rating(solver_id: str) -> dict:
    """Current Glicko-2 rating for a solver."""
    rating = _get_scheduler().rating(solver_id)
    return {
        "solver_id": solver_id,
        "rating": round(rating.rating),
        "rating_deviation": rating.rating_deviation,
        "games": rating.games,
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    configure_logging(_settings)
    mcp.run()
