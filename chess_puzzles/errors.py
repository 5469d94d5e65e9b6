"""Exception hierarchy for the engine driver and puzzle pipeline.

Engine failures share the EngineError base so callers can tear down or
replace the offending process. Pipeline errors (InvalidMove,
ValidationRejected, GenerationAborted) are recovered locally by the
generator; PuzzleNotFound surfaces to scheduler callers.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chess_puzzles.engine import EngineProcess


class ChessPuzzlesError(Exception):
    """Base class for all catchable errors raised by this package."""


# ---------------------------------------------------------------------------
# Engine errors
# ---------------------------------------------------------------------------


class EngineError(ChessPuzzlesError):
    """Base class for errors tied to one engine subprocess.

    Attributes:
        engine: The EngineProcess that failed, when known.
    """

    def __init__(self, message: str, engine: EngineProcess | None = None) -> None:
        super().__init__(message)
        self.engine = engine


class StartupError(EngineError):
    """The engine executable could not be launched."""


class InitializationTimeout(EngineError):
    """The handshake or readiness acknowledgement did not arrive in time."""


class ProcessCrash(EngineError):
    """The engine exited or its streams broke; the process is unusable."""


class AnalysisTimeout(EngineError):
    """No best-move line arrived within the caller's wall-clock bound."""


class NoLegalMove(EngineError):
    """The engine answered a search with the no-move sentinel."""


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


class InvalidMove(ChessPuzzlesError, ValueError):
    """A move token is malformed or illegal in the given position."""

    def __init__(self, token: str, fen: str, detail: str = "") -> None:
        message = f"Invalid move {token!r} in position {fen}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.token = token
        self.fen = fen


class ValidationRejected(ChessPuzzlesError):
    """A candidate position failed a realism rule.

    Attributes:
        reason: Machine-readable rejection code (e.g. "king_exposed").
    """

    def __init__(self, reason: str, fen: str = "") -> None:
        super().__init__(f"Position rejected: {reason}")
        self.reason = reason
        self.fen = fen


class GenerationAborted(ChessPuzzlesError):
    """The current self-play sequence could not continue."""

    def __init__(self, reason: str, ply: int | None = None) -> None:
        message = reason if ply is None else f"{reason} (ply {ply})"
        super().__init__(message)
        self.reason = reason
        self.ply = ply


class PuzzleNotFound(ChessPuzzlesError, KeyError):
    """No puzzle with the given id exists in the catalog."""

    def __init__(self, puzzle_id: str) -> None:
        super().__init__(puzzle_id)
        self.puzzle_id = puzzle_id

    def __str__(self) -> str:
        return f"Puzzle not found: {self.puzzle_id}"
