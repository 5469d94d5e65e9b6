"""Shared data models for the engine driver and puzzle pipeline.

Analysis records are frozen: once an AnalysisResult is produced it is
owned by the caller and never changes. Catalog records (Puzzle,
SolverRating, SolveAttempt, StormRun) round-trip through plain dicts
for the JSON store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any

import chess

# Mate scores are encoded as +/-(MATE_SCORE - plies). Anything beyond
# MATE_THRESHOLD in magnitude is read back as a forced mate.
MATE_SCORE = 30000
MATE_THRESHOLD = 20000

DEFAULT_RATING = 1500.0
DEFAULT_RD = 350.0
DEFAULT_VOLATILITY = 0.06


def mate_moves_to_plies(mate: int) -> int:
    """Convert a UCI ``score mate N`` (moves) into a signed ply count.

    Positive N means the side to move mates in N moves (2N - 1 plies);
    negative N means it gets mated in |N| moves (2|N| plies).
    """
    if mate > 0:
        return 2 * mate - 1
    return -2 * abs(mate)


def mate_plies_to_score(plies: int) -> int:
    """Encode a signed mate ply count as a centipawn-scale evaluation."""
    if plies > 0:
        return MATE_SCORE - plies
    return -(MATE_SCORE - abs(plies))


def score_to_mate_plies(score_cp: int) -> int | None:
    """Derive a signed mate ply count from an encoded evaluation.

    Returns:
        Signed ply count, or None when the score is an ordinary
        centipawn evaluation.
    """
    if abs(score_cp) <= MATE_THRESHOLD:
        return None
    plies = MATE_SCORE - abs(score_cp)
    return plies if score_cp > 0 else -plies


def _from_known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalysisRequest:
    """One analysis call, consumed once by an AnalysisSession."""

    fen: str
    depth: int | None = None
    movetime_ms: int | None = None
    time_bound_ms: int = 30000
    multipv: int = 1


@dataclass(frozen=True)
class AnalysisLine:
    """Best-known state of one ranked line when the search finished."""

    rank: int
    score_cp: int
    depth: int
    pv: tuple[str, ...] = ()
    mate: int | None = None
    nodes: int | None = None
    time_ms: int | None = None

    @property
    def mate_plies(self) -> int | None:
        if self.mate is not None:
            return mate_moves_to_plies(self.mate)
        return score_to_mate_plies(self.score_cp)

    @property
    def first_move(self) -> str | None:
        return self.pv[0] if self.pv else None


@dataclass(frozen=True)
class AnalysisResult:
    """Final, immutable outcome of a single analysis request.

    ``score_cp`` is from the side to move's point of view. ``mate_plies``
    is signed the same way and is None when no forced mate was found.
    """

    fen: str
    best_move: str
    move: chess.Move
    san: str
    score_cp: int
    mate_plies: int | None
    depth: int
    lines: tuple[AnalysisLine, ...] = ()
    nodes: int | None = None
    time_ms: int | None = None
    ponder: str | None = None

    @property
    def is_mate(self) -> bool:
        return self.mate_plies is not None

    def to_dict(self) -> dict:
        return {
            "fen": self.fen,
            "best_move": self.best_move,
            "san": self.san,
            "score_cp": self.score_cp,
            "mate_plies": self.mate_plies,
            "depth": self.depth,
            "nodes": self.nodes,
            "time_ms": self.time_ms,
            "lines": [
                {
                    "rank": line.rank,
                    "score_cp": line.score_cp,
                    "mate_plies": line.mate_plies,
                    "depth": line.depth,
                    "pv": list(line.pv),
                }
                for line in self.lines
            ],
        }


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass
class PuzzleCandidate:
    """Unvalidated position + forced solution surfaced during self-play."""

    fen: str
    solution: list[str]
    solution_san: list[str]
    swing_cp: int
    depth: int
    rating: int
    mate_in: int | None = None
    chess960: bool = False
    origin: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------


@dataclass
class Puzzle:
    """A catalog puzzle. Never deleted; mutated by voting and daily assignment."""

    id: str
    fen: str
    solution: list[str]
    solution_san: list[str] = field(default_factory=list)
    rating: float = DEFAULT_RATING
    rating_deviation: float = DEFAULT_RD
    themes: list[str] = field(default_factory=list)
    # Tags added by solver votes; they leave again when votes drop.
    voted_themes: list[str] = field(default_factory=list)
    primary_theme: str = "tactics"
    day: str | None = None
    plays: int = 0
    votes: int = 0
    source: str = "generated"
    chess960: bool = False
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> Puzzle:
        return cls(**_from_known_fields(cls, data))


@dataclass
class SolverRating:
    """Glicko-2 state for one solver."""

    solver_id: str
    rating: float = DEFAULT_RATING
    rating_deviation: float = DEFAULT_RD
    volatility: float = DEFAULT_VOLATILITY
    games: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SolverRating:
        return cls(**_from_known_fields(cls, data))


@dataclass
class SolveAttempt:
    """Ledger entry for a (solver, puzzle) pair.

    rating_before / rating_after / rating_diff are fixed by the first
    attempt; later attempts only touch won, attempts and last_attempt_at.
    """

    solver_id: str
    puzzle_id: str
    won: bool
    rated: bool
    rating_before: float | None
    rating_after: float | None
    rating_diff: float | None
    first_attempt_at: str
    last_attempt_at: str
    attempts: int = 1

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> SolveAttempt:
        return cls(**_from_known_fields(cls, data))


@dataclass
class StormRun:
    """One finished timed-puzzle run."""

    solver_id: str
    score: int
    moves: int = 0
    accuracy: float = 0.0
    combo: int = 0
    duration_s: int = 0
    created_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> StormRun:
        return cls(**_from_known_fields(cls, data))
