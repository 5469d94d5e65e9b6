#!/usr/bin/env python3
"""Engine self-play puzzle generation.

Plays positions forward with one engine (alternating strengths per
side) or two engines (strong vs weak), watching the evaluation from
White's point of view. When it swings sharply in favour of the side to
move, or a forced mate appears, that position becomes a candidate and a
deeper search builds the forced solution. Candidates then pass the
realism validator and theme tagger before entering the catalog.

Usage:
    python -m chess_puzzles.generator --count 10 --rating 1600
    python -m chess_puzzles.generator --count 5 --rating 2000 --chess960 --seed 42
    python -m chess_puzzles.generator --count 5 --two-engines
    python -m chess_puzzles.generator --count 34 --spread
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import math
import random
import sys
from dataclasses import dataclass
from typing import Sequence

import chess

from chess_puzzles.catalog import PuzzleCatalog, normalize_fen
from chess_puzzles.config import configure_logging, load_settings
from chess_puzzles.errors import (
    AnalysisTimeout,
    ChessPuzzlesError,
    GenerationAborted,
    InvalidMove,
    NoLegalMove,
    ValidationRejected,
)
from chess_puzzles.models import AnalysisResult, Puzzle, PuzzleCandidate
from chess_puzzles.moves import MoveTranslator
from chess_puzzles.session import SKILL_MAX, AnalysisSession
from chess_puzzles.themes import tag_solution
from chess_puzzles.validator import ensure_valid, validate_position

logger = logging.getLogger(__name__)

# Evaluations are clamped before measuring swings so mate scores do not
# dwarf everything else.
EVAL_CAP = 2000
MATE_SWING = 1500

# Default spread for multi-rating batches: 1200 to 2000 in steps of 50.
DEFAULT_TARGET_RATINGS = tuple(range(1200, 2001, 50))


def _log(msg: str) -> None:
    """Print with flush for progress visibility."""
    print(msg, flush=True)


@dataclass(frozen=True)
class GeneratorSettings:
    """Generation policy. Ply counts are half-moves."""

    min_plies: int = 20
    max_plies: int = 40
    move_depth: int = 5
    move_time_bound_ms: int = 3000
    candidate_lines: int = 3
    move_weights: tuple[float, ...] = (0.7, 0.2, 0.1)
    swing_threshold: int = 300
    min_advantage: int = 150
    solution_depth: int = 12
    solution_time_bound_ms: int = 10000
    forced_gap: int = 50
    max_solution_plies: int = 6
    max_candidates_per_sequence: int = 2
    validate_from_ply: int = 10
    validate_every: int = 5
    attempts_per_puzzle: int = 5
    min_rating: int = 1200
    max_rating: int = 2500


DEFAULT_SETTINGS = GeneratorSettings()


def rating_to_skill_level(rating: int) -> int:
    """Map a target puzzle rating to an engine Skill Level (0-20)."""
    return max(0, min(20, round((rating - 1200) / 50 + 8)))


def difficulty_rating(
    depth: int,
    swing_cp: int,
    solver_moves: int,
    settings: GeneratorSettings = DEFAULT_SETTINGS,
) -> int:
    """Deterministic difficulty estimate for a candidate.

    Deeper searches and bigger swings both raise the rating, as does
    each extra move the solver has to find.
    """
    rating = (
        1000
        + 40 * depth
        + min(swing_cp, MATE_SWING) // 5
        + 100 * max(0, solver_moves - 1)
    )
    return max(settings.min_rating, min(settings.max_rating, rating))


def random_start_position(rng: random.Random, chess960: bool = False) -> str:
    """Standard start, or a random Chess960 start position."""
    if not chess960:
        return chess.STARTING_FEN
    return chess.Board.from_chess960_pos(rng.randrange(960)).fen()


def _white_eval(board: chess.Board, result: AnalysisResult) -> int:
    score = max(-EVAL_CAP, min(EVAL_CAP, result.score_cp))
    return score if board.turn == chess.WHITE else -score


class PuzzleCandidateGenerator:
    """Drives one or two AnalysisSessions through self-play games."""

    def __init__(
        self,
        strong: AnalysisSession,
        weak: AnalysisSession | None = None,
        settings: GeneratorSettings = DEFAULT_SETTINGS,
        rng: random.Random | None = None,
        chess960: bool = False,
    ) -> None:
        """Set up a generator.

        Args:
            strong: Session playing White and searching solutions.
            weak: Optional second session playing Black. Without it the
                strong session plays both sides, switching Skill Level.
            settings: Generation policy.
            rng: Random source for move choice and start positions.
            chess960: Start from random Chess960 positions.
        """
        self.strong = strong
        self.weak = weak
        self.settings = settings
        self.chess960 = chess960
        self.translator = MoveTranslator(chess960=chess960)
        self._rng = rng or random.Random()
        self._levels = {chess.WHITE: SKILL_MAX, chess.BLACK: SKILL_MAX}
        self._seen: set[str] = set()

    @property
    def sessions(self) -> list[AnalysisSession]:
        return [s for s in (self.strong, self.weak) if s is not None]

    def _session_for(self, color: chess.Color) -> AnalysisSession:
        if color == chess.BLACK and self.weak is not None:
            return self.weak
        return self.strong

    async def configure(self, target_rating: int) -> None:
        """Pick playing strengths for a target rating; weak side two levels lower."""
        level = rating_to_skill_level(target_rating)
        self._levels = {chess.WHITE: level, chess.BLACK: max(0, level - 2)}
        if self.chess960:
            for session in self.sessions:
                await session.set_chess960(True)
        logger.info(
            "Generating for %d: white skill %d, black skill %d",
            target_rating, self._levels[chess.WHITE], self._levels[chess.BLACK],
        )

    # ------------------------------------------------------------------
    # Self-play
    # ------------------------------------------------------------------

    def _choose_move(self, result: AnalysisResult) -> str:
        """Weighted pick for game variety, led by the engine's own bestmove.

        Below full strength ``bestmove`` is the Skill Level's weakened
        choice and often differs from the rank-1 line, so it gets the
        largest weight and the other lines fill the remaining slots.
        """
        tokens = [result.best_move]
        for line in result.lines:
            move = line.first_move
            if move and move not in tokens:
                tokens.append(move)
        if len(tokens) < 2:
            return result.best_move
        weights = list(self.settings.move_weights[: len(tokens)])
        return self._rng.choices(tokens[: len(weights)], weights=weights, k=1)[0]

    async def play_sequence(
        self, start_fen: str, target_rating: int
    ) -> list[PuzzleCandidate]:
        """Play one game forward and collect candidates along the way.

        Args:
            start_fen: Starting position.
            target_rating: Audience rating for early realism checks.

        Returns:
            Zero or more candidates, in the order they were found.

        Raises:
            GenerationAborted: An analysis timed out, the engine had no
                move, or a move could not be applied.
            ProcessCrash: An engine died; the batch cannot continue.
        """
        cfg = self.settings
        board = self.translator.board(start_fen)
        candidates: list[PuzzleCandidate] = []
        prev_white_eval: int | None = None

        for ply in range(cfg.max_plies):
            if board.is_game_over(claim_draw=False):
                break
            if ply >= cfg.validate_from_ply and ply % cfg.validate_every == 0:
                check = validate_position(board, target_rating)
                if not check.accepted:
                    logger.debug("Sequence left realistic play at ply %d: %s", ply, check.reason)
                    break

            fen = board.fen()
            session = self._session_for(board.turn)
            await session.set_strength(self._levels[board.turn])
            try:
                result = await session.analyze(
                    fen,
                    depth=cfg.move_depth,
                    time_bound_ms=cfg.move_time_bound_ms,
                    multipv=cfg.candidate_lines,
                )
            except (AnalysisTimeout, NoLegalMove, InvalidMove) as exc:
                raise GenerationAborted(f"analysis failed: {exc}", ply=ply) from exc

            white_eval = _white_eval(board, result)
            if (
                ply >= cfg.min_plies
                and prev_white_eval is not None
                and len(candidates) < cfg.max_candidates_per_sequence
            ):
                gain = white_eval - prev_white_eval
                if board.turn == chess.BLACK:
                    gain = -gain
                mating = result.mate_plies is not None and result.mate_plies > 0
                if (gain >= cfg.swing_threshold or mating) and result.score_cp >= cfg.min_advantage:
                    candidate = await self._make_candidate(
                        fen, MATE_SWING if mating else gain, start_fen, ply
                    )
                    if candidate is not None:
                        candidates.append(candidate)
            prev_white_eval = white_eval

            token = self._choose_move(result)
            try:
                board.push(self.translator.to_move(board, token))
            except InvalidMove as exc:
                raise GenerationAborted(f"engine move rejected: {exc}", ply=ply) from exc

        return candidates

    # ------------------------------------------------------------------
    # Solutions
    # ------------------------------------------------------------------

    async def _deep(self, fen: str, multipv: int) -> AnalysisResult:
        return await self.strong.analyze(
            fen,
            depth=self.settings.solution_depth,
            time_bound_ms=self.settings.solution_time_bound_ms,
            multipv=multipv,
        )

    def _is_forced(self, board: chess.Board, reply: AnalysisResult) -> bool:
        """Only one legal reply, or the best one clearly beats the rest."""
        if board.legal_moves.count() == 1 or len(reply.lines) < 2:
            return True
        return abs(reply.lines[0].score_cp - reply.lines[1].score_cp) > self.settings.forced_gap

    async def build_solution(
        self, fen: str
    ) -> tuple[list[str], list[str], AnalysisResult]:
        """Follow the principal line while the opponent's replies are forced.

        The line always ends on the solver's move.

        Returns:
            (uci_moves, san_moves, analysis of the starting position).
            The move lists are empty when the deeper search no longer
            sees a winning advantage.
        """
        cfg = self.settings
        await self.strong.set_strength(SKILL_MAX)
        board = self.translator.board(fen)

        first = await self._deep(fen, multipv=1)
        winning = first.mate_plies is not None and first.mate_plies > 0
        if not winning and first.score_cp < cfg.min_advantage:
            return [], [], first

        uci_moves = [first.best_move]
        san_moves = [first.san]
        board.push(first.move)

        while len(uci_moves) + 2 <= cfg.max_solution_plies and not board.is_game_over():
            reply = await self._deep(board.fen(), multipv=2)
            if not self._is_forced(board, reply):
                break
            uci_moves.append(reply.best_move)
            san_moves.append(reply.san)
            board.push(reply.move)
            if board.is_game_over():
                break

            ours = await self._deep(board.fen(), multipv=1)
            uci_moves.append(ours.best_move)
            san_moves.append(ours.san)
            board.push(ours.move)

        if len(uci_moves) % 2 == 0:
            uci_moves.pop()
            san_moves.pop()
        return uci_moves, san_moves, first

    async def _make_candidate(
        self, fen: str, swing: int, start_fen: str, ply: int
    ) -> PuzzleCandidate | None:
        norm = normalize_fen(fen)
        if norm in self._seen:
            return None

        try:
            uci_moves, san_moves, first = await self.build_solution(fen)
        except (AnalysisTimeout, NoLegalMove, InvalidMove) as exc:
            logger.warning("Solution search failed at ply %d: %s", ply, exc)
            return None
        if not uci_moves:
            return None

        mate_in = None
        if first.mate_plies is not None and first.mate_plies > 0:
            mate_in = (first.mate_plies + 1) // 2
        solver_moves = (len(uci_moves) + 1) // 2
        self._seen.add(norm)
        return PuzzleCandidate(
            fen=fen,
            solution=uci_moves,
            solution_san=san_moves,
            swing_cp=swing,
            depth=first.depth,
            rating=difficulty_rating(first.depth, swing, solver_moves, self.settings),
            mate_in=mate_in,
            chess960=self.chess960,
            origin={
                "start_fen": start_fen,
                "ply": ply,
                "skill_levels": [self._levels[chess.WHITE], self._levels[chess.BLACK]],
                "engines": len(self.sessions),
            },
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def generate_batch(
        self,
        count: int,
        target_rating: int,
        start_fens: list[str] | None = None,
    ) -> list[PuzzleCandidate]:
        """Run sequences until ``count`` candidates or the attempt cap.

        Aborted sequences are logged and skipped. An engine crash ends
        the batch by propagating ProcessCrash.
        """
        await self.configure(target_rating)
        candidates: list[PuzzleCandidate] = []
        max_attempts = count * self.settings.attempts_per_puzzle
        attempts = 0

        while len(candidates) < count and attempts < max_attempts:
            attempts += 1
            if start_fens:
                start = start_fens[(attempts - 1) % len(start_fens)]
            else:
                start = random_start_position(self._rng, self.chess960)
            for session in self.sessions:
                await session.new_game()

            try:
                found = await self.play_sequence(start, target_rating)
            except GenerationAborted as exc:
                logger.warning("Sequence %d aborted: %s", attempts, exc)
                continue

            candidates.extend(found[: count - len(candidates)])
            logger.info(
                "Sequence %d: %d candidate(s), %d/%d total",
                attempts, len(found), len(candidates), count,
            )

        return candidates

    async def generate_spread(
        self,
        count: int,
        target_ratings: Sequence[int] = DEFAULT_TARGET_RATINGS,
    ) -> list[PuzzleCandidate]:
        """Spread ``count`` candidates evenly over several target ratings.

        Each rating gets ``ceil(count / len(target_ratings))`` candidates
        at most, in list order, so the last ratings may get fewer or none.
        """
        if not target_ratings:
            raise ValueError("target_ratings must not be empty")
        per_rating = math.ceil(count / len(target_ratings))
        candidates: list[PuzzleCandidate] = []
        for rating in target_ratings:
            if len(candidates) >= count:
                break
            wanted = min(per_rating, count - len(candidates))
            candidates.extend(await self.generate_batch(wanted, rating))
        return candidates


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def build_puzzle(candidate: PuzzleCandidate) -> Puzzle:
    """Validate and tag a candidate.

    Raises:
        ValidationRejected: The position is unrealistic at its rating.
    """
    ensure_valid(
        chess.Board(candidate.fen, chess960=candidate.chess960), candidate.rating
    )
    tags = tag_solution(
        candidate.fen, candidate.solution, candidate.mate_in, candidate.chess960
    )
    return Puzzle(
        id="",
        fen=candidate.fen,
        solution=list(candidate.solution),
        solution_san=list(candidate.solution_san),
        rating=candidate.rating,
        themes=tags.themes,
        primary_theme=tags.primary,
        source="generated",
        chess960=candidate.chess960,
    )


async def generate_puzzles(
    generator: PuzzleCandidateGenerator,
    catalog: PuzzleCatalog,
    count: int,
    target_rating: int,
    target_ratings: Sequence[int] | None = None,
) -> list[Puzzle]:
    """Generate candidates and store those that pass validation.

    Args:
        generator: Candidate source.
        catalog: Destination store.
        count: Candidates to generate.
        target_rating: Rating for a single-rating batch.
        target_ratings: When given, spread the count over these ratings
            instead of using target_rating.

    Returns:
        Newly stored puzzles (duplicates of catalog positions excluded).
    """
    if target_ratings:
        candidates = await generator.generate_spread(count, target_ratings)
    else:
        candidates = await generator.generate_batch(count, target_rating)

    accepted: list[Puzzle] = []
    for candidate in candidates:
        try:
            accepted.append(build_puzzle(candidate))
        except ValidationRejected as exc:
            logger.info("Rejected candidate %s: %s", candidate.fen, exc.reason)
    return [p for p, created in catalog.add_puzzles(accepted) if created]


def _target_ratings(args: argparse.Namespace) -> list[int] | None:
    if args.ratings:
        return sorted(int(r) for r in args.ratings.split(",") if r.strip())
    if args.spread:
        return list(DEFAULT_TARGET_RATINGS)
    return None


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings()
    path = args.engine or settings.stockfish_path
    rng = random.Random(args.seed)
    catalog = PuzzleCatalog(args.catalog or settings.catalog_path)
    gen_settings = GeneratorSettings(move_depth=args.depth)

    strong = await AnalysisSession.open(path, init_timeout=settings.init_timeout)
    weak = None
    try:
        if args.two_engines:
            weak = await AnalysisSession.open(path, init_timeout=settings.init_timeout)
        generator = PuzzleCandidateGenerator(
            strong, weak, settings=gen_settings, rng=rng, chess960=args.chess960
        )
        ratings = _target_ratings(args)
        if ratings:
            _log(f"Generating {args.count} puzzle(s) over {ratings[0]}-{ratings[-1]}...")
        else:
            _log(f"Generating {args.count} puzzle(s) around {args.rating}...")
        stored = await generate_puzzles(
            generator, catalog, args.count, args.rating, target_ratings=ratings
        )
    finally:
        await strong.shutdown()
        if weak is not None:
            await weak.shutdown()

    for puzzle in stored:
        _log(
            f"  {puzzle.id}  {puzzle.rating:>5}  {puzzle.primary_theme:<16} "
            f"{' '.join(puzzle.solution_san)}"
        )
    _log(f"Stored {len(stored)} new puzzle(s) in {catalog.path}")
    return 0


def main() -> None:
    """CLI entry point for generator.py."""
    parser = argparse.ArgumentParser(
        description="Generate rated puzzles from engine self-play"
    )
    parser.add_argument("--count", type=int, default=10, help="Candidates to generate")
    parser.add_argument("--rating", type=int, default=1600, help="Target rating")
    parser.add_argument("--spread", action="store_true",
                        help="Spread the count over ratings 1200-2000 in steps of 50")
    parser.add_argument("--ratings", type=str, default=None,
                        help="Comma-separated target ratings to spread the count over")
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--depth", type=int, default=DEFAULT_SETTINGS.move_depth,
                        help="Search depth per self-play move")
    parser.add_argument("--chess960", action="store_true",
                        help="Start from random Chess960 positions")
    parser.add_argument("--two-engines", action="store_true",
                        help="Strong engine vs weak engine instead of self-play")
    parser.add_argument("--engine", type=str, default=None, help="Engine binary")
    parser.add_argument("--catalog", type=str, default=None, help="Catalog JSON path")
    args = parser.parse_args()

    configure_logging()
    try:
        sys.exit(asyncio.run(_run(args)))
    except (ChessPuzzlesError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
