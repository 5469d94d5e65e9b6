"""Tests for self-play puzzle generation.

Most tests drive the generator with ScriptedSession, an in-process
stand-in for AnalysisSession whose evaluations are a function of the
ply count. The solution search is also checked end to end against the
fake UCI engine.
"""

from __future__ import annotations

import argparse
import dataclasses
import random

import chess
import pytest

from chess_puzzles.errors import (
    AnalysisTimeout,
    GenerationAborted,
    ProcessCrash,
    ValidationRejected,
)
from chess_puzzles.generator import (
    DEFAULT_TARGET_RATINGS,
    MATE_SWING,
    GeneratorSettings,
    PuzzleCandidateGenerator,
    build_puzzle,
    difficulty_rating,
    generate_puzzles,
    random_start_position,
    _target_ratings,
    rating_to_skill_level,
)
from chess_puzzles.models import (
    AnalysisLine,
    AnalysisResult,
    PuzzleCandidate,
    mate_plies_to_score,
)
from chess_puzzles.session import SKILL_MAX, AnalysisSession

MATE_IN_ONE = "6k1/5ppp/8/8/8/8/8/R5K1 w - - 0 1"
BACK_RANK = "6k1/5ppp/8/8/8/8/5PPP/R5K1 w - - 0 1"

# Short games, no realism checks while playing, candidates from ply 2.
FAST = GeneratorSettings(
    min_plies=2,
    max_plies=6,
    validate_from_ply=1000,
    max_candidates_per_sequence=1,
)


def _ply(board: chess.Board) -> int:
    return (board.fullmove_number - 1) * 2 + (0 if board.turn == chess.WHITE else 1)


class ScriptedSession:
    """AnalysisSession stand-in.

    ``script(ply)`` returns ``(score_cp, mate_plies)`` from the side to
    move's point of view. Lines are the legal moves in UCI order, all
    with the same score, so no reply is ever forced unless only one
    legal move exists.
    """

    def __init__(self, script=None, fail_at=None, error=AnalysisTimeout):
        self.script = script or (lambda ply: (0, None))
        self.fail_at = fail_at
        self.error = error
        self.levels: list[int] = []
        self.requests: list[tuple[str, int | None, int]] = []
        self.new_games = 0
        self.chess960 = False

    async def analyze(self, fen, depth=None, time_bound_ms=30000, multipv=1,
                      movetime_ms=None):
        board = chess.Board(fen, chess960=self.chess960)
        ply = _ply(board)
        self.requests.append((fen, depth, multipv))
        if self.fail_at is not None and ply >= self.fail_at:
            raise self.error("scripted failure")

        score, mate_plies = self.script(ply)
        if mate_plies is not None:
            score = mate_plies_to_score(mate_plies)
        moves = sorted(board.legal_moves, key=lambda m: m.uci())[:multipv]
        lines = tuple(
            AnalysisLine(rank=i + 1, score_cp=score, depth=depth or 1, pv=(m.uci(),))
            for i, m in enumerate(moves)
        )
        return AnalysisResult(
            fen=fen,
            best_move=moves[0].uci(),
            move=moves[0],
            san=board.san(moves[0]),
            score_cp=score,
            mate_plies=mate_plies,
            depth=depth or 1,
            lines=lines,
        )

    async def set_strength(self, level):
        self.levels.append(level)
        return level

    async def new_game(self):
        self.new_games += 1

    async def set_chess960(self, enabled):
        self.chess960 = enabled


def _swing_at(ply_of_swing: int, score: int = 400, mate_plies=None):
    """Level game that turns decisively for the side to move at one ply."""

    def _script(ply):
        if ply == ply_of_swing:
            return score, mate_plies
        if ply > ply_of_swing:
            # Same White-relative eval as at the swing.
            side = 1 if (ply - ply_of_swing) % 2 == 0 else -1
            return side * min(score, 2000), None
        return 0, None

    return _script


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:

    @pytest.mark.parametrize(
        "rating,level",
        [(600, 0), (1000, 4), (1200, 8), (1600, 16), (1650, 17), (1800, 20), (2500, 20)],
    )
    def test_rating_to_skill_level(self, rating, level):
        assert rating_to_skill_level(rating) == level

    def test_difficulty_rating(self):
        assert difficulty_rating(12, 400, 1) == 1000 + 480 + 80
        assert difficulty_rating(12, 400, 2) == 1000 + 480 + 80 + 100

    def test_difficulty_swing_is_capped(self):
        assert difficulty_rating(12, 50000, 1) == difficulty_rating(12, MATE_SWING, 1)

    def test_difficulty_clamped_to_band(self):
        assert difficulty_rating(1, 0, 1) == 1200
        assert difficulty_rating(30, 1500, 4) == 2500

    def test_standard_start(self):
        assert random_start_position(random.Random(1)) == chess.STARTING_FEN

    def test_chess960_start(self):
        fen = random_start_position(random.Random(5), chess960=True)
        board = chess.Board(fen, chess960=True)
        assert board.is_valid()
        assert board.pawns == chess.Board().pawns
        assert random_start_position(random.Random(5), chess960=True) == fen


def _opening_result(best_move: str) -> AnalysisResult:
    """Start position analysis with three ranked lines e4, d4, Nf3."""
    board = chess.Board()
    lines = tuple(
        AnalysisLine(rank=i + 1, score_cp=30 - 10 * i, depth=5, pv=(uci,))
        for i, uci in enumerate(["e2e4", "d2d4", "g1f3"])
    )
    move = chess.Move.from_uci(best_move)
    return AnalysisResult(
        fen=chess.STARTING_FEN,
        best_move=best_move,
        move=move,
        san=board.san(move),
        score_cp=30,
        mate_plies=None,
        depth=5,
        lines=lines,
    )


class TestChooseMove:

    def test_weakened_bestmove_gets_the_top_weight(self):
        # At a reduced Skill Level bestmove need not be the rank-1 line.
        generator = PuzzleCandidateGenerator(ScriptedSession(), rng=random.Random(11))
        result = _opening_result("a2a3")
        picks = [generator._choose_move(result) for _ in range(2000)]
        assert picks.count("a2a3") > 1200
        assert set(picks) <= {"a2a3", "e2e4", "d2d4"}

    def test_bestmove_not_counted_twice(self):
        generator = PuzzleCandidateGenerator(ScriptedSession(), rng=random.Random(11))
        result = _opening_result("e2e4")
        picks = {generator._choose_move(result) for _ in range(500)}
        assert picks == {"e2e4", "d2d4", "g1f3"}

    def test_single_line_plays_bestmove(self):
        generator = PuzzleCandidateGenerator(ScriptedSession(), rng=random.Random(11))
        result = _opening_result("a2a3")
        single = dataclasses.replace(result, lines=())
        assert generator._choose_move(single) == "a2a3"


# ---------------------------------------------------------------------------
# Self-play
# ---------------------------------------------------------------------------


class TestPlaySequence:

    @pytest.mark.asyncio
    async def test_swing_becomes_candidate(self):
        session = ScriptedSession(_swing_at(4))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        await generator.configure(1600)

        candidates = await generator.play_sequence(chess.STARTING_FEN, 1600)

        assert len(candidates) == 1
        candidate = candidates[0]
        board = chess.Board(candidate.fen)
        assert _ply(board) == 4
        assert candidate.swing_cp == 400
        assert candidate.depth == FAST.solution_depth
        assert candidate.rating == difficulty_rating(FAST.solution_depth, 400, 1)
        assert candidate.mate_in is None
        assert len(candidate.solution) % 2 == 1
        assert chess.Move.from_uci(candidate.solution[0]) in board.legal_moves
        assert candidate.origin["ply"] == 4
        assert candidate.origin["skill_levels"] == [16, 14]
        assert candidate.origin["engines"] == 1

    @pytest.mark.asyncio
    async def test_strengths_alternate_and_solution_at_full_strength(self):
        session = ScriptedSession(_swing_at(4))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        await generator.configure(1600)
        await generator.play_sequence(chess.STARTING_FEN, 1600)
        assert session.levels[:4] == [16, 14, 16, 14]
        assert SKILL_MAX in session.levels

    @pytest.mark.asyncio
    async def test_level_game_gives_nothing(self):
        session = ScriptedSession()
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        assert await generator.play_sequence(chess.STARTING_FEN, 1600) == []
        assert len(session.requests) == FAST.max_plies

    @pytest.mark.asyncio
    async def test_forced_mate_uses_mate_swing(self):
        session = ScriptedSession(_swing_at(4, mate_plies=3))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        candidates = await generator.play_sequence(chess.STARTING_FEN, 1600)
        assert candidates[0].swing_cp == MATE_SWING
        assert candidates[0].mate_in == 2

    @pytest.mark.asyncio
    async def test_swing_must_favour_side_to_move(self):
        # The position turns against White while White is to move.
        session = ScriptedSession(_swing_at(4, score=-400))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        assert await generator.play_sequence(chess.STARTING_FEN, 1600) == []

    @pytest.mark.asyncio
    async def test_two_engines_split_colours(self):
        strong = ScriptedSession()
        weak = ScriptedSession()
        generator = PuzzleCandidateGenerator(strong, weak, settings=FAST, rng=random.Random(0))
        await generator.play_sequence(chess.STARTING_FEN, 1600)
        assert all(chess.Board(fen).turn == chess.WHITE for fen, _, _ in strong.requests)
        assert all(chess.Board(fen).turn == chess.BLACK for fen, _, _ in weak.requests)

    @pytest.mark.asyncio
    async def test_timeout_aborts_sequence(self):
        session = ScriptedSession(fail_at=3)
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        with pytest.raises(GenerationAborted) as excinfo:
            await generator.play_sequence(chess.STARTING_FEN, 1600)
        assert excinfo.value.ply == 3

    @pytest.mark.asyncio
    async def test_unrealistic_position_ends_sequence(self):
        settings = GeneratorSettings(min_plies=2, max_plies=40, validate_from_ply=0,
                                     validate_every=1)
        session = ScriptedSession()
        generator = PuzzleCandidateGenerator(session, settings=settings, rng=random.Random(0))
        assert await generator.play_sequence("5rk1/5ppp/8/8/8/8/8/5RK1 w - - 0 1", 1400) == []
        assert session.requests == []


# ---------------------------------------------------------------------------
# Solutions
# ---------------------------------------------------------------------------


class TestBuildSolution:

    @pytest.mark.asyncio
    async def test_not_winning_gives_empty_solution(self):
        session = ScriptedSession(lambda ply: (40, None))
        generator = PuzzleCandidateGenerator(session, settings=FAST)
        uci, san, first = await generator.build_solution(chess.STARTING_FEN)
        assert uci == [] and san == []
        assert first.score_cp == 40

    @pytest.mark.asyncio
    async def test_forced_replies_extend_line(self):
        # Black has a single legal reply to the first move, so the line extends.
        fen = "7k/8/6K1/8/8/8/8/R7 w - - 0 1"
        session = ScriptedSession(lambda ply: (900, None))
        generator = PuzzleCandidateGenerator(session, settings=FAST)
        uci, san, _ = await generator.build_solution(fen)
        assert len(uci) % 2 == 1
        assert len(uci) == len(san)
        assert uci[0] == "a1a2"

    @pytest.mark.asyncio
    async def test_against_fake_engine(self, fake_engine):
        process = fake_engine()
        await process.start()
        session = AnalysisSession(process)
        try:
            generator = PuzzleCandidateGenerator(session, settings=FAST)
            uci, san, first = await generator.build_solution(MATE_IN_ONE)
        finally:
            await session.shutdown()
        assert uci == ["a1a8"]
        assert san == ["Ra8#"]
        assert first.mate_plies == 1

    @pytest.mark.asyncio
    async def test_duplicate_position_skipped(self):
        session = ScriptedSession(lambda ply: (900, None))
        generator = PuzzleCandidateGenerator(session, settings=FAST)
        first = await generator._make_candidate(BACK_RANK, 900, chess.STARTING_FEN, 20)
        again = await generator._make_candidate(
            BACK_RANK.replace(" 0 1", " 4 33"), 900, chess.STARTING_FEN, 20
        )
        assert first is not None
        assert again is None


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestGenerateBatch:

    @pytest.mark.asyncio
    async def test_collects_requested_count(self):
        session = ScriptedSession(_swing_at(4))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        candidates = await generator.generate_batch(1, 1600, start_fens=[chess.STARTING_FEN])
        assert len(candidates) == 1
        assert session.new_games == 1

    @pytest.mark.asyncio
    async def test_aborted_sequences_are_skipped(self):
        session = ScriptedSession(fail_at=2)
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        assert await generator.generate_batch(2, 1600) == []
        assert session.new_games == 2 * FAST.attempts_per_puzzle

    @pytest.mark.asyncio
    async def test_crash_ends_batch(self):
        session = ScriptedSession(fail_at=2, error=ProcessCrash)
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        with pytest.raises(ProcessCrash):
            await generator.generate_batch(2, 1600)
        assert session.new_games == 1

    @pytest.mark.asyncio
    async def test_chess960_configures_sessions(self):
        session = ScriptedSession(_swing_at(4))
        generator = PuzzleCandidateGenerator(
            session, settings=FAST, rng=random.Random(3), chess960=True
        )
        candidates = await generator.generate_batch(1, 1600)
        assert session.chess960
        assert candidates and candidates[0].chess960


class _RecordingGenerator(PuzzleCandidateGenerator):
    """Generator whose per-rating batches are recorded instead of played."""

    def __init__(self, empty_for=()):
        super().__init__(ScriptedSession(), settings=FAST, rng=random.Random(0))
        self.calls: list[tuple[int, int]] = []
        self.empty_for = set(empty_for)

    async def generate_batch(self, count, target_rating, start_fens=None):
        self.calls.append((count, target_rating))
        if target_rating in self.empty_for:
            return []
        return [_candidate(BACK_RANK, target_rating) for _ in range(count)]


class TestGenerateSpread:

    @pytest.mark.asyncio
    async def test_count_split_over_ratings(self):
        generator = _RecordingGenerator()
        candidates = await generator.generate_spread(5, [1200, 1400, 1600])
        assert generator.calls == [(2, 1200), (2, 1400), (1, 1600)]
        assert [c.rating for c in candidates] == [1200, 1200, 1400, 1400, 1600]

    @pytest.mark.asyncio
    async def test_default_ratings(self):
        generator = _RecordingGenerator()
        await generator.generate_spread(3)
        assert generator.calls == [(1, 1200), (1, 1250), (1, 1300)]
        assert DEFAULT_TARGET_RATINGS[0] == 1200
        assert DEFAULT_TARGET_RATINGS[-1] == 2000
        assert len(DEFAULT_TARGET_RATINGS) == 17

    @pytest.mark.asyncio
    async def test_barren_rating_moves_on(self):
        generator = _RecordingGenerator(empty_for={1200})
        candidates = await generator.generate_spread(2, [1200, 1400, 1600])
        assert generator.calls == [(1, 1200), (1, 1400), (1, 1600)]
        assert len(candidates) == 2

    @pytest.mark.asyncio
    async def test_empty_ratings_rejected(self):
        with pytest.raises(ValueError):
            await _RecordingGenerator().generate_spread(2, [])

    @pytest.mark.asyncio
    async def test_strength_follows_each_rating(self):
        session = ScriptedSession(_swing_at(4))
        generator = PuzzleCandidateGenerator(session, settings=FAST, rng=random.Random(0))
        await generator.generate_spread(2, [1200, 1400])
        assert rating_to_skill_level(1200) in session.levels
        assert rating_to_skill_level(1400) in session.levels


# ---------------------------------------------------------------------------
# Validation, tagging and storage
# ---------------------------------------------------------------------------


def _candidate(fen: str, rating: int, **kwargs) -> PuzzleCandidate:
    kwargs.setdefault("solution", ["a1a8"])
    kwargs.setdefault("solution_san", ["Ra8#"])
    return PuzzleCandidate(fen=fen, swing_cp=1500, depth=12, rating=rating,
                           mate_in=1, **kwargs)


class TestBuildPuzzle:

    def test_tags_and_rates(self):
        puzzle = build_puzzle(_candidate(BACK_RANK, 2100))
        assert puzzle.rating == 2100
        assert puzzle.solution == ["a1a8"]
        assert puzzle.primary_theme == "mateIn1"
        assert "backRankMate" in puzzle.themes
        assert puzzle.source == "generated"

    def test_unrealistic_rejected(self):
        with pytest.raises(ValidationRejected) as excinfo:
            build_puzzle(_candidate(MATE_IN_ONE, 1500))
        assert excinfo.value.reason == "king_exposed"


class _FixedBatch:

    def __init__(self, candidates):
        self.candidates = candidates

    async def generate_batch(self, count, target_rating):
        return self.candidates[:count]


class TestGeneratePuzzles:

    @pytest.mark.asyncio
    async def test_stores_valid_unique_puzzles(self, catalog):
        batch = _FixedBatch([
            _candidate(BACK_RANK, 2100),
            _candidate(MATE_IN_ONE, 1500),
            _candidate(BACK_RANK.replace(" 0 1", " 3 20"), 2100),
        ])
        stored = await generate_puzzles(batch, catalog, 3, 2100)
        assert len(stored) == 1
        assert len(catalog) == 1
        assert catalog.get_puzzle(stored[0].id).primary_theme == "mateIn1"

    @pytest.mark.asyncio
    async def test_spread_over_ratings(self, catalog):
        generator = _RecordingGenerator()
        stored = await generate_puzzles(generator, catalog, 2, 1600,
                                        target_ratings=[2100, 2200])
        assert generator.calls == [(1, 2100), (1, 2200)]
        # Both candidates share a position, so only the first is stored.
        assert len(stored) == 1
        assert stored[0].rating == 2100

    def test_target_ratings_from_cli(self):
        spread = argparse.Namespace(ratings=None, spread=True)
        explicit = argparse.Namespace(ratings="1800, 1400", spread=True)
        single = argparse.Namespace(ratings=None, spread=False)
        assert _target_ratings(spread) == list(DEFAULT_TARGET_RATINGS)
        assert _target_ratings(explicit) == [1400, 1800]
        assert _target_ratings(single) is None
