"""Per-tool MCP server tests.

Tool functions are called directly. The scheduler is pointed at a temp
catalog and analysis runs against the fake UCI engine.

Run:
    pytest tests/test_mcp_tools.py -v
"""

from __future__ import annotations

import asyncio
import dataclasses
import importlib.util
import sys
from pathlib import Path

import chess
import pytest

# Add project root so imports resolve
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_PROJECT_ROOT))

# Import server module from hyphenated directory via importlib
_server_path = _PROJECT_ROOT / "mcp-server" / "server.py"
_spec = importlib.util.spec_from_file_location("mcp_server_tools_test", _server_path)
_server = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(_server)

from chess_puzzles.scheduler import PuzzleScheduler  # noqa: E402
from chess_puzzles.session import AnalysisSession  # noqa: E402

MATE_IN_ONE = "6k1/5ppp/8/8/8/8/8/R5K1 w - - 0 1"


@pytest.fixture()
def scheduler(catalog, monkeypatch):
    """Route the server's scheduler to an empty temp catalog."""
    scheduler = PuzzleScheduler(catalog)
    monkeypatch.setattr(_server, "_scheduler", scheduler)
    return scheduler


def _add(scheduler, puzzle):
    stored, _ = scheduler.catalog.add_puzzle(puzzle)
    return stored


# ---------------------------------------------------------------------------
# analyze_position
# ---------------------------------------------------------------------------


class TestAnalyzePosition:

    @pytest.mark.asyncio
    async def test_uses_shared_session(self, fake_engine, monkeypatch):
        process = fake_engine()
        await process.start()
        session = AnalysisSession(process)
        monkeypatch.setattr(_server, "_session", session)
        try:
            result = await _server.analyze_position(MATE_IN_ONE, depth=4, multipv=2)
            again = await _server.analyze_position(chess.STARTING_FEN, depth=2, multipv=1)
        finally:
            await session.shutdown()

        assert result["best_move"] == "a1a8"
        assert result["san"] == "Ra8#"
        assert result["mate_plies"] == 1
        assert [line["rank"] for line in result["lines"]] == [1, 2]
        assert "error" not in again
        assert session.requests_served == 2

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_one_engine(self, fake_engine, monkeypatch):
        spawned = []

        class _CountingSession(AnalysisSession):
            @classmethod
            async def open(cls, path=None, **kwargs):
                process = fake_engine()
                await process.start()
                spawned.append(process)
                return cls(process)

        monkeypatch.setattr(_server, "AnalysisSession", _CountingSession)
        monkeypatch.setattr(_server, "_session", None)
        monkeypatch.setattr(_server, "_session_lock", asyncio.Lock())
        try:
            results = await asyncio.gather(
                _server.analyze_position(MATE_IN_ONE, depth=2, multipv=1),
                _server.analyze_position(chess.STARTING_FEN, depth=2, multipv=1),
            )
        finally:
            for process in spawned:
                await process.terminate()

        assert len(spawned) == 1
        assert [r["fen"] for r in results] == [MATE_IN_ONE, chess.STARTING_FEN]
        assert _server._session.requests_served == 2

    @pytest.mark.asyncio
    async def test_invalid_fen(self):
        result = await _server.analyze_position("not a fen")
        assert "error" in result

    @pytest.mark.asyncio
    async def test_impossible_position(self):
        result = await _server.analyze_position("8/8/8/8/8/8/8/8 w - - 0 1")
        assert result["error"].startswith("Invalid FEN position")

    @pytest.mark.asyncio
    async def test_engine_unavailable(self, tmp_path, monkeypatch):
        settings = dataclasses.replace(
            _server._settings, stockfish_path=str(tmp_path / "no-engine")
        )
        monkeypatch.setattr(_server, "_settings", settings)
        monkeypatch.setattr(_server, "_session", None)
        result = await _server.analyze_position(chess.STARTING_FEN)
        assert "Could not launch engine" in result["error"]


# ---------------------------------------------------------------------------
# Puzzle tools
# ---------------------------------------------------------------------------


class TestPuzzleTools:

    def test_next_puzzle_hides_solution(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1550))
        view = _server.next_puzzle("alice")
        assert view["id"] == stored.id
        assert view["side_to_move"] == "white"
        assert view["solution_length"] == 1
        assert "solution" not in view

    def test_next_puzzle_none(self, scheduler):
        assert "error" in _server.next_puzzle("alice")

    def test_solve_compares_solver_moves(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(
            0, 1500, solution=["d5c7", "e8d8", "c7a8"], solution_san=["Nc7+", "Kd8", "Nxa8"]
        ))
        result = _server.solve_puzzle("alice", stored.id, ["D5C7", "c7a8"])
        assert result["won"]
        assert result["solution"] == ["Nc7+", "Kd8", "Nxa8"]
        assert result["rating_diff"] > 0
        assert result["attempts"] == 1

    def test_solve_retry_is_not_rated_again(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1500))
        failed = _server.solve_puzzle("alice", stored.id, ["a2a3"])
        retry = _server.solve_puzzle("alice", stored.id, ["e2e4"])
        assert not failed["won"]
        assert retry["won"]
        assert retry["rating_diff"] == failed["rating_diff"]
        assert retry["attempts"] == 2
        assert _server.solver_rating("alice")["rating"] == failed["rating_after"]

    def test_solve_unknown_puzzle(self, scheduler):
        assert "Puzzle not found" in _server.solve_puzzle("alice", "ghost", [])["error"]

    def test_daily(self, scheduler, puzzle_factory):
        _add(scheduler, puzzle_factory(0, 1800))
        result = _server.daily_puzzle()
        assert result["day"]
        assert _server.daily_puzzle()["id"] == result["id"]

    def test_daily_empty(self, scheduler):
        assert "error" in _server.daily_puzzle()

    def test_storm_includes_solutions(self, scheduler, puzzle_factory):
        for i in range(4):
            _add(scheduler, puzzle_factory(i, 1300 + i * 100))
        result = _server.storm_puzzles(3)
        assert result["count"] == 3
        assert all(p["solution"] == ["e2e4"] for p in result["puzzles"])

    def test_record_storm_run(self, scheduler):
        result = _server.record_storm_run("alice", 21, moves=30, accuracy=0.9)
        assert result["new_high"]
        assert result["high_score"] == 21

    def test_puzzle_by_theme(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1500, themes=["fork"]))
        _add(scheduler, puzzle_factory(1, 1500, themes=["pin"]))
        view = _server.puzzle_by_theme("alice", "fork")
        assert view["id"] == stored.id
        assert "solution" not in view
        assert "error" in _server.puzzle_by_theme("alice", "fork", difficulty=400)

    def test_storm_leaderboard(self, scheduler):
        _server.record_storm_run("alice", 12)
        _server.record_storm_run("bob", 25)
        board = _server.storm_leaderboard(limit=5)["leaderboard"]
        assert [(e["rank"], e["solver_id"]) for e in board] == [(1, "bob"), (2, "alice")]

    def test_vote_theme(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1500))
        _server.vote_theme("alice", stored.id, "fork")
        result = _server.vote_theme("bob", stored.id, "fork")
        assert result["voted"]
        assert result["votes"] == 2
        assert "fork" in result["themes"]

    def test_vote_errors(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1500))
        assert "Unknown theme" in _server.vote_theme("alice", stored.id, "nonsense")["error"]
        assert "error" in _server.vote_theme("alice", "ghost", "fork")

    def test_solver_rating_default(self, scheduler):
        assert _server.solver_rating("newcomer") == {
            "solver_id": "newcomer",
            "rating": 1500,
            "rating_deviation": 350,
            "games": 0,
        }

    def test_withdrawn_vote_drops_theme(self, scheduler, puzzle_factory):
        stored = _add(scheduler, puzzle_factory(0, 1500))
        _server.vote_theme("alice", stored.id, "pin")
        _server.vote_theme("bob", stored.id, "pin")
        result = _server.vote_theme("bob", stored.id, "pin")
        assert not result["voted"]
        assert result["votes"] == 1
        assert "pin" not in result["themes"]
