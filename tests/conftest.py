"""Shared test fixtures with dual-mode support (fake vs real Stockfish).

Usage:
    pytest tests/                  # Fast, scripted fake UCI engine
    pytest tests/ --e2e            # Also run real Stockfish scenarios

Fixtures:
    fake_engine     - Factory for EngineProcess objects driving
                      tests/fake_uci_engine.py in a given mode.
    catalog         - Empty PuzzleCatalog in a temp directory.
    stockfish_path  - Real engine binary. Skipped unless --e2e is passed.
"""

from __future__ import annotations

import sys
from pathlib import Path

import chess
import pytest

from chess_puzzles.catalog import PuzzleCatalog
from chess_puzzles.engine import EngineProcess, find_stockfish
from chess_puzzles.models import Puzzle

_TESTS_DIR = Path(__file__).resolve().parent
FAKE_ENGINE = _TESTS_DIR / "fake_uci_engine.py"


# ---------------------------------------------------------------------------
# CLI option and marker registration
# ---------------------------------------------------------------------------


def pytest_addoption(parser):
    """Register --e2e CLI flag for real Stockfish tests."""
    parser.addoption(
        "--e2e",
        action="store_true",
        default=False,
        help="Run with real Stockfish engine.",
    )


def pytest_configure(config):
    """Register the e2e marker."""
    config.addinivalue_line(
        "markers", "e2e: mark test as end-to-end (requires real Stockfish)"
    )


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_engine():
    """Build (unstarted) EngineProcess objects for the fake engine.

    Usage: ``process = fake_engine("slow-once", init_timeout=2.0)``.
    """

    def _make(mode: str = "normal", **kwargs) -> EngineProcess:
        kwargs.setdefault("init_timeout", 5.0)
        kwargs.setdefault("name", f"fake-{mode}")
        return EngineProcess(sys.executable, [str(FAKE_ENGINE), mode], **kwargs)

    return _make


@pytest.fixture()
def stockfish_path(request):
    """Path to a real Stockfish binary, or skip."""
    if not request.config.getoption("--e2e"):
        pytest.skip("needs --e2e")
    try:
        return find_stockfish()
    except FileNotFoundError:
        pytest.skip("Stockfish not installed")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@pytest.fixture()
def catalog(tmp_path):
    """Empty catalog backed by a temp file."""
    return PuzzleCatalog(tmp_path / "puzzles.json")


def make_puzzle(index: int, rating: float, **kwargs) -> Puzzle:
    """Puzzle whose position is unique per index (0-47).

    The white king walks over the first six ranks; tests only care about
    metadata, not the solution.
    """
    board = chess.Board(None)
    board.set_piece_at(chess.H8, chess.Piece(chess.KING, chess.BLACK))
    board.set_piece_at(index, chess.Piece(chess.KING, chess.WHITE))
    kwargs.setdefault("solution", ["e2e4"])
    return Puzzle(id=kwargs.pop("id", ""), fen=board.fen(), rating=rating, **kwargs)


@pytest.fixture()
def puzzle_factory():
    return make_puzzle
