"""Tests for the Rich puzzle viewer."""

from __future__ import annotations

import io
import sys

import chess
import pytest
from rich.console import Console

from chess_puzzles import tui
from chess_puzzles.models import Puzzle
from chess_puzzles.tui import render_puzzle

BACK_RANK = "6k1/5ppp/8/8/8/8/5PPP/R5K1 w - - 0 1"


def _text(renderable, width: int = 100) -> str:
    console = Console(record=True, width=width, file=io.StringIO())
    console.print(renderable)
    return console.export_text()


def _puzzle(**kwargs) -> Puzzle:
    kwargs.setdefault("fen", BACK_RANK)
    kwargs.setdefault("solution", ["a1a8"])
    kwargs.setdefault("solution_san", ["Ra8#"])
    return Puzzle(
        id="p1",
        rating=1733.4,
        themes=["backRankMate", "mate", "mateIn1"],
        primary_theme="mateIn1",
        **kwargs,
    )


class TestSidebar:

    def test_metadata(self):
        text = _text(tui._render_sidebar(_puzzle(plays=7, votes=2), False))
        assert "Puzzle p1" in text
        assert "Rating: 1733" in text
        assert "Theme: mateIn1" in text
        assert "backRankMate, mate, mateIn1" in text
        assert "Plays: 7" in text
        assert "Votes: 2" in text
        assert "Source: generated" in text
        assert "Solution" not in text
        assert "Chess960" not in text

    def test_solution_on_request(self):
        text = _text(tui._render_sidebar(_puzzle(), True))
        assert "Solution:" in text
        assert "Ra8#" in text

    def test_daily_and_chess960(self):
        text = _text(tui._render_sidebar(_puzzle(day="2026-10-18", chess960=True), False))
        assert "Daily: 2026-10-18" in text
        assert "Chess960" in text


class TestBoard:

    def test_side_to_move_title(self):
        assert "White to move" in _text(tui._render_board_panel(_puzzle(), False))
        black = _puzzle(fen="6k1/5ppp/8/8/8/8/5PPP/R5K1 b - - 0 1", solution=["g8h8"])
        assert "Black to move" in _text(tui._render_board_panel(black, False))

    def test_highlight_first_move(self):
        puzzle = _puzzle()
        board = chess.Board(puzzle.fen)
        assert tui._highlight_squares(puzzle, board) == {chess.A1, chess.A8}

    def test_bad_solution_highlights_nothing(self):
        puzzle = _puzzle(solution=["h1h8"])
        assert tui._highlight_squares(puzzle, chess.Board(puzzle.fen)) == set()
        assert tui._highlight_squares(_puzzle(solution=[]), chess.Board()) == set()

    def test_layout(self):
        layout = render_puzzle(_puzzle(), show_solution=True)
        assert layout["board"] is not None
        assert layout["sidebar"] is not None


class TestMain:

    def test_show_puzzle(self, catalog, puzzle_factory, monkeypatch, capsys):
        puzzle, _ = catalog.add_puzzle(puzzle_factory(0, 1500, id="shown"))
        monkeypatch.setattr(sys, "argv", ["tui", "shown", "--catalog", str(catalog.path)])
        tui.main()
        assert "Puzzle shown" in capsys.readouterr().out

    def test_unknown_puzzle(self, catalog, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["tui", "ghost", "--catalog", str(catalog.path)])
        with pytest.raises(SystemExit) as excinfo:
            tui.main()
        assert excinfo.value.code == 1

    def test_empty_daily(self, catalog, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["tui", "--daily", "--catalog", str(catalog.path)])
        with pytest.raises(SystemExit) as excinfo:
            tui.main()
        assert excinfo.value.code == 1
