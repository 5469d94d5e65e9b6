"""Terminal puzzle viewer.

Renders a catalog puzzle as a Rich board with a sidebar of its rating,
themes and play statistics. The board is drawn from the solver's side
and the squares of the solution's first move can be highlighted.
"""

from __future__ import annotations

import argparse
import sys

import chess
from rich.console import Console
from rich.layout import Layout
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chess_puzzles.catalog import PuzzleCatalog
from chess_puzzles.config import load_settings
from chess_puzzles.errors import InvalidMove, PuzzleNotFound
from chess_puzzles.models import Puzzle
from chess_puzzles.moves import MoveTranslator
from chess_puzzles.scheduler import PuzzleScheduler

# Unicode piece symbols
_PIECE_SYMBOLS = {
    "K": "♔", "Q": "♕", "R": "♖", "B": "♗",
    "N": "♘", "P": "♙",
    "k": "♚", "q": "♛", "r": "♜", "b": "♝",
    "n": "♞", "p": "♟",
}

_LIGHT_SQ = "grey85"
_DARK_SQ = "grey50"
_HIGHLIGHT = "yellow"


def render_puzzle(puzzle: Puzzle, show_solution: bool = False) -> Layout:
    """Render the full puzzle layout.

    Args:
        puzzle: Catalog puzzle.
        show_solution: Highlight the first solution move and list the
            whole line in the sidebar.

    Returns:
        Rich Layout with board and sidebar.
    """
    layout = Layout()
    layout.split_row(
        Layout(name="board", ratio=2),
        Layout(name="sidebar", ratio=1),
    )
    layout["board"].update(_render_board_panel(puzzle, show_solution))
    layout["sidebar"].update(_render_sidebar(puzzle, show_solution))
    return layout


def _highlight_squares(puzzle: Puzzle, board: chess.Board) -> set[int]:
    if not puzzle.solution:
        return set()
    try:
        move = MoveTranslator(puzzle.chess960).to_move(board, puzzle.solution[0])
    except InvalidMove:
        return set()
    return {move.from_square, move.to_square}


def _square_cell(board: chess.Board, square: int, highlight: set[int]) -> Text:
    if square in highlight:
        background = _HIGHLIGHT
    elif chess.BB_SQUARES[square] & chess.BB_LIGHT_SQUARES:
        background = _LIGHT_SQ
    else:
        background = _DARK_SQ
    piece = board.piece_at(square)
    glyph = _PIECE_SYMBOLS[piece.symbol()] if piece else " "
    return Text(f" {glyph} ", style=f"black on {background}")


def _render_board_panel(puzzle: Puzzle, show_solution: bool) -> Panel:
    """Board from the solver's side: White at the bottom unless Black moves."""
    board = chess.Board(puzzle.fen, chess960=puzzle.chess960)
    highlight = _highlight_squares(puzzle, board) if show_solution else set()
    white_view = board.turn == chess.WHITE
    ranks = chess.RANK_NAMES[::-1] if white_view else chess.RANK_NAMES
    files = chess.FILE_NAMES if white_view else chess.FILE_NAMES[::-1]

    grid = Table.grid(padding=0)
    grid.add_column(width=2)
    for _ in files:
        grid.add_column(width=3)
    for rank_name in ranks:
        cells = [
            _square_cell(board, chess.parse_square(file_name + rank_name), highlight)
            for file_name in files
        ]
        grid.add_row(Text(f"{rank_name} ", style="bold"), *cells)
    grid.add_row(Text(""), *(Text(f" {f} ", style="bold") for f in files))

    side = "White" if white_view else "Black"
    return Panel(grid, title=f"{side} to move", border_style="blue", expand=False)


def _render_sidebar(puzzle: Puzzle, show_solution: bool) -> Panel:
    parts: list[str] = [
        f"[bold]Puzzle {puzzle.id}[/bold]",
        f"Rating: {round(puzzle.rating)}",
        f"Theme: {puzzle.primary_theme}",
    ]
    if puzzle.themes:
        parts.append(f"[italic]{', '.join(puzzle.themes)}[/italic]")
    parts.append("")
    parts.append(f"Plays: {puzzle.plays}")
    parts.append(f"Votes: {puzzle.votes}")
    if puzzle.day:
        parts.append(f"Daily: {puzzle.day}")
    parts.append(f"Source: {puzzle.source}")
    if puzzle.chess960:
        parts.append("Chess960")

    if show_solution and puzzle.solution_san:
        parts.append("")
        parts.append("[bold]Solution:[/bold]")
        parts.append(f"  {' '.join(puzzle.solution_san)}")

    return Panel("\n".join(parts), title="Info", border_style="green")


def main() -> None:
    """CLI entry point for tui.py."""
    parser = argparse.ArgumentParser(description="Show a catalog puzzle")
    parser.add_argument("puzzle_id", nargs="?", help="Puzzle id")
    parser.add_argument("--daily", action="store_true", help="Show today's puzzle")
    parser.add_argument("--solution", action="store_true",
                        help="Highlight the first move and list the solution")
    parser.add_argument("--catalog", type=str, default=None, help="Catalog JSON path")
    args = parser.parse_args()

    console = Console()
    if not args.puzzle_id and not args.daily:
        parser.error("give a PUZZLE_ID or --daily")

    catalog = PuzzleCatalog(args.catalog or load_settings().catalog_path)
    if args.daily:
        puzzle = PuzzleScheduler(catalog).daily_puzzle()
        if puzzle is None:
            console.print("[red]No puzzles in the catalog[/red]")
            sys.exit(1)
    else:
        try:
            puzzle = catalog.get_puzzle(args.puzzle_id)
        except PuzzleNotFound as exc:
            console.print(f"[red]{exc}[/red]")
            sys.exit(1)

    console.print(render_puzzle(puzzle, show_solution=args.solution))


if __name__ == "__main__":
    main()
