#!/usr/bin/env python3
"""Seed the catalog from the Lichess puzzle dump.

The dump (``lichess_db_puzzle.csv.zst``) is read as a zstd stream, one CSV
row per puzzle:

    0 PuzzleId  1 FEN  2 Moves  3 Rating  4 RatingDeviation  5 Popularity
    6 NbPlays  7 Themes  8 GameUrl  9 OpeningTags

The row's FEN is the game position one ply before the puzzle: the first
token of Moves is the opponent's setup move, the rest is the solution
starting with the solver's move. Themes keep their Lichess names, which
the theme tagger shares.

Usage:
    python -m chess_puzzles.importer --themes fork,pin --min-rating 1400 --limit 200
"""

from __future__ import annotations

import argparse
import csv
import io
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

import zstandard

from chess_puzzles.catalog import PuzzleCatalog, normalize_fen
from chess_puzzles.config import DATA_DIR, configure_logging, load_settings
from chess_puzzles.errors import InvalidMove
from chess_puzzles.models import Puzzle
from chess_puzzles.moves import MoveTranslator
from chess_puzzles.themes import primary_theme

logger = logging.getLogger(__name__)

DEFAULT_DB = DATA_DIR / "lichess_db_puzzle.csv.zst"
_MIN_COLUMNS = 8


@dataclass(frozen=True)
class ImportFilter:
    """Row filter. An empty theme set accepts every theme."""

    themes: frozenset[str] = frozenset()
    min_rating: int = 0
    max_rating: int = 9999
    min_popularity: int = 80

    def accepts(self, rating: int, popularity: int, themes: list[str]) -> bool:
        if not self.min_rating <= rating <= self.max_rating:
            return False
        if popularity < self.min_popularity:
            return False
        return not self.themes or not self.themes.isdisjoint(themes)


def iter_rows(db_path: Path) -> Iterator[list[str]]:
    """Yield CSV rows of a zstd-compressed dump, header skipped."""
    with open(db_path, "rb") as fh:
        stream = zstandard.ZstdDecompressor().stream_reader(fh)
        rows = csv.reader(io.TextIOWrapper(stream, encoding="utf-8"))
        header = next(rows, None)
        if header is None:
            return
        yield from rows


def _numbers(row: list[str], *columns: int) -> tuple[int, ...] | None:
    try:
        return tuple(int(row[c]) for c in columns)
    except ValueError:
        return None


def row_to_puzzle(row: list[str], translator: MoveTranslator) -> Puzzle | None:
    """Convert one CSV row into a Puzzle, or None if it does not check out.

    The setup move and every solution move must be legal in sequence.
    """
    if len(row) < _MIN_COLUMNS:
        return None
    numbers = _numbers(row, 3, 4)
    if numbers is None:
        return None
    rating, deviation = numbers

    tokens = row[2].split()
    if len(tokens) < 2:
        return None
    setup, solution = tokens[0], tokens[1:]

    try:
        fen = translator.apply_move(row[1], setup)
        solution_san = translator.line_to_san(fen, solution)
    except InvalidMove as exc:
        logger.debug("Skipping Lichess puzzle %s: %s", row[0], exc)
        return None

    themes = row[7].split()
    return Puzzle(
        id=f"lichess-{row[0]}",
        fen=fen,
        solution=solution,
        solution_san=solution_san,
        rating=rating,
        rating_deviation=deviation,
        themes=themes,
        primary_theme=primary_theme(themes),
        source="lichess",
    )


def import_puzzles(
    db_path: Path,
    row_filter: ImportFilter = ImportFilter(),
    limit: int = 50,
) -> list[Puzzle]:
    """Stream the dump and collect matching puzzles.

    Rows are filtered on their rating, popularity and themes before any
    move is replayed, so scanning the full dump stays cheap.

    Returns:
        Up to ``limit`` puzzles in file order, one per position.

    Raises:
        FileNotFoundError: If the dump does not exist.
    """
    if not db_path.exists():
        raise FileNotFoundError(f"{db_path} not found")

    translator = MoveTranslator()
    found: dict[str, Puzzle] = {}
    scanned = 0

    for row in iter_rows(db_path):
        if len(found) >= limit:
            break
        scanned += 1
        if len(row) < _MIN_COLUMNS:
            continue
        numbers = _numbers(row, 3, 5)
        if numbers is None or not row_filter.accepts(*numbers, row[7].split()):
            continue
        puzzle = row_to_puzzle(row, translator)
        if puzzle is not None:
            found.setdefault(normalize_fen(puzzle.fen), puzzle)

    logger.info("Scanned %d rows, kept %d puzzles", scanned, len(found))
    return list(found.values())


def import_into_catalog(
    catalog: PuzzleCatalog,
    db_path: Path,
    row_filter: ImportFilter = ImportFilter(),
    limit: int = 50,
) -> tuple[int, int]:
    """Import matching puzzles into the catalog.

    Returns:
        (added, skipped). Positions already in the catalog are skipped.
        The catalog file is written once for the whole import.
    """
    results = catalog.add_puzzles(import_puzzles(db_path, row_filter, limit))
    added = sum(1 for _, created in results if created)
    return added, len(results) - added


def main() -> int:
    """CLI entry point for importer.py."""
    defaults = ImportFilter()
    parser = argparse.ArgumentParser(
        description="Seed the puzzle catalog from the Lichess puzzle dump"
    )
    parser.add_argument("--themes", type=str, default="",
                        help="Comma-separated Lichess themes, any of which must match")
    parser.add_argument("--min-rating", type=int, default=defaults.min_rating)
    parser.add_argument("--max-rating", type=int, default=defaults.max_rating)
    parser.add_argument("--min-popularity", type=int, default=defaults.min_popularity,
                        help="Lichess popularity, -100 to 100")
    parser.add_argument("--limit", type=int, default=50, help="Puzzles to import")
    parser.add_argument("--db", type=Path, default=DEFAULT_DB, help="Dump path")
    parser.add_argument("--catalog", type=str, default=None, help="Catalog JSON path")
    args = parser.parse_args()

    configure_logging()
    row_filter = ImportFilter(
        themes=frozenset(t.strip() for t in args.themes.split(",") if t.strip()),
        min_rating=args.min_rating,
        max_rating=args.max_rating,
        min_popularity=args.min_popularity,
    )
    catalog = PuzzleCatalog(args.catalog or load_settings().catalog_path)

    try:
        added, skipped = import_into_catalog(catalog, args.db, row_filter, args.limit)
    except FileNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if added + skipped == 0:
        print("No matching puzzles found.", file=sys.stderr)
        return 1
    print(f"Added {added} puzzles to {catalog.path} ({skipped} already present)",
          file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
