"""JSON-backed puzzle catalog.

A small key-based store for puzzles, solver ratings, solve attempts,
theme votes and storm runs. Every mutation rewrites the file through a
temp file and os.replace, so a reader never sees a half-written record.
A corrupted file is backed up as .bak and the catalog starts empty.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from chess_puzzles.errors import PuzzleNotFound
from chess_puzzles.models import Puzzle, SolveAttempt, SolverRating, StormRun

logger = logging.getLogger(__name__)

_SECTIONS = ("puzzles", "ratings", "attempts", "theme_votes", "storm_runs")


def normalize_fen(fen: str) -> str:
    """Normalize FEN for deduplication (strip move counters)."""
    parts = fen.split()
    return " ".join(parts[:4]) if len(parts) >= 4 else fen


def _attempt_key(solver_id: str, puzzle_id: str) -> str:
    return f"{solver_id}|{puzzle_id}"


class PuzzleCatalog:
    """Key-based store for every record the scheduler reads and writes."""

    def __init__(self, path: str | Path) -> None:
        """Load the catalog from disk.

        Args:
            path: JSON file. Missing files start an empty catalog.
        """
        self._path = Path(path)
        self._data = self._load()
        self._fen_index = {
            normalize_fen(p["fen"]): pid for pid, p in self._data["puzzles"].items()
        }

    @property
    def path(self) -> Path:
        return self._path

    def _empty(self) -> dict:
        return {
            "puzzles": {},
            "ratings": {},
            "attempts": {},
            "theme_votes": {},
            "storm_runs": [],
        }

    def _load(self) -> dict:
        """Load the document, backing up and resetting a corrupt file."""
        if not self._path.exists():
            return self._empty()

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError("Catalog file must contain a JSON object")
        except (json.JSONDecodeError, ValueError) as exc:
            backup_path = self._path.with_suffix(".bak")
            shutil.copy2(self._path, backup_path)
            logger.warning(
                "Corrupt catalog %s (%s); backed up to %s", self._path, exc, backup_path
            )
            return self._empty()

        empty = self._empty()
        for section in _SECTIONS:
            data.setdefault(section, empty[section])
        return data

    def _save(self) -> None:
        """Write the document atomically."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(
            json.dumps(self._data, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        os.replace(tmp_path, self._path)

    # ------------------------------------------------------------------
    # Puzzles
    # ------------------------------------------------------------------

    def _insert(self, puzzle: Puzzle) -> tuple[Puzzle, bool]:
        norm = normalize_fen(puzzle.fen)
        existing_id = self._fen_index.get(norm)
        if existing_id is not None:
            return self.get_puzzle(existing_id), False

        if not puzzle.id:
            puzzle.id = uuid.uuid4().hex[:12]
        if not puzzle.created_at:
            puzzle.created_at = datetime.now(timezone.utc).isoformat()
        self._data["puzzles"][puzzle.id] = puzzle.to_dict()
        self._fen_index[norm] = puzzle.id
        return puzzle, True

    def add_puzzle(self, puzzle: Puzzle) -> tuple[Puzzle, bool]:
        """Insert a puzzle unless one with the same position exists.

        Missing id and created_at are filled in.

        Returns:
            (stored puzzle, created). On a duplicate position the existing
            puzzle is returned with created False.
        """
        stored, created = self._insert(puzzle)
        if created:
            self._save()
        return stored, created

    def add_puzzles(self, puzzles: Iterable[Puzzle]) -> list[tuple[Puzzle, bool]]:
        """Insert many puzzles and write the file once.

        Duplicates within the batch are caught like catalog duplicates.

        Returns:
            One (stored puzzle, created) pair per input, in order.
        """
        results = [self._insert(puzzle) for puzzle in puzzles]
        if any(created for _, created in results):
            self._save()
        return results

    def has_position(self, fen: str) -> bool:
        return normalize_fen(fen) in self._fen_index

    def get_puzzle(self, puzzle_id: str) -> Puzzle:
        """Fetch a puzzle by id.

        Raises:
            PuzzleNotFound: If the id is unknown.
        """
        record = self._data["puzzles"].get(puzzle_id)
        if record is None:
            raise PuzzleNotFound(puzzle_id)
        return Puzzle.from_dict(record)

    def update_puzzle(self, puzzle: Puzzle) -> None:
        if puzzle.id not in self._data["puzzles"]:
            raise PuzzleNotFound(puzzle.id)
        self._data["puzzles"][puzzle.id] = puzzle.to_dict()
        self._save()

    def puzzles(self) -> list[Puzzle]:
        return [Puzzle.from_dict(p) for p in self._data["puzzles"].values()]

    def __len__(self) -> int:
        return len(self._data["puzzles"])

    # ------------------------------------------------------------------
    # Ratings and attempts
    # ------------------------------------------------------------------

    def get_rating(self, solver_id: str) -> SolverRating:
        """Current rating, or a fresh default rating for a new solver."""
        record = self._data["ratings"].get(solver_id)
        if record is None:
            return SolverRating(solver_id=solver_id)
        return SolverRating.from_dict(record)

    def save_rating(self, rating: SolverRating) -> None:
        self._data["ratings"][rating.solver_id] = rating.to_dict()
        self._save()

    def get_attempt(self, solver_id: str, puzzle_id: str) -> SolveAttempt | None:
        record = self._data["attempts"].get(_attempt_key(solver_id, puzzle_id))
        return SolveAttempt.from_dict(record) if record is not None else None

    def save_attempt(self, attempt: SolveAttempt) -> None:
        key = _attempt_key(attempt.solver_id, attempt.puzzle_id)
        self._data["attempts"][key] = attempt.to_dict()
        self._save()

    def attempted_puzzle_ids(self, solver_id: str) -> set[str]:
        return {
            a["puzzle_id"]
            for a in self._data["attempts"].values()
            if a["solver_id"] == solver_id
        }

    # ------------------------------------------------------------------
    # Theme votes and storm runs
    # ------------------------------------------------------------------

    def theme_votes(self, puzzle_id: str) -> dict[str, list[str]]:
        """theme -> solver ids who voted for it."""
        votes = self._data["theme_votes"].get(puzzle_id, {})
        return {theme: list(solvers) for theme, solvers in votes.items()}

    def save_theme_votes(self, puzzle_id: str, votes: dict[str, list[str]]) -> None:
        self._data["theme_votes"][puzzle_id] = {t: s for t, s in votes.items() if s}
        self._save()

    def add_storm_run(self, run: StormRun) -> None:
        self._data["storm_runs"].append(run.to_dict())
        self._save()

    def storm_runs(self, solver_id: str | None = None) -> list[StormRun]:
        """Runs in insertion order, for one solver or everyone."""
        return [
            StormRun.from_dict(r)
            for r in self._data["storm_runs"]
            if solver_id is None or r["solver_id"] == solver_id
        ]
