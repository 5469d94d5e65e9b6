"""Realism checks for puzzle candidates.

A candidate that is tactically sound can still look absurd to a human
at the target level (a king marooned in the open at 1400, five pieces en
prise). Each check is a named rule returning a rejection reason or None;
rules run in order and the first rejection wins. Thresholds live in
ValidationPolicy and are tuning knobs, not chess truths.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional

import chess

from chess_puzzles.errors import ValidationRejected

# Material values in pawn units (king excluded)
_MATERIAL: dict[int, int] = {
    chess.PAWN: 1,
    chess.KNIGHT: 3,
    chess.BISHOP: 3,
    chess.ROOK: 5,
    chess.QUEEN: 9,
    chess.KING: 0,
}


class RejectionReason(str, enum.Enum):
    GAME_OVER = "game_over"
    MATERIAL_IMBALANCE = "material_imbalance"
    KING_MISPLACED = "king_misplaced"
    KING_EXPOSED = "king_exposed"
    BOTH_KINGS_EXPOSED = "both_kings_exposed"
    TOO_MANY_HANGING_PIECES = "too_many_hanging_pieces"


@dataclass(frozen=True)
class ValidationPolicy:
    """Rating-dependent thresholds. (rating_below, limit) pairs are checked in order."""

    imbalance_limits: tuple[tuple[int, int], ...] = ((1600, 5), (1800, 8))
    hanging_limits: tuple[tuple[int, int], ...] = ((1600, 2), (2000, 3))
    low_rating_cutoff: int = 1800
    mid_rating_cutoff: int = 2000
    min_king_defenders: int = 2
    # With this many pieces (kings included) the game is still a middlegame
    # and kings belong near home: White on ranks 1-3, Black on ranks 6-8.
    middlegame_pieces: int = 20
    white_king_max_rank: int = 3
    black_king_min_rank: int = 6


DEFAULT_POLICY = ValidationPolicy()


@dataclass(frozen=True)
class ValidationResult:
    accepted: bool
    reason: str | None = None
    rule: str | None = None


def _limit_for(limits: tuple[tuple[int, int], ...], rating: int) -> int | None:
    for below, limit in limits:
        if rating < below:
            return limit
    return None


# ---------------------------------------------------------------------------
# Position measurements
# ---------------------------------------------------------------------------


def material_difference(board: chess.Board) -> int:
    """Absolute material difference in pawn units."""
    total = 0
    for piece in board.piece_map().values():
        value = _MATERIAL[piece.piece_type]
        total += value if piece.color == chess.WHITE else -value
    return abs(total)


def king_defenders(board: chess.Board, color: chess.Color) -> int:
    """Friendly pieces on the squares adjacent to the king."""
    king_sq = board.king(color)
    if king_sq is None:
        return 0
    count = 0
    for sq in chess.SquareSet(chess.BB_KING_ATTACKS[king_sq]):
        piece = board.piece_at(sq)
        if piece is not None and piece.color == color:
            count += 1
    return count


def pawn_shield(board: chess.Board, color: chess.Color) -> int:
    """Friendly pawns on the three squares directly in front of the king."""
    king_sq = board.king(color)
    if king_sq is None:
        return 0
    rank = chess.square_rank(king_sq) + (1 if color == chess.WHITE else -1)
    if not 0 <= rank <= 7:
        return 0
    file = chess.square_file(king_sq)
    count = 0
    for f in range(max(0, file - 1), min(7, file + 1) + 1):
        piece = board.piece_at(chess.square(f, rank))
        if piece is not None and piece.color == color and piece.piece_type == chess.PAWN:
            count += 1
    return count


def is_king_exposed(
    board: chess.Board, color: chess.Color, policy: ValidationPolicy = DEFAULT_POLICY
) -> bool:
    """Few defenders nearby and, on the home rank, no pawn shield either."""
    king_sq = board.king(color)
    if king_sq is None:
        return False
    if king_defenders(board, color) >= policy.min_king_defenders:
        return False
    home_rank = 0 if color == chess.WHITE else 7
    if chess.square_rank(king_sq) == home_rank:
        return pawn_shield(board, color) == 0
    return True


def hanging_pieces(board: chess.Board) -> list[chess.Square]:
    """Non-king pieces attacked by the opponent and defended by nobody."""
    hanging = []
    for sq, piece in board.piece_map().items():
        if piece.piece_type == chess.KING:
            continue
        if board.is_attacked_by(not piece.color, sq) and not board.is_attacked_by(
            piece.color, sq
        ):
            hanging.append(sq)
    return sorted(hanging)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

Rule = Callable[[chess.Board, int, ValidationPolicy], Optional[RejectionReason]]


def _rule_game_over(board, rating, policy):
    if board.is_game_over(claim_draw=False):
        return RejectionReason.GAME_OVER
    return None


def _rule_material_imbalance(board, rating, policy):
    limit = _limit_for(policy.imbalance_limits, rating)
    if limit is not None and material_difference(board) > limit:
        return RejectionReason.MATERIAL_IMBALANCE
    return None


def _rule_king_placement(board, rating, policy):
    if len(board.piece_map()) < policy.middlegame_pieces:
        return None
    white = board.king(chess.WHITE)
    black = board.king(chess.BLACK)
    if white is not None and chess.square_rank(white) + 1 > policy.white_king_max_rank:
        return RejectionReason.KING_MISPLACED
    if black is not None and chess.square_rank(black) + 1 < policy.black_king_min_rank:
        return RejectionReason.KING_MISPLACED
    return None


def _rule_king_exposure(board, rating, policy):
    white = is_king_exposed(board, chess.WHITE, policy)
    black = is_king_exposed(board, chess.BLACK, policy)
    if rating < policy.low_rating_cutoff:
        if white or black:
            return RejectionReason.KING_EXPOSED
    elif rating < policy.mid_rating_cutoff and white and black:
        return RejectionReason.BOTH_KINGS_EXPOSED
    return None


def _rule_hanging_pieces(board, rating, policy):
    limit = _limit_for(policy.hanging_limits, rating)
    if limit is not None and len(hanging_pieces(board)) > limit:
        return RejectionReason.TOO_MANY_HANGING_PIECES
    return None


RULES: list[tuple[str, Rule]] = [
    ("game_over", _rule_game_over),
    ("material_imbalance", _rule_material_imbalance),
    ("king_placement", _rule_king_placement),
    ("king_exposure", _rule_king_exposure),
    ("hanging_pieces", _rule_hanging_pieces),
]


def validate_position(
    fen: str | chess.Board,
    target_rating: int,
    policy: ValidationPolicy = DEFAULT_POLICY,
    rules: list[tuple[str, Rule]] | None = None,
) -> ValidationResult:
    """Run the realism rules against a position.

    Args:
        fen: Position FEN (or board, which is not modified).
        target_rating: Rating of the audience the puzzle is meant for.
        policy: Thresholds.
        rules: Ordered (name, rule) pairs. Defaults to RULES.

    Returns:
        ValidationResult; reason and rule name are set on rejection.
    """
    board = fen if isinstance(fen, chess.Board) else chess.Board(fen)
    for name, rule in rules if rules is not None else RULES:
        reason = rule(board, target_rating, policy)
        if reason is not None:
            return ValidationResult(False, reason.value, name)
    return ValidationResult(True)


def ensure_valid(
    fen: str | chess.Board,
    target_rating: int,
    policy: ValidationPolicy = DEFAULT_POLICY,
) -> None:
    """Raise ValidationRejected when validate_position rejects.

    Raises:
        ValidationRejected: With the rejection reason code.
    """
    result = validate_position(fen, target_rating, policy)
    if not result.accepted:
        board_fen = fen.fen() if isinstance(fen, chess.Board) else fen
        raise ValidationRejected(result.reason, board_fen)
