"""Rule-based theme tagging for puzzle solutions.

Tags come from three places: the game phase of the starting position,
the forced-mate depth of the solution, and structural motifs found in
the solver's moves (fork, pin, skewer, double check, ...). Motif
detectors are named rules over (board before the move, move) so they can
be tested one by one and new ones slotted into MOTIF_RULES.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable

import chess

# Piece values for tactical significance checks
_PIECE_VALUES: dict[int, int] = {
    chess.PAWN: 1,
    chess.KNIGHT: 3,
    chess.BISHOP: 3,
    chess.ROOK: 5,
    chess.QUEEN: 9,
    chess.KING: 100,
}

_SLIDERS = (chess.BISHOP, chess.ROOK, chess.QUEEN)

# Ray direction vectors
_ROOK_DIRECTIONS = [(1, 0), (-1, 0), (0, 1), (0, -1)]
_BISHOP_DIRECTIONS = [(1, 1), (1, -1), (-1, 1), (-1, -1)]

ENDGAME_MAX_PIECES = 10
OPENING_MIN_PIECES = 28
MAX_MATE_TAG = 5

PRIORITY_ORDER = [
    "mateIn1", "mateIn2", "mateIn3", "mateIn4", "mateIn5",
    "mate",
    "smotheredMate", "backRankMate",
    "fork", "pin", "skewer",
    "sacrifice", "discoveredAttack", "doubleCheck",
    "promotion", "underPromotion",
    "hangingPiece", "advancedPawn",
    "castling", "enPassant",
    "rookEndgame", "bishopEndgame", "knightEndgame", "pawnEndgame", "queenEndgame",
    "endgame",
    "opening", "middlegame",
    "tactics",
]


def _piece_value(piece_type: int) -> int:
    """Return the standard piece value for a piece type."""
    return _PIECE_VALUES.get(piece_type, 0)


def _after(board: chess.Board, move: chess.Move) -> chess.Board:
    board_after = board.copy(stack=False)
    board_after.push(move)
    return board_after


def _scan_ray(
    board: chess.Board,
    from_sq: int,
    d_rank: int,
    d_file: int,
    target_color: chess.Color,
) -> list[tuple[int, int]]:
    """Scan along a ray and return enemy pieces found (square, piece_type)."""
    result: list[tuple[int, int]] = []
    rank = chess.square_rank(from_sq) + d_rank
    file = chess.square_file(from_sq) + d_file

    while 0 <= rank <= 7 and 0 <= file <= 7:
        sq = chess.square(file, rank)
        piece = board.piece_at(sq)
        if piece is not None:
            if piece.color != target_color:
                break
            result.append((sq, piece.piece_type))
        rank += d_rank
        file += d_file

    return result


# ---------------------------------------------------------------------------
# Motif detectors: (board before the move, move) -> bool
# ---------------------------------------------------------------------------


def detect_fork(board: chess.Board, move: chess.Move) -> bool:
    """The moved piece attacks two or more targets at once.

    A target is the enemy king, an undefended enemy piece, or an enemy
    piece worth more than the attacker. Pawns only count when they are
    worth more than the attacker, which never happens.
    """
    board_after = _after(board, move)
    moved_piece = board_after.piece_at(move.to_square)
    if moved_piece is None:
        return False

    enemy = not moved_piece.color
    attacker_value = _piece_value(moved_piece.piece_type)
    targets = 0
    for sq in board_after.attacks(move.to_square):
        victim = board_after.piece_at(sq)
        if victim is None or victim.color != enemy:
            continue
        if victim.piece_type == chess.KING:
            targets += 1
        elif victim.piece_type != chess.PAWN and not board_after.is_attacked_by(enemy, sq):
            targets += 1
        elif _piece_value(victim.piece_type) > attacker_value:
            targets += 1
    return targets >= 2


def detect_pin(board: chess.Board, move: chess.Move) -> bool:
    """A moved slider pins an enemy piece to its king."""
    board_after = _after(board, move)
    moved_piece = board_after.piece_at(move.to_square)
    if moved_piece is None or moved_piece.piece_type not in _SLIDERS:
        return False

    enemy = not moved_piece.color
    for sq, piece in board_after.piece_map().items():
        if piece.color != enemy or piece.piece_type in (chess.KING, chess.PAWN):
            continue
        if board_after.is_pinned(enemy, sq):
            if board_after.pin(enemy, sq) & chess.BB_SQUARES[move.to_square]:
                return True
    return False


def detect_skewer(board: chess.Board, move: chess.Move) -> bool:
    """A moved slider attacks a valuable piece with a lesser one behind it."""
    board_after = _after(board, move)
    moved_piece = board_after.piece_at(move.to_square)
    if moved_piece is None or moved_piece.piece_type not in _SLIDERS:
        return False

    directions = []
    if moved_piece.piece_type in (chess.ROOK, chess.QUEEN):
        directions.extend(_ROOK_DIRECTIONS)
    if moved_piece.piece_type in (chess.BISHOP, chess.QUEEN):
        directions.extend(_BISHOP_DIRECTIONS)

    for d_rank, d_file in directions:
        found = _scan_ray(board_after, move.to_square, d_rank, d_file, not moved_piece.color)
        if len(found) >= 2:
            front, back = found[0][1], found[1][1]
            if back != chess.PAWN and _piece_value(front) > _piece_value(back):
                return True
    return False


def detect_discovered_attack(board: chess.Board, move: chess.Move) -> bool:
    """Moving a piece unmasks a friendly slider onto a valuable enemy piece."""
    moving_piece = board.piece_at(move.from_square)
    if moving_piece is None:
        return False

    color = moving_piece.color
    board_after = _after(board, move)
    for sq, piece in board_after.piece_map().items():
        if piece.color != color or sq == move.to_square or piece.piece_type not in _SLIDERS:
            continue
        new_attacks = board_after.attacks_mask(sq) & ~board.attacks_mask(sq)
        for target in chess.SquareSet(new_attacks):
            # The vacated square must have been the blocker on this ray.
            if not chess.between(sq, target) & chess.BB_SQUARES[move.from_square]:
                continue
            victim = board_after.piece_at(target)
            if victim is not None and victim.color != color and _piece_value(victim.piece_type) >= 3:
                return True
    return False


def detect_double_check(board: chess.Board, move: chess.Move) -> bool:
    """Check from the moved piece and from a piece it unmasked."""
    return len(_after(board, move).checkers()) >= 2


def detect_back_rank_mate(board: chess.Board, move: chess.Move) -> bool:
    """Mate along the back rank with the king boxed in by its own pawns."""
    board_after = _after(board, move)
    if not board_after.is_checkmate():
        return False

    mated = board_after.turn
    king_sq = board_after.king(mated)
    if king_sq is None:
        return False
    king_rank = chess.square_rank(king_sq)
    if king_rank != (0 if mated == chess.WHITE else 7):
        return False
    if not any(chess.square_rank(sq) == king_rank for sq in board_after.checkers()):
        return False

    escape_rank = 1 if mated == chess.WHITE else 6
    king_file = chess.square_file(king_sq)
    for f in range(max(0, king_file - 1), min(8, king_file + 2)):
        piece = board_after.piece_at(chess.square(f, escape_rank))
        if piece is not None and piece.color == mated and piece.piece_type == chess.PAWN:
            return True
    return False


def detect_smothered_mate(board: chess.Board, move: chess.Move) -> bool:
    """Knight mate with every flight square blocked by the king's own men."""
    board_after = _after(board, move)
    if not board_after.is_checkmate():
        return False
    checkers = list(board_after.checkers())
    if len(checkers) != 1 or board_after.piece_type_at(checkers[0]) != chess.KNIGHT:
        return False
    mated = board_after.turn
    king_sq = board_after.king(mated)
    for sq in chess.SquareSet(chess.BB_KING_ATTACKS[king_sq]):
        piece = board_after.piece_at(sq)
        if piece is None or piece.color != mated:
            return False
    return True


def detect_sacrifice(board: chess.Board, move: chess.Move) -> bool:
    """A capture by a more valuable piece onto a square the opponent covers."""
    if not board.is_capture(move) or board.is_en_passant(move):
        return False
    mover = board.piece_at(move.from_square)
    victim = board.piece_at(move.to_square)
    if mover is None or victim is None or mover.piece_type == chess.KING:
        return False
    if _piece_value(mover.piece_type) <= _piece_value(victim.piece_type):
        return False
    board_after = _after(board, move)
    return board_after.is_attacked_by(not mover.color, move.to_square)


def detect_hanging_piece(board: chess.Board, move: chess.Move) -> bool:
    """Capture of an undefended non-pawn piece."""
    if not board.is_capture(move) or board.is_en_passant(move):
        return False
    victim = board.piece_at(move.to_square)
    if victim is None or victim.piece_type == chess.PAWN:
        return False
    return not board.is_attacked_by(victim.color, move.to_square)


def detect_advanced_pawn(board: chess.Board, move: chess.Move) -> bool:
    """Non-promoting pawn push onto the sixth or seventh rank."""
    piece = board.piece_at(move.from_square)
    if piece is None or piece.piece_type != chess.PAWN or move.promotion:
        return False
    rank = chess.square_rank(move.to_square)
    relative = rank if piece.color == chess.WHITE else 7 - rank
    return relative >= 5


def detect_promotion(board: chess.Board, move: chess.Move) -> bool:
    return move.promotion is not None


def detect_under_promotion(board: chess.Board, move: chess.Move) -> bool:
    return move.promotion is not None and move.promotion != chess.QUEEN


def detect_castling(board: chess.Board, move: chess.Move) -> bool:
    return board.is_castling(move)


def detect_en_passant(board: chess.Board, move: chess.Move) -> bool:
    return board.is_en_passant(move)


MotifRule = Callable[[chess.Board, chess.Move], bool]

MOTIF_RULES: list[tuple[str, MotifRule]] = [
    ("doubleCheck", detect_double_check),
    ("discoveredAttack", detect_discovered_attack),
    ("fork", detect_fork),
    ("pin", detect_pin),
    ("skewer", detect_skewer),
    ("backRankMate", detect_back_rank_mate),
    ("smotheredMate", detect_smothered_mate),
    ("sacrifice", detect_sacrifice),
    ("hangingPiece", detect_hanging_piece),
    ("advancedPawn", detect_advanced_pawn),
    ("promotion", detect_promotion),
    ("underPromotion", detect_under_promotion),
    ("castling", detect_castling),
    ("enPassant", detect_en_passant),
]


# ---------------------------------------------------------------------------
# Phase and mate tags
# ---------------------------------------------------------------------------


def phase_tags(board: chess.Board) -> list[str]:
    """Opening / middlegame / endgame by piece count, kings included."""
    pieces = board.piece_map().values()
    piece_count = len(pieces)
    if piece_count >= OPENING_MIN_PIECES:
        return ["opening"]
    if piece_count > ENDGAME_MAX_PIECES:
        return ["middlegame"]

    types = [p.piece_type for p in pieces]
    has_queen = chess.QUEEN in types
    has_rook = chess.ROOK in types
    has_bishop = chess.BISHOP in types
    has_knight = chess.KNIGHT in types
    pawns = types.count(chess.PAWN)

    tags = ["endgame"]
    if has_rook and not has_queen and piece_count <= 8:
        tags.append("rookEndgame")
    if has_bishop and not (has_queen or has_rook) and piece_count <= 6:
        tags.append("bishopEndgame")
    if has_knight and not (has_queen or has_rook or has_bishop) and piece_count <= 6:
        tags.append("knightEndgame")
    if pawns >= 2 and piece_count <= 8 and not (has_queen or has_rook or has_bishop or has_knight):
        tags.append("pawnEndgame")
    if has_queen and piece_count <= 8:
        tags.append("queenEndgame")
    return tags


def mate_tags(mate_in: int | None) -> list[str]:
    if mate_in is None or mate_in < 1:
        return []
    return ["mate", f"mateIn{min(mate_in, MAX_MATE_TAG)}"]


# ---------------------------------------------------------------------------
# Tagger
# ---------------------------------------------------------------------------


@dataclass
class ThemeResult:
    themes: list[str] = field(default_factory=list)
    primary: str = "tactics"


def primary_theme(themes: list[str]) -> str:
    """Most specific theme by PRIORITY_ORDER."""
    for theme in PRIORITY_ORDER:
        if theme in themes:
            return theme
    return themes[0] if themes else "tactics"


def tag_solution(
    fen: str,
    solution: list[str],
    mate_in: int | None = None,
    chess960: bool = False,
    rules: list[tuple[str, MotifRule]] | None = None,
) -> ThemeResult:
    """Tag a puzzle from its starting position and UCI solution.

    Motif rules run on every solver move (even plies of the solution).
    Illegal tokens end the scan; the caller validates solutions.

    Args:
        fen: Puzzle starting position, solver to move.
        solution: UCI tokens, solver and opponent alternating.
        mate_in: Engine-reported mate distance in moves, if any.
        chess960: Interpret castling tokens as Chess960.
        rules: Ordered (theme, detector) pairs. Defaults to MOTIF_RULES.

    Returns:
        ThemeResult with ordered, de-duplicated tags and the primary tag.
    """
    board = chess.Board(fen, chess960=chess960)
    themes: list[str] = []

    def add(tag: str) -> None:
        if tag not in themes:
            themes.append(tag)

    for tag in phase_tags(board):
        add(tag)

    motif_found = False
    for ply, token in enumerate(solution):
        try:
            move = board.parse_uci(token)
        except ValueError:
            break
        if ply % 2 == 0:
            for name, rule in rules if rules is not None else MOTIF_RULES:
                if rule(board, move):
                    add(name)
                    motif_found = True
        board.push(move)

    if mate_in is None and board.is_checkmate():
        mate_in = math.ceil(len(solution) / 2)
    for tag in mate_tags(mate_in):
        add(tag)
        motif_found = True

    if not motif_found:
        add("tactics")
    return ThemeResult(themes=themes, primary=primary_theme(themes))
