"""Move token translation on top of python-chess.

The engine speaks in compact UCI tokens (``e2e4``, ``e7e8q``, and in
Chess960 king-takes-rook castling). MoveTranslator turns them into legal
chess.Move objects and SAN, never mutating the caller's board.
"""

from __future__ import annotations

import chess

from chess_puzzles.errors import InvalidMove


class MoveTranslator:
    """Rules-engine adapter: token -> legal move -> new position / SAN."""

    def __init__(self, chess960: bool = False) -> None:
        self.chess960 = chess960

    def board(self, fen: str) -> chess.Board:
        """Build a board for a FEN, honouring the Chess960 flag.

        Raises:
            InvalidMove: If the FEN itself cannot be parsed.
        """
        try:
            return chess.Board(fen, chess960=self.chess960)
        except ValueError as exc:
            raise InvalidMove("", fen, f"bad FEN: {exc}") from exc

    def _as_board(self, position: str | chess.Board) -> chess.Board:
        if isinstance(position, chess.Board):
            return position
        return self.board(position)

    def to_move(self, position: str | chess.Board, token: str) -> chess.Move:
        """Resolve a UCI token to a legal move in the position.

        Args:
            position: FEN string or board. A board is never modified.
            token: UCI move token.

        Returns:
            The legal chess.Move.

        Raises:
            InvalidMove: If the token is malformed or illegal.
        """
        board = self._as_board(position)
        try:
            move = board.parse_uci(token.strip())
        except ValueError as exc:
            # InvalidMoveError and IllegalMoveError are both ValueErrors.
            raise InvalidMove(token, board.fen(), str(exc)) from exc
        if not move:
            # parse_uci accepts the null move "0000"
            raise InvalidMove(token, board.fen(), "null move")
        return move

    def apply_move(self, position: str | chess.Board, token: str) -> str:
        """Return the FEN reached by playing ``token``.

        Raises:
            InvalidMove: If the token is malformed or illegal.
        """
        board = self._as_board(position).copy(stack=False)
        move = self.to_move(board, token)
        board.push(move)
        return board.fen()

    def is_game_over(self, position: str | chess.Board) -> bool:
        return self._as_board(position).is_game_over(claim_draw=False)

    def to_display_notation(self, position: str | chess.Board, move: chess.Move) -> str:
        """SAN for a legal move in the position."""
        return self._as_board(position).san(move)

    def line_to_san(self, position: str | chess.Board, tokens: list[str]) -> list[str]:
        """Convert a sequence of UCI tokens to SAN, validating each ply.

        Raises:
            InvalidMove: At the first illegal or malformed token.
        """
        board = self._as_board(position).copy(stack=False)
        san_moves: list[str] = []
        for token in tokens:
            move = self.to_move(board, token)
            san_moves.append(board.san(move))
            board.push(move)
        return san_moves
