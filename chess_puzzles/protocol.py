"""UCI line reconstruction, classification and command formatting.

The engine's stdout is an unbounded byte stream with no guarantee that
reads end on a line boundary. LineReader turns chunks into complete
lines; classify_line turns each line into a typed EngineEvent. Both are
pure so they can be tested without a subprocess.
"""

from __future__ import annotations

import codecs
import enum
from dataclasses import dataclass

# Integer-valued info fields: token -> attribute name
_INT_FIELDS = {
    "depth": "depth",
    "seldepth": "seldepth",
    "multipv": "multipv",
    "nodes": "nodes",
    "nps": "nps",
    "time": "time_ms",
    "hashfull": "hashfull",
    "tbhits": "tbhits",
}

NO_MOVE_TOKENS = frozenset({"(none)", "0000"})


class EventKind(enum.Enum):
    HANDSHAKE_ACK = "handshake_ack"
    READY_ACK = "ready_ack"
    INFO = "info"
    BEST_MOVE = "best_move"
    DIAGNOSTIC = "diagnostic"
    PROCESS_EXIT = "process_exit"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class InfoLine:
    """Fields carried by one ``info`` line. Absent fields are None."""

    depth: int | None = None
    seldepth: int | None = None
    multipv: int | None = None
    score_cp: int | None = None
    mate: int | None = None
    bound: str | None = None
    nodes: int | None = None
    nps: int | None = None
    time_ms: int | None = None
    hashfull: int | None = None
    tbhits: int | None = None
    pv: tuple[str, ...] = ()
    string: str | None = None

    @property
    def has_score(self) -> bool:
        return self.score_cp is not None or self.mate is not None


@dataclass(frozen=True)
class EngineEvent:
    """One classified line (or lifecycle signal) from an engine process."""

    kind: EventKind
    line: str = ""
    info: InfoLine | None = None
    best_move: str | None = None
    ponder: str | None = None
    exit_code: int | None = None


# ---------------------------------------------------------------------------
# Line reconstruction
# ---------------------------------------------------------------------------


class LineReader:
    """Pull-based line reassembly over arbitrary text or byte chunks."""

    def __init__(self, encoding: str = "utf-8") -> None:
        # Incremental so a multi-byte character split across reads survives.
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """The unterminated remainder carried to the next chunk."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[str]:
        """Append a chunk and return every line it completed.

        Args:
            chunk: Raw bytes from the stream, or already-decoded text.

        Returns:
            Complete lines without their terminators, in stream order.
            Blank lines are dropped.
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [line.rstrip("\r") for line in complete if line.strip()]

    def flush(self) -> list[str]:
        """Return the unterminated remainder at end of stream."""
        rest = (self._buffer + self._decoder.decode(b"", final=True)).strip()
        self._buffer = ""
        return [rest] if rest else []


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _to_int(token: str) -> int | None:
    try:
        return int(token)
    except ValueError:
        return None


def parse_info(line: str) -> InfoLine:
    """Parse a UCI ``info`` line.

    Unknown tokens are skipped and malformed numbers leave their field
    unset, so a damaged line never raises.

    Args:
        line: Full line including the leading ``info`` token.

    Returns:
        InfoLine with whichever fields the line carried.
    """
    tokens = line.split()[1:]
    values: dict = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if token == "string":
            values["string"] = " ".join(tokens[i + 1:])
            break
        if token == "pv":
            values["pv"] = tuple(tokens[i + 1:])
            break
        if token in _INT_FIELDS and i + 1 < len(tokens):
            value = _to_int(tokens[i + 1])
            if value is not None:
                values[_INT_FIELDS[token]] = value
            i += 2
            continue
        if token == "score" and i + 2 < len(tokens):
            kind, raw = tokens[i + 1], tokens[i + 2]
            value = _to_int(raw)
            if value is not None and kind == "cp":
                values["score_cp"] = value
            elif value is not None and kind == "mate":
                values["mate"] = value
            i += 3
            if i < len(tokens) and tokens[i] in ("lowerbound", "upperbound"):
                values["bound"] = tokens[i]
                i += 1
            continue
        i += 1
    return InfoLine(**values)


def parse_bestmove(line: str) -> tuple[str | None, str | None]:
    """Parse ``bestmove <move> [ponder <move>]``.

    Returns:
        (best, ponder). best is None for the no-move sentinel.
    """
    tokens = line.split()
    best = tokens[1] if len(tokens) > 1 else None
    if best in NO_MOVE_TOKENS:
        best = None
    ponder = None
    if len(tokens) > 3 and tokens[2] == "ponder":
        ponder = tokens[3]
    return best, ponder


def classify_line(line: str) -> EngineEvent:
    """Classify a complete protocol line by its leading token."""
    stripped = line.strip()
    head = stripped.split(maxsplit=1)[0] if stripped else ""
    if head == "uciok":
        return EngineEvent(EventKind.HANDSHAKE_ACK, stripped)
    if head == "readyok":
        return EngineEvent(EventKind.READY_ACK, stripped)
    if head == "info":
        return EngineEvent(EventKind.INFO, stripped, info=parse_info(stripped))
    if head == "bestmove":
        best, ponder = parse_bestmove(stripped)
        return EngineEvent(
            EventKind.BEST_MOVE, stripped, best_move=best, ponder=ponder
        )
    return EngineEvent(EventKind.UNRECOGNIZED, stripped)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def position_command(fen: str, moves: tuple[str, ...] | list[str] = ()) -> str:
    command = f"position fen {fen}"
    if moves:
        command += " moves " + " ".join(moves)
    return command


def go_command(depth: int | None = None, movetime_ms: int | None = None) -> str:
    """Format a bounded ``go`` command.

    Raises:
        ValueError: If neither bound is given; an unbounded search would
            never produce a best-move line on its own.
    """
    if depth is None and movetime_ms is None:
        raise ValueError("go needs a depth or movetime bound")
    parts = ["go"]
    if depth is not None:
        parts += ["depth", str(depth)]
    if movetime_ms is not None:
        parts += ["movetime", str(movetime_ms)]
    return " ".join(parts)


def setoption_command(name: str, value: object) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return f"setoption name {name} value {value}"
