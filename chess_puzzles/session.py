"""Single-flight analysis on top of one EngineProcess.

At most one ``go`` is ever outstanding on the process. Every request
takes the session lock, cancels whatever might still be running,
waits a short settling interval and only then submits its own search.
Info lines are folded per MultiPV rank until ``bestmove`` arrives.

A request that times out leaves its search marked stale. The next
request stops it and waits for its ``bestmove`` before sending a new
``go``, so an old result can never be read as a new one.
"""

from __future__ import annotations

import asyncio
import logging

import chess

from chess_puzzles.config import DEFAULT_INIT_TIMEOUT
from chess_puzzles.engine import EngineProcess, EngineState, find_stockfish
from chess_puzzles.errors import AnalysisTimeout, NoLegalMove, ProcessCrash
from chess_puzzles.models import (
    AnalysisLine,
    AnalysisRequest,
    AnalysisResult,
    mate_moves_to_plies,
    mate_plies_to_score,
)
from chess_puzzles.moves import MoveTranslator
from chess_puzzles.protocol import (
    EngineEvent,
    EventKind,
    InfoLine,
    go_command,
    position_command,
)

logger = logging.getLogger(__name__)

DEFAULT_DEPTH = 15
DEFAULT_TIME_BOUND_MS = 30000
SETTLE_DELAY = 0.05
STALE_SEARCH_TIMEOUT = 5.0

SKILL_MIN = 0
SKILL_MAX = 20
UCI_ELO_MIN = 1320
UCI_ELO_MAX = 3190


class _LineState:
    """Running best-known values for one MultiPV rank."""

    def __init__(self, rank: int) -> None:
        self.rank = rank
        self.depth: int | None = None
        self.score_cp: int | None = None
        self.mate: int | None = None
        self.pv: tuple[str, ...] = ()
        self.nodes: int | None = None
        self.time_ms: int | None = None

    def update(self, info: InfoLine) -> None:
        if info.depth is not None:
            if self.depth is not None and info.depth < self.depth:
                return
            self.depth = info.depth
        # Bound scores from aspiration re-searches are not exact.
        if info.bound is None or self.score_cp is None:
            if info.mate is not None:
                self.mate = info.mate
                self.score_cp = mate_plies_to_score(mate_moves_to_plies(info.mate))
            elif info.score_cp is not None:
                self.mate = None
                self.score_cp = info.score_cp
        if info.pv:
            self.pv = info.pv
        if info.nodes is not None:
            self.nodes = info.nodes
        if info.time_ms is not None:
            self.time_ms = info.time_ms

    def freeze(self) -> AnalysisLine:
        return AnalysisLine(
            rank=self.rank,
            score_cp=self.score_cp if self.score_cp is not None else 0,
            depth=self.depth or 0,
            pv=self.pv,
            mate=self.mate,
            nodes=self.nodes,
            time_ms=self.time_ms,
        )


class AnalysisSession:
    """Serialised analysis requests against one exclusively owned engine."""

    def __init__(
        self,
        process: EngineProcess,
        *,
        settle_delay: float = SETTLE_DELAY,
        default_depth: int = DEFAULT_DEPTH,
        stale_search_timeout: float = STALE_SEARCH_TIMEOUT,
    ) -> None:
        """Wrap an already started EngineProcess.

        Args:
            process: Started engine; the session now owns it.
            settle_delay: Seconds to wait after ``stop`` before a new search.
            default_depth: Depth used when a request gives no search bound.
            stale_search_timeout: Seconds to wait for a timed-out search's
                ``bestmove`` before declaring the engine hung.
        """
        self.process = process
        self.settle_delay = settle_delay
        self.default_depth = default_depth
        self.stale_search_timeout = stale_search_timeout
        self.translator = MoveTranslator()
        self.requests_served = 0
        self._lock = asyncio.Lock()
        self._stale_search = False
        self._multipv = 1

    @classmethod
    async def open(
        cls,
        path: str | None = None,
        *,
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
        chess960: bool = False,
        **kwargs,
    ) -> AnalysisSession:
        """Spawn an engine, wait for it to be ready and wrap it.

        Raises:
            FileNotFoundError: If no path is given and Stockfish is not found.
            StartupError, InitializationTimeout, ProcessCrash: From startup.
        """
        process = EngineProcess(path or find_stockfish(), init_timeout=init_timeout)
        await process.start()
        session = cls(process, **kwargs)
        if chess960:
            await session.set_chess960(True)
        return session

    async def __aenter__(self) -> AnalysisSession:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def is_ready(self) -> bool:
        """True while the engine is alive and past its handshake."""
        return self.process.state in (EngineState.READY, EngineState.BUSY)

    async def shutdown(self) -> None:
        await self.process.terminate()

    async def analyze(
        self,
        fen: str,
        depth: int | None = None,
        time_bound_ms: int | None = None,
        multipv: int = 1,
        movetime_ms: int | None = None,
    ) -> AnalysisResult:
        """Analyze one position.

        Args:
            fen: Position to analyze.
            depth: Search depth bound. Defaults to default_depth when
                movetime_ms is not given either.
            time_bound_ms: Wall-clock bound for the whole request, counted
                from the moment the session lock is taken. Stopping a
                previous search and the settle delay use up part of it.
                Recovering a timed-out search is bounded separately by
                stale_search_timeout and may run past this bound before
                ending in ProcessCrash.
            multipv: Number of ranked alternative lines.
            movetime_ms: Optional engine-side search time bound.

        Returns:
            AnalysisResult with the best move, evaluation and ranked lines.

        Raises:
            AnalysisTimeout: No ``bestmove`` within time_bound_ms.
            NoLegalMove: The engine reported no legal move.
            InvalidMove: Bad FEN, or the engine's move is illegal.
            ProcessCrash: The engine died or is no longer usable.
        """
        if depth is None and movetime_ms is None:
            depth = self.default_depth
        request = AnalysisRequest(
            fen=fen,
            depth=depth,
            movetime_ms=movetime_ms,
            time_bound_ms=time_bound_ms or DEFAULT_TIME_BOUND_MS,
            multipv=max(1, multipv),
        )
        board = self.translator.board(fen)
        async with self._lock:
            return await self._run(request, board)

    async def set_strength(self, level: int) -> int:
        """Set the engine's Skill Level (clamped to 0-20).

        Returns:
            The level actually applied.
        """
        level = max(SKILL_MIN, min(SKILL_MAX, int(level)))
        async with self._lock:
            await self._settle_stale_search()
            await self._set_option_once("UCI_LimitStrength", False)
            await self._set_option_once("Skill Level", level)
        return level

    async def limit_strength(self, elo: int) -> int:
        """Cap playing strength at an Elo via UCI_LimitStrength / UCI_Elo."""
        elo = max(UCI_ELO_MIN, min(UCI_ELO_MAX, int(elo)))
        async with self._lock:
            await self._settle_stale_search()
            await self._set_option_once("UCI_LimitStrength", True)
            await self._set_option_once("UCI_Elo", elo)
        return elo

    async def set_chess960(self, enabled: bool) -> None:
        async with self._lock:
            await self._settle_stale_search()
            await self._set_option_once("UCI_Chess960", enabled)
            self.translator = MoveTranslator(chess960=enabled)

    async def new_game(self) -> None:
        """Tell the engine the next positions are unrelated to the last ones."""
        async with self._lock:
            await self._settle_stale_search()
            await self.process.send("ucinewgame")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _ensure_alive(self) -> None:
        if not self.process.is_alive:
            raise ProcessCrash(
                f"Engine {self.process.name} is no longer usable "
                f"({self.process.state.value})",
                engine=self.process,
            )

    async def _set_option_once(self, name: str, value: object) -> None:
        self._ensure_alive()
        if self.process.options.get(name) == value and name in self.process.options:
            return
        await self.process.set_option(name, value)

    async def _settle_stale_search(self) -> None:
        """Stop a search abandoned by a timed-out caller and consume its result."""
        if not self._stale_search:
            return
        self._ensure_alive()
        await self.process.send("stop")
        try:
            await asyncio.wait_for(
                self._discard_until_bestmove(), self.stale_search_timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Engine %s did not answer stop within %.1fs; tearing down",
                self.process.name,
                self.stale_search_timeout,
            )
            await self.process.terminate()
            raise ProcessCrash(
                f"Engine {self.process.name} hung after stop",
                engine=self.process,
            ) from None
        self._stale_search = False

    async def _discard_until_bestmove(self) -> None:
        while True:
            event = await self.process.next_event()
            if event.kind is EventKind.BEST_MOVE:
                logger.debug("Discarded stale %s", event.line)
                return
            if event.kind is EventKind.PROCESS_EXIT:
                raise ProcessCrash(
                    f"Engine {self.process.name} exited", engine=self.process
                )

    async def _run(self, request: AnalysisRequest, board: chess.Board) -> AnalysisResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + request.time_bound_ms / 1000
        self._ensure_alive()
        await self.process.send("stop")
        await asyncio.sleep(self.settle_delay)
        await self._settle_stale_search()

        for event in self.process.drain_events():
            if event.kind is EventKind.PROCESS_EXIT:
                raise ProcessCrash(
                    f"Engine {self.process.name} exited", engine=self.process
                )

        if request.multipv != self._multipv:
            await self.process.set_option("MultiPV", request.multipv)
            self._multipv = request.multipv

        await self.process.send(position_command(request.fen))
        # Busy before go: bestmove may be read while send() drains.
        self.process.mark_busy()
        self._stale_search = True
        await self.process.send(go_command(request.depth, request.movetime_ms))

        try:
            result = await asyncio.wait_for(
                self._collect(request, board), max(0.0, deadline - loop.time())
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Analysis of %s timed out after %d ms", request.fen, request.time_bound_ms
            )
            raise AnalysisTimeout(
                f"No bestmove within {request.time_bound_ms} ms for {request.fen}",
                engine=self.process,
            ) from None
        self.requests_served += 1
        return result

    async def _collect(self, request: AnalysisRequest, board: chess.Board) -> AnalysisResult:
        states: dict[int, _LineState] = {}
        nodes: int | None = None
        time_ms: int | None = None

        while True:
            event = await self.process.next_event()
            if event.kind is EventKind.INFO:
                info = event.info
                if info.nodes is not None:
                    nodes = info.nodes
                if info.time_ms is not None:
                    time_ms = info.time_ms
                if info.has_score or info.pv:
                    rank = info.multipv or 1
                    states.setdefault(rank, _LineState(rank)).update(info)
            elif event.kind is EventKind.BEST_MOVE:
                self._stale_search = False
                return self._finalize(request, board, event, states, nodes, time_ms)
            elif event.kind is EventKind.PROCESS_EXIT:
                raise ProcessCrash(
                    f"Engine {self.process.name} exited during analysis "
                    f"(code {event.exit_code})",
                    engine=self.process,
                )

    def _finalize(
        self,
        request: AnalysisRequest,
        board: chess.Board,
        event: EngineEvent,
        states: dict[int, _LineState],
        nodes: int | None,
        time_ms: int | None,
    ) -> AnalysisResult:
        if event.best_move is None:
            raise NoLegalMove(
                f"Engine reported no legal move for {request.fen}",
                engine=self.process,
            )
        move = self.translator.to_move(board, event.best_move)
        lines = tuple(
            states[rank].freeze()
            for rank in sorted(states)
            if rank <= request.multipv
        )
        primary = lines[0] if lines else None
        return AnalysisResult(
            fen=request.fen,
            best_move=event.best_move,
            move=move,
            san=board.san(move),
            score_cp=primary.score_cp if primary else 0,
            mate_plies=primary.mate_plies if primary else None,
            depth=max((line.depth for line in lines), default=0),
            lines=lines,
            nodes=nodes,
            time_ms=time_ms,
            ponder=event.ponder,
        )
