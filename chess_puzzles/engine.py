"""UCI engine subprocess with an explicit lifecycle state machine.

EngineProcess owns exactly one engine subprocess. A reader task turns
stdout into classified EngineEvents and drives the startup handshake:

    SPAWNING -> AWAITING_HANDSHAKE_ACK -> AWAITING_READY_ACK -> READY
    READY <-> BUSY, then TERMINATED; FAILED is terminal.

Everything after the handshake is delivered on a typed event channel
(``next_event``); commands go in through ``send``. The process knows
nothing about analysis requests. AnalysisSession layers single-flight
search on top.

CLI:
    python -m chess_puzzles.engine analyze "<FEN>" --depth 12 --multipv 3
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import os
import shutil
import sys
from pathlib import Path

from chess_puzzles.config import DEFAULT_INIT_TIMEOUT, DEFAULT_QUIT_GRACE
from chess_puzzles.errors import (
    ChessPuzzlesError,
    InitializationTimeout,
    ProcessCrash,
    StartupError,
)
from chess_puzzles.protocol import (
    EngineEvent,
    EventKind,
    LineReader,
    classify_line,
    setoption_command,
)

logger = logging.getLogger(__name__)

# Stockfish search paths in priority order
_STOCKFISH_PATHS = [
    "/opt/homebrew/bin/stockfish",
    "/usr/local/bin/stockfish",
    "/usr/games/stockfish",
    "/usr/bin/stockfish",
]

_READ_CHUNK = 4096


def find_stockfish() -> str:
    """Auto-detect the Stockfish binary path.

    Checks CHESS_PUZZLES_STOCKFISH, then known install paths, then PATH.

    Returns:
        Path to the Stockfish binary.

    Raises:
        FileNotFoundError: If Stockfish is not found anywhere.
    """
    explicit = os.environ.get("CHESS_PUZZLES_STOCKFISH")
    if explicit:
        return explicit

    for path_str in _STOCKFISH_PATHS:
        if Path(path_str).is_file():
            return path_str

    which_result = shutil.which("stockfish")
    if which_result is not None:
        return which_result

    raise FileNotFoundError(
        "Stockfish not found. Install it or set CHESS_PUZZLES_STOCKFISH."
    )


class EngineState(enum.Enum):
    SPAWNING = "spawning"
    AWAITING_HANDSHAKE_ACK = "awaiting_handshake_ack"
    AWAITING_READY_ACK = "awaiting_ready_ack"
    READY = "ready"
    BUSY = "busy"
    TERMINATED = "terminated"
    FAILED = "failed"


_DEAD_STATES = (EngineState.TERMINATED, EngineState.FAILED)


class EngineProcess:
    """One UCI engine subprocess and its raw command / event channels."""

    def __init__(
        self,
        path: str,
        args: tuple[str, ...] | list[str] = (),
        *,
        init_timeout: float = DEFAULT_INIT_TIMEOUT,
        quit_grace: float = DEFAULT_QUIT_GRACE,
        name: str | None = None,
    ) -> None:
        """Describe the engine to launch. Nothing is spawned until start().

        Args:
            path: Engine executable.
            args: Extra command-line arguments for the executable.
            init_timeout: Seconds allowed for uciok + readyok.
            quit_grace: Seconds to wait after ``quit`` before killing.
            name: Label used in log lines. Defaults to the file name.
        """
        self.path = path
        self.args = tuple(args)
        self.init_timeout = init_timeout
        self.quit_grace = quit_grace
        self.name = name or Path(path).name
        self.state = EngineState.SPAWNING
        self.engine_id: str | None = None
        self.options: dict[str, object] = {}
        self.ready_notifications = 0

        self._proc: asyncio.subprocess.Process | None = None
        self._events: asyncio.Queue[EngineEvent] = asyncio.Queue()
        self._ready = asyncio.Event()
        self._exited = asyncio.Event()
        self._reader_tasks: list[asyncio.Task] = []
        self._teardown_lock = asyncio.Lock()
        self._torn_down = False
        self._terminating = False

    def __repr__(self) -> str:
        return f"EngineProcess({self.name!r}, state={self.state.value})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode if self._proc is not None else None

    @property
    def is_ready(self) -> bool:
        return self.state is EngineState.READY

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and self.state not in _DEAD_STATES

    async def start(self) -> None:
        """Spawn the engine and complete the uci / isready handshake.

        Raises:
            StartupError: If the executable cannot be launched.
            InitializationTimeout: If readyok does not arrive within
                init_timeout. The process is torn down first.
            ProcessCrash: If the engine exits during the handshake.
        """
        if self.state is not EngineState.SPAWNING:
            raise RuntimeError(f"{self!r} was already started")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                self.path,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            self.state = EngineState.FAILED
            raise StartupError(
                f"Could not launch engine {self.path}: {exc}", engine=self
            ) from exc

        logger.info("Spawned engine %s (pid %s)", self.name, self._proc.pid)
        self._reader_tasks = [
            asyncio.create_task(self._read_stdout()),
            asyncio.create_task(self._read_stderr()),
        ]
        self.state = EngineState.AWAITING_HANDSHAKE_ACK
        self._write("uci")

        # Watchdog: whichever comes first of ready, exit, or the deadline.
        ready_waiter = asyncio.ensure_future(self._ready.wait())
        exit_waiter = asyncio.ensure_future(self._exited.wait())
        try:
            await asyncio.wait(
                {ready_waiter, exit_waiter},
                timeout=self.init_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_waiter.cancel()
            exit_waiter.cancel()

        if self._ready.is_set():
            return

        exited = self._exited.is_set()
        self.state = EngineState.FAILED
        await self.terminate()
        if exited:
            raise ProcessCrash(
                f"Engine {self.name} exited during initialization "
                f"(code {self.returncode})",
                engine=self,
            )
        raise InitializationTimeout(
            f"Engine {self.name} not ready after {self.init_timeout:g}s",
            engine=self,
        )

    async def terminate(self) -> None:
        """Quit the engine, killing it after the grace window.

        Idempotent and serialised: concurrent callers wait for the first
        teardown and then return. Reader tasks are always cancelled so
        no listener outlives the process.
        """
        async with self._teardown_lock:
            if self._torn_down:
                return
            self._torn_down = True
            self._terminating = True
            proc = self._proc

            if proc is not None and proc.returncode is None:
                self._write("quit")
                try:
                    await asyncio.wait_for(proc.wait(), self.quit_grace)
                except asyncio.TimeoutError:
                    logger.warning("Engine %s ignored quit; killing", self.name)
                    try:
                        proc.kill()
                    except ProcessLookupError:
                        pass
                    await proc.wait()

            for task in self._reader_tasks:
                task.cancel()
            await asyncio.gather(*self._reader_tasks, return_exceptions=True)
            self._reader_tasks = []

            if proc is not None and proc.stdin is not None:
                proc.stdin.close()

            if self.state is not EngineState.FAILED:
                self.state = EngineState.TERMINATED
            self._exited.set()
            # Wake anyone still parked on the event channel.
            self._events.put_nowait(
                EngineEvent(EventKind.PROCESS_EXIT, exit_code=self.returncode)
            )
            logger.info(
                "Engine %s torn down (code %s)", self.name, self.returncode
            )

    # ------------------------------------------------------------------
    # Command channel
    # ------------------------------------------------------------------

    def _write(self, command: str) -> None:
        if self._proc is None or self._proc.stdin is None:
            return
        if self._proc.stdin.is_closing():
            return
        logger.debug("%s >> %s", self.name, command)
        self._proc.stdin.write((command + "\n").encode("utf-8"))

    async def send(self, command: str) -> None:
        """Write one protocol command.

        Raises:
            ProcessCrash: If the process is gone or its stdin is broken.
        """
        if self._proc is None or self.state in _DEAD_STATES or self._exited.is_set():
            raise ProcessCrash(
                f"Engine {self.name} is not running ({self.state.value})",
                engine=self,
            )
        self._write(command)
        try:
            await self._proc.stdin.drain()
        except (ConnectionResetError, BrokenPipeError) as exc:
            self.state = EngineState.FAILED
            raise ProcessCrash(
                f"Engine {self.name} stdin closed: {exc}", engine=self
            ) from exc

    async def set_option(self, name: str, value: object) -> None:
        await self.send(setoption_command(name, value))
        self.options[name] = value

    def mark_busy(self) -> None:
        """Record that a ``go`` command is outstanding."""
        if self.state in _DEAD_STATES:
            raise ProcessCrash(f"Engine {self.name} is not running", engine=self)
        self.state = EngineState.BUSY

    # ------------------------------------------------------------------
    # Event channel
    # ------------------------------------------------------------------

    async def next_event(self) -> EngineEvent:
        """Wait for the next event from the engine.

        Once the process has exited and the queue is drained, every call
        returns a PROCESS_EXIT event immediately.
        """
        if self._events.empty() and self._exited.is_set():
            return EngineEvent(EventKind.PROCESS_EXIT, exit_code=self.returncode)
        return await self._events.get()

    def drain_events(self) -> list[EngineEvent]:
        """Discard and return everything already queued."""
        drained = []
        while not self._events.empty():
            drained.append(self._events.get_nowait())
        return drained

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------

    def _dispatch(self, line: str) -> None:
        logger.debug("%s << %s", self.name, line)
        event = classify_line(line)
        kind = event.kind

        if kind is EventKind.HANDSHAKE_ACK:
            if self.state is EngineState.AWAITING_HANDSHAKE_ACK:
                self.state = EngineState.AWAITING_READY_ACK
                self._write("ucinewgame")
                self._write("isready")
            return

        if kind is EventKind.READY_ACK and self.state is EngineState.AWAITING_READY_ACK:
            self.state = EngineState.READY
            self.ready_notifications += 1
            self._ready.set()
            logger.info("Engine %s ready", self.engine_id or self.name)
            return

        if kind is EventKind.BEST_MOVE and self.state is EngineState.BUSY:
            self.state = EngineState.READY

        if kind is EventKind.UNRECOGNIZED:
            if line.startswith("id name "):
                self.engine_id = line[len("id name "):].strip()
            return

        self._events.put_nowait(event)

    def _on_stdout_closed(self) -> None:
        self._exited.set()
        if self._terminating:
            return
        self.state = EngineState.FAILED
        logger.warning("Engine %s exited unexpectedly", self.name)
        self._events.put_nowait(
            EngineEvent(EventKind.PROCESS_EXIT, exit_code=self.returncode)
        )

    async def _read_stdout(self) -> None:
        reader = LineReader()
        stream = self._proc.stdout
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in reader.feed(chunk):
                    self._dispatch(line)
            for line in reader.flush():
                self._dispatch(line)
        except OSError as exc:
            logger.warning("Engine %s stdout error: %s", self.name, exc)
        self._on_stdout_closed()

    async def _read_stderr(self) -> None:
        reader = LineReader()
        stream = self._proc.stderr
        try:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    break
                for line in reader.feed(chunk):
                    logger.info("%s stderr: %s", self.name, line)
                    self._events.put_nowait(EngineEvent(EventKind.DIAGNOSTIC, line))
        except OSError as exc:
            logger.debug("Engine %s stderr error: %s", self.name, exc)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


async def _cli_analyze(fen: str, depth: int, multipv: int, path: str | None) -> dict:
    """Analyze one position and return the result as a dict."""
    from chess_puzzles.session import AnalysisSession

    async with await AnalysisSession.open(path or find_stockfish()) as session:
        result = await session.analyze(fen, depth=depth, multipv=multipv)
    return result.to_dict()


def main() -> None:
    """CLI entry point for engine.py."""
    parser = argparse.ArgumentParser(
        description="UCI engine driver - analyze positions"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a FEN position")
    analyze_parser.add_argument("fen", type=str, help="FEN string to analyze")
    analyze_parser.add_argument("--depth", type=int, default=15)
    analyze_parser.add_argument("--multipv", type=int, default=1)
    analyze_parser.add_argument("--engine", type=str, default=None,
                                help="Engine binary (default: auto-detect)")

    args = parser.parse_args()

    if args.command != "analyze":
        parser.print_help()
        sys.exit(1)

    from chess_puzzles.config import configure_logging

    configure_logging()
    try:
        output = asyncio.run(
            _cli_analyze(args.fen, args.depth, args.multipv, args.engine)
        )
    except (ChessPuzzlesError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(output, indent=2))


if __name__ == "__main__":
    main()
