"""Runtime settings read from the environment.

Every knob has a module-level default; environment variables override
them and CLI flags override both.

Variables:
    CHESS_PUZZLES_STOCKFISH      Explicit path to the engine binary.
    CHESS_PUZZLES_CATALOG        Path to the JSON puzzle catalog.
    CHESS_PUZZLES_INIT_TIMEOUT   Seconds allowed for uci/isready handshake.
    CHESS_PUZZLES_LOG_LEVEL      Logging level name for the CLIs.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = _PROJECT_ROOT / "data"

DEFAULT_CATALOG_PATH = DATA_DIR / "puzzles.json"
DEFAULT_INIT_TIMEOUT = 15.0
DEFAULT_QUIT_GRACE = 1.0
DEFAULT_LOG_LEVEL = "WARNING"


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for one CLI or server invocation."""

    stockfish_path: str | None
    catalog_path: Path
    init_timeout: float
    log_level: str


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger(__name__).warning(
            "Ignoring non-numeric %s=%r", name, value
        )
        return default


def load_settings() -> Settings:
    """Build Settings from environment variables and defaults.

    Returns:
        Frozen Settings instance.
    """
    return Settings(
        stockfish_path=os.environ.get("CHESS_PUZZLES_STOCKFISH") or None,
        catalog_path=Path(
            os.environ.get("CHESS_PUZZLES_CATALOG", str(DEFAULT_CATALOG_PATH))
        ),
        init_timeout=_env_float("CHESS_PUZZLES_INIT_TIMEOUT", DEFAULT_INIT_TIMEOUT),
        log_level=os.environ.get("CHESS_PUZZLES_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )


def configure_logging(settings: Settings | None = None) -> None:
    """Configure root logging for a CLI entry point."""
    settings = settings or load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
