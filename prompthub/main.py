"""Console entry point: configure logging, then hand over to the CLI."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .cli import app
from .config import get_settings

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUPS = 3

# Libraries that log per-request or per-download at INFO
_NOISY_LOGGERS = ("sentence_transformers", "transformers", "httpx", "urllib3")

_FALLBACK_LOG_FILE = Path.home() / ".prompthub" / "data" / "prompthub.log"


def setup_logging() -> None:
    """Send everything to the rotating log file and warnings to stderr.

    The file keeps DEBUG detail (model load timings, stale query drops,
    repair sweeps); the terminal only shows what a user should act on.
    A broken environment (bad PROMPTHUB_* value) still gets a log file.
    """
    try:
        settings = get_settings()
        log_file, log_level = settings.log_file, settings.log_level
    except Exception as e:
        print(f"prompthub: ignoring invalid settings for logging: {e}", file=sys.stderr)
        log_file, log_level = _FALLBACK_LOG_FILE, "INFO"

    log_file.parent.mkdir(parents=True, exist_ok=True)

    to_file = RotatingFileHandler(
        log_file,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    to_file.setLevel(logging.DEBUG)
    to_file.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    to_stderr = logging.StreamHandler()
    to_stderr.setLevel(logging.WARNING)
    to_stderr.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level))
    root.addHandler(to_file)
    root.addHandler(to_stderr)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def main() -> None:
    """`prompthub` console script."""
    setup_logging()
    app()


if __name__ == "__main__":
    main()
