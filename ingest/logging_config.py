"""Logging configuration for the ingestion pipeline.

Provides structured logging with both console and file output, plus the
per-run text log that records one line per processed product URL.
"""

import json
import logging
import sys
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

__all__ = [
    "setup_logging",
    "get_logger",
    "log_event",
    "RunLog",
    "RunSummary",
    "LOG_DIR",
]

# Log directory relative to the working directory
LOG_DIR = Path("logs")


class JSONLFileHandler(logging.Handler):
    """Custom handler that writes structured JSONL logs."""

    def __init__(self, log_dir: Path, prefix: str = "ingest"):
        super().__init__()
        self.log_dir = log_dir
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.prefix = prefix
        self._current_date: Optional[str] = None

    def _get_log_file(self) -> Path:
        """Get log file path, rotating daily."""
        today = datetime.now().strftime("%Y%m%d")
        self._current_date = today
        return self.log_dir / f"{self.prefix}_{today}.jsonl"

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = {
                "timestamp": datetime.now().isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
            }
            if hasattr(record, "event_type"):
                entry["event_type"] = record.event_type
            if hasattr(record, "extra_data"):
                entry.update(record.extra_data)

            with open(self._get_log_file(), "a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except Exception:
            self.handleError(record)


class ColoredConsoleHandler(logging.StreamHandler):
    """Console handler with colored output for better readability."""

    COLORS = {
        "DEBUG": "\033[36m",      # Cyan
        "INFO": "\033[32m",       # Green
        "WARNING": "\033[33m",    # Yellow
        "ERROR": "\033[31m",      # Red
        "CRITICAL": "\033[35m",   # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if hasattr(self.stream, "isatty") and self.stream.isatty():
            color = self.COLORS.get(record.levelname, "")
            return f"{color}{message}{self.RESET}"
        return message


def setup_logging(
    level: int = logging.INFO,
    log_to_file: bool = True,
    log_to_console: bool = True,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Set up logging for the pipeline.

    Args:
        level: Logging level (default: INFO)
        log_to_file: Whether to log to JSONL file
        log_to_console: Whether to log to console
        log_dir: Custom log directory (default: ./logs)

    Returns:
        Configured root logger for the ingest package
    """
    logger = logging.getLogger("ingest")
    logger.setLevel(level)
    logger.handlers.clear()

    if log_to_console:
        console_handler = ColoredConsoleHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s",
            datefmt="%H:%M:%S",
        ))
        logger.addHandler(console_handler)

    if log_to_file:
        file_handler = JSONLFileHandler(log_dir or LOG_DIR)
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = "ingest") -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (will be prefixed with 'ingest.')

    Returns:
        Logger instance
    """
    if name == "ingest":
        return logging.getLogger("ingest")
    return logging.getLogger(f"ingest.{name}")


def log_event(
    event_type: str,
    data: Dict[str, Any],
    level: int = logging.INFO,
    logger_name: str = "ingest",
) -> None:
    """Log a structured pipeline event.

    Args:
        event_type: Type of event (e.g., 'page_error', 'product_saved', 'run_complete')
        data: Event-specific data
        level: Log level
        logger_name: Logger to use
    """
    logger = get_logger(logger_name)
    if not logger.isEnabledFor(level):
        return

    record = logger.makeRecord(
        logger.name,
        level,
        "(ingest)",
        0,
        data.get("message", event_type),
        (),
        None,
    )
    record.event_type = event_type
    record.extra_data = {k: v for k, v in data.items() if k != "message"}

    logger.handle(record)


# =============================================================================
# Per-run log
# =============================================================================

@dataclass
class RunSummary:
    """Counters reported at the end of a run."""

    discovered: int = 0
    processed: int = 0
    succeeded: int = 0
    skipped: int = 0
    errored: int = 0
    appended: int = 0
    descriptions_ok: int = 0
    images_ok: int = 0
    specs_ok: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    def lines(self) -> List[str]:
        return [
            f"Total discovered: {self.discovered}",
            f"Total processed: {self.processed}",
            f"Succeeded: {self.succeeded}",
            f"Skipped: {self.skipped}",
            f"Errors: {self.errored}",
            f"Appended: {self.appended}",
            f"Descriptions ok: {self.descriptions_ok}",
            f"Images ok: {self.images_ok}",
            f"Specs ok: {self.specs_ok}",
        ]


class RunLog:
    """Append-only text log for one pipeline run.

    Lines are written immediately so an interrupted run still leaves a
    readable trace. Safe to call from worker threads.
    """

    def __init__(self, log_dir: Path, name: str = "import_run", enabled: bool = True):
        self.enabled = enabled
        self.started = datetime.now()
        stamp = self.started.strftime("%Y%m%d_%H%M%S")
        self.path = Path(log_dir) / f"{name}_{stamp}.log"
        self.lines: List[str] = []
        self._lock = threading.Lock()
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def write(self, line: str) -> None:
        with self._lock:
            self.lines.append(line)
            if self.enabled:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")

    def product_line(
        self,
        index: int,
        slug: str,
        checks: Dict[str, bool],
        status: str = "",
        reasons: Optional[List[str]] = None,
    ) -> str:
        """Record a product outcome like ``[3] slug ✓ description ✗ specs (skipped: specs<2)``."""
        marks = " ".join(f"{'✓' if ok else '✗'} {name}" for name, ok in checks.items())
        line = f"[{index}] {slug or 'no-slug'} {marks}"
        if reasons:
            line += f" (skipped: {', '.join(reasons)})"
        elif status:
            line += f" {status}"
        self.write(line)
        return line

    def error_line(self, index: int, url: str, error: BaseException) -> str:
        line = f"[{index}] error {url} => {error}"
        self.write(line)
        return line

    def skipped_lines(self, reason: str) -> List[str]:
        """Lines recorded so far that were skipped for ``reason``."""
        return [line for line in self.lines if "(skipped:" in line and reason in line]

    def summary(self, summary: RunSummary) -> None:
        finished = datetime.now()
        for line in summary.lines():
            self.write(line)
        self.write(f"Started: {self.started.isoformat()}")
        self.write(f"Finished: {finished.isoformat()}")
