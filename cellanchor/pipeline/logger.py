"""Structured logging for analysis runs."""

import logging
import sys
from pathlib import Path
from typing import Optional

from ..io.logging import get_timestamped_log_path


class ColoredFormatter(logging.Formatter):
    """Formatter with color support for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        color = self.colors.get(record.levelname, self.colors["RESET"])
        record = logging.makeLogRecord(record.__dict__)
        record.levelname = f"{color}{record.levelname}{self.colors['RESET']}"
        return super().format(record)


class PipelineLogger:
    """Structured logging for a pipeline run.

    Provides file logging (detailed, persistent) and console logging
    (colored) with stage start/complete/error records. Library modules
    log under the ``cellanchor`` namespace, so their records reach the
    same handlers.

    Parameters
    ----------
    log_dir : str, optional
        Directory for log files. None logs to the console only.
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str
        Logger name. Default: "cellanchor"
    console : bool
        Attach a colored console handler

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Quality control")
    >>> logger.log_stage_complete("qc", 45.2)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_name: str = "cellanchor",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            self.log_file = get_timestamped_log_path(self.log_dir / f"{log_name}.log")

        self.log_level = getattr(logging, log_level.upper())
        self.console = console
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.handlers = []

    def setup(self) -> "PipelineLogger":
        """Configure file and console handlers."""
        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(
                logging.Formatter(
                    fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(
                ColoredFormatter(
                    fmt="%(asctime)s - %(levelname)s - %(message)s",
                    datefmt="%H:%M:%S",
                    colors=self.COLORS,
                )
            )
            self.logger.addHandler(console_handler)
        return self

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        """Log the start of a stage."""
        separator = "=" * 72
        self.logger.info(separator)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)
        self.logger.info(separator)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        """Log successful completion of a stage."""
        self.logger.info(
            "Stage %s completed successfully in %s", stage_id, self.format_duration(duration)
        )

    def log_stage_error(self, stage_id: str, error: str) -> None:
        """Log a stage error."""
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_stage_skipped(self, stage_id: str, reason: str) -> None:
        """Log a stage that was not run."""
        self.logger.warning("Stage %s skipped: %s", stage_id, reason)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration in seconds (e.g., "45.2s", "1m 23s", "2h 15m")."""
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"
