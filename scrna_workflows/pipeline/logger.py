"""Structured logging for workflow execution."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from ..io.logging import log_json


class ColoredFormatter(logging.Formatter):
    """Custom formatter with color support for console output."""

    def __init__(self, fmt: str, datefmt: str, colors: dict):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        color = self.colors.get(levelname, self.colors["RESET"])
        reset = self.colors["RESET"]
        record.levelname = f"{color}{levelname}{reset}"
        return super().format(record)


class PipelineLogger:
    """Structured logging for workflow execution.

    Provides file logging (detailed, persistent) and console logging
    (colored, user-friendly) with structured events for stage
    start/complete/skip/error. Stage modules log through
    ``logging.getLogger(__name__)`` and reach these handlers through the
    package logger.

    Parameters
    ----------
    log_dir : str, optional
        Directory for log files. Without one only the console is used.
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str
        Logger name. Default: "scrna_workflows"
    console : bool
        Attach the colored console handler

    Example
    -------
    >>> logger = PipelineLogger("logs/", log_level="INFO")
    >>> logger.setup()
    >>> logger.log_stage_start("qc", "Quality control")
    >>> logger.log_stage_complete("qc", 4.2)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",  # Cyan
        "INFO": "\033[0;34m",  # Blue
        "WARNING": "\033[1;33m",  # Yellow
        "ERROR": "\033[0;31m",  # Red
        "CRITICAL": "\033[1;31m",  # Bold Red
        "RESET": "\033[0m",  # Reset
    }

    def __init__(
        self,
        log_dir: Optional[str] = None,
        log_level: str = "INFO",
        log_name: str = "scrna_workflows",
        console: bool = True,
    ):
        self.log_dir = Path(log_dir) if log_dir else None
        self.log_file: Optional[Path] = None
        self.summary_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = self.log_dir / f"workflow_{timestamp}.log"
            self.summary_file = self.log_dir / f"stage_summaries_{timestamp}.jsonl"

        self.console = console
        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)
        self.logger.handlers = []

    def setup(self) -> None:
        """Configure logging handlers."""
        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(self._get_file_formatter())
            self.logger.addHandler(file_handler)

        if self.console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(self._get_console_formatter())
            self.logger.addHandler(console_handler)

    def close(self) -> None:
        """Detach and close all handlers."""
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)

    def _get_file_formatter(self) -> logging.Formatter:
        return logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def _get_console_formatter(self) -> logging.Formatter:
        return ColoredFormatter(
            fmt="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
            colors=self.COLORS,
        )

    def log_stage_start(self, stage_id: str, stage_name: str) -> None:
        separator = "=" * 80
        self.logger.info(separator)
        self.logger.info(f"Starting Stage {stage_id}: {stage_name}")
        self.logger.info(separator)

    def log_stage_complete(self, stage_id: str, duration: float) -> None:
        duration_str = self.format_duration(duration)
        self.logger.info(f"Stage {stage_id} completed successfully in {duration_str}")

    def log_stage_skip(self, stage_id: str, reason: str) -> None:
        self.logger.info(f"[SKIP] Stage {stage_id}: {reason}")

    def log_stage_error(self, stage_id: str, error: str) -> None:
        self.logger.error(f"Stage {stage_id} failed: {error}")

    def log_stage_summary(self, stage_id: str, summary: Dict[str, Any]) -> None:
        """Log a stage's scalar diagnostics and append them to the summary file."""
        for key, value in summary.items():
            self.logger.info(f"  {key}: {value}")
        if self.summary_file is not None:
            log_json(
                self.summary_file,
                {"stage": stage_id, "timestamp": datetime.now().isoformat(), **summary},
            )

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    def log_debug(self, message: str) -> None:
        self.logger.debug(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format duration in seconds to human-readable string.

        Returns
        -------
        str
            Formatted string (e.g., "45.2s", "1m 23s", "2h 15m")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            mins = int(seconds // 60)
            secs = int(seconds % 60)
            return f"{mins}m {secs}s"
        else:
            hours = int(seconds // 3600)
            mins = int((seconds % 3600) // 60)
            return f"{hours}h {mins}m"
