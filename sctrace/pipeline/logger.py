"""Structured logging for pipeline runs."""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name for terminal output."""

    def __init__(self, fmt: str, datefmt: str, colors: Dict[str, str]):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colors = colors

    def format(self, record: logging.LogRecord) -> str:
        # Color a copy so file handlers sharing the record stay plain
        record = logging.makeLogRecord(record.__dict__)
        color = self.colors.get(record.levelname, self.colors["RESET"])
        record.levelname = f"{color}{record.levelname}{self.colors['RESET']}"
        return super().format(record)


class PipelineLogger:
    """Logging front-end for a pipeline run.

    Writes a timestamped run log (when ``log_dir`` is given) and colored
    console output, with structured events for stage start, completion,
    cache hits, failures and collected diagnostics.

    Parameters
    ----------
    log_dir : str or Path, optional
        Directory for the run log file; console only when None
    log_level : str
        Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    log_name : str, optional
        Logger name. Default: "sctrace"

    Attributes
    ----------
    log_file : Path or None
        Path to the run log file
    logger : logging.Logger
        Underlying logger, passed on to the stage engines

    Example
    -------
    >>> plog = PipelineLogger("logs/", log_level="INFO")
    >>> plog.setup()
    >>> plog.log_stage_start("qc", "Cell Quality Control")
    >>> plog.log_stage_complete("qc", 3.4)
    """

    COLORS = {
        "DEBUG": "\033[0;36m",
        "INFO": "\033[0;34m",
        "WARNING": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[1;31m",
        "RESET": "\033[0m",
    }

    def __init__(
        self,
        log_dir: Optional[Any] = None,
        log_level: str = "INFO",
        log_name: str = "sctrace",
    ):
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.log_file: Optional[Path] = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.log_file = self.log_dir / f"sctrace_run_{timestamp}.log"

        self.log_level = getattr(logging, log_level.upper())
        self.logger = logging.getLogger(log_name)
        self.logger.setLevel(self.log_level)

    def setup(self, console: bool = True) -> "PipelineLogger":
        """Attach the file and console handlers, replacing earlier ones."""
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if self.log_file is not None:
            file_handler = logging.FileHandler(self.log_file, mode="w", encoding="utf-8")
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(
                logging.Formatter(
                    fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                    datefmt="%Y-%m-%d %H:%M:%S",
                )
            )
            self.logger.addHandler(file_handler)

        if console:
            console_handler = logging.StreamHandler(sys.stdout)
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
        separator = "=" * 80
        self.logger.info(separator)
        self.logger.info("Starting stage %s: %s", stage_id, stage_name)
        self.logger.info(separator)

    def log_stage_complete(
        self,
        stage_id: str,
        duration: float,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log successful completion of a stage.

        Parameters
        ----------
        stage_id : str
            Stage identifier
        duration : float
            Execution time in seconds
        summary : Dict[str, Any], optional
            Scalar facts about the stage output, logged as key=value pairs
        """
        self.logger.info(
            "Stage %s completed in %s", stage_id, self.format_duration(duration)
        )
        if summary:
            facts = ", ".join(
                f"{k}={v}" for k, v in summary.items() if not isinstance(v, (dict, list))
            )
            if facts:
                self.logger.info("  %s", facts)

    def log_stage_cached(self, stage_id: str, key: str) -> None:
        self.logger.info("Stage %s reused cached artifact %s", stage_id, key[:12])

    def log_stage_error(self, stage_id: str, error: Any) -> None:
        self.logger.error("Stage %s failed: %s", stage_id, error)

    def log_diagnostics(self, report: Any) -> None:
        """Log a one-line summary of a diagnostic report."""
        if not len(report):
            self.logger.info("No diagnostics recorded")
            return
        counts = report.counts()
        self.logger.warning(
            "%d diagnostics recorded (%s)",
            len(report),
            ", ".join(f"{kind}: {n}" for kind, n in counts.items()),
        )

    def log_info(self, message: str) -> None:
        self.logger.info(message)

    def log_warning(self, message: str) -> None:
        self.logger.warning(message)

    @staticmethod
    def format_duration(seconds: float) -> str:
        """Format a duration in seconds.

        Returns
        -------
        str
            Formatted string (e.g., "45.2s", "1m 23s", "2h 15m")
        """
        if seconds < 60:
            return f"{seconds:.1f}s"
        if seconds < 3600:
            return f"{int(seconds // 60)}m {int(seconds % 60)}s"
        return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"
