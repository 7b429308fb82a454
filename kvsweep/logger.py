"""
Structured logging system for kvsweep.

Provides centralized logging with console and file outputs, plus counters
that summarize what a maintenance invocation did to the store.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks per-run metrics for the maintenance phases.
    """

    def __init__(
        self,
        name: str = "kvsweep",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: $KVSWEEP_LOG_DIR or logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()

        self.metrics = {
            "pages_fetched": 0,
            "records_scanned": 0,
            "records_deleted": 0,
            "records_skipped": 0,
            "rows_appended": 0,
            "flushes": 0,
            "flushes_skipped": 0,
            "errors_by_type": {},
            "phase_transitions": {},
        }

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path(os.getenv("KVSWEEP_LOG_DIR", "logs"))
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"kvsweep_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_page(self, keys: int):
        """Record one fetched page and the number of keys it held."""
        self.metrics["pages_fetched"] += 1
        self.metrics["records_scanned"] += keys

    def record_deleted(self, count: int = 1):
        self.metrics["records_deleted"] += count

    def record_skipped(self, count: int = 1):
        self.metrics["records_skipped"] += count

    def record_appended(self, count: int = 1):
        self.metrics["rows_appended"] += count

    def record_flush(self, flushed: bool):
        """Record an archive flush, or a flush skipped for configuration reasons."""
        if flushed:
            self.metrics["flushes"] += 1
        else:
            self.metrics["flushes_skipped"] += 1

    def record_error(self, error_type: str):
        if error_type not in self.metrics["errors_by_type"]:
            self.metrics["errors_by_type"][error_type] = 0
        self.metrics["errors_by_type"][error_type] += 1

    def record_transition(self, phase: str):
        """Record entry into a phase."""
        transitions = self.metrics["phase_transitions"]
        transitions[phase] = transitions.get(phase, 0) + 1

    def get_metrics(self) -> dict:
        """Return current metrics."""
        metrics_copy = self.metrics.copy()
        scanned = metrics_copy["records_scanned"]
        if scanned > 0:
            metrics_copy["skip_rate"] = round(metrics_copy["records_skipped"] / scanned, 3)
        return metrics_copy

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Maintenance Session Metrics ===")
        self.info(f"Pages: {metrics['pages_fetched']} ({metrics['records_scanned']} keys scanned)")
        self.info(
            f"Deleted: {metrics['records_deleted']} | Appended: {metrics['rows_appended']} "
            f"| Skipped: {metrics['records_skipped']}"
        )
        self.info(f"Flushes: {metrics['flushes']} ({metrics['flushes_skipped']} skipped)")

        if metrics["phase_transitions"]:
            self.info("Phases entered:")
            for phase, count in metrics["phase_transitions"].items():
                self.info(f"  {phase}: {count}")

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "kvsweep",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
