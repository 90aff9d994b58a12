"""
Logging configuration for trackmaster.

This module sets up the logging system with multiple outputs:
    - Console: Real-time messages with tqdm-compatible formatting
    - log_full.log: Complete log of all events (DEBUG and above)
    - log_errors.log: Only ERROR and CRITICAL level messages
    - job_failures.log: Jobs that failed during a batch run, with the reason

The logging system follows the principle: everything to screen is also saved
to file, then filtered into specialized files.

Log File Locations:
    All log files are created in <output.directory>/logs. Each run gets its
    own timestamped set of files.

Usage:
    from trackmaster.core.logger import setup_logging, get_logger

    setup_logging(output_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Starting process run")
    log_job_failure(logger, "process", job.id, job.source, "aubio: no beats found")
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


# Log file name prefixes (created in output_dir/logs)
LOG_FULL_PREFIX = "log_full"
LOG_ERRORS_PREFIX = "log_errors"
JOB_FAILURES_PREFIX = "job_failures"

# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        colored_levelname = f"{color}{record.levelname}{Colors.RESET}"
        return f"{colored_levelname}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to console without breaking progress bars.

    Uses tqdm.write(), which prints above any active bar instead of
    interleaving with its carriage-return updates.

    Example:
        handler = TqdmLoggingHandler()
        handler.setFormatter(ColoredConsoleFormatter())
        logger.addHandler(handler)
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class JobFailureHandler(logging.Handler):
    """
    Handler that captures failed jobs for the job failures report.

    This handler listens for log records that carry job failure
    information and writes them to job_failures.log in a simple,
    human-readable format:

        [process] 00001718000000000001
        https://cdn.example.com/raw/1.mp3
        aubio: no beats found

    The handler looks for these extra fields in log records:
        - 'failed_job_id': The id of the job that failed
        - 'failed_job_command': The command that was running
        - 'failed_job_source': The job source (optional)
        - 'failed_job_reason': The error message

    Only records containing 'failed_job_id' are written to the report.
    logging.Handler.handle() holds the handler lock around emit(), so
    concurrent workers do not interleave entries.
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """
        Open the report file for writing.

        Called by setup_logging() after handler is created.
        """
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        if not hasattr(record, "failed_job_id"):
            return

        if self.report_file is None:
            return

        try:
            job_id = getattr(record, "failed_job_id")
            command = getattr(record, "failed_job_command", "?")
            source = getattr(record, "failed_job_source", "")
            reason = getattr(record, "failed_job_reason", "")

            self.report_file.write(f"[{command}] {job_id}\n")
            if source:
                self.report_file.write(f"{source}\n")
            self.report_file.write(f"{reason}\n\n")
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """
        Close the report file handle.

        Safe to call multiple times.
        """
        if self.report_file is not None:
            try:
                self.report_file.close()
            except OSError:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """
    Filter that only allows ERROR and CRITICAL level records.

    Used by the error log file handler to exclude DEBUG, INFO, and WARNING.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(output_dir: Path, debug: bool = False) -> Path:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded but before any other operations.

    Args:
        output_dir: Directory where log files will be created.
                    Logs are stored in a 'logs' subdirectory.
        debug: Also print DEBUG messages to the console.

    Returns:
        The logs directory.

    Behavior:
        1. Create output_dir/logs if it doesn't exist
        2. Generate timestamp for this run's log files
        3. Console handler (TqdmLoggingHandler), INFO or DEBUG
        4. log_full_{timestamp}.log with everything
        5. log_errors_{timestamp}.log filtered by ErrorOnlyFilter
        6. job_failures_{timestamp}.log fed by log_job_failure()

    Thread Safety:
        This function is NOT thread-safe. Call it once from the main
        thread before starting any worker threads.
    """
    logs_dir = output_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.handlers.clear()

    # Console handler (tqdm-compatible) with colors
    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    # Full log file handler
    full_handler = logging.FileHandler(
        logs_dir / f"{LOG_FULL_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    # Error-only log file handler
    error_handler = logging.FileHandler(
        logs_dir / f"{LOG_ERRORS_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    # Job failures report
    failures_handler = JobFailureHandler(logs_dir / f"{JOB_FAILURES_PREFIX}_{timestamp}.log")
    failures_handler.open()
    root_logger.addHandler(failures_handler)

    # Third-party DEBUG and INFO records are dropped everywhere
    for noisy in ("urllib3", "matplotlib", "PIL", "pydub"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logs_dir


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.
              This creates a hierarchy like 'trackmaster.core.dispatcher'.

    Note:
        Loggers obtained before setup_logging() is called will have no
        handlers and will not produce output.
    """
    return logging.getLogger(name)


def format_job_done_message(job_id: str, duration: float, flags: str) -> str:
    """Format a colored 'Mastered' message for a finished job."""
    status = f"{Colors.YELLOW}{flags}{Colors.RESET}" if flags else f"{Colors.GREEN}clean{Colors.RESET}"
    return (
        f"{Colors.GREEN}Mastered{Colors.RESET}: {job_id} "
        f"({duration:.1f}s, {status})"
    )


def log_job_failure(
    logger: logging.Logger,
    command: str,
    job_id: str,
    source: str,
    error_message: str
) -> None:
    """
    Log a job that failed during a batch run.

    Logs an ERROR level message and attaches the extra fields that
    JobFailureHandler uses to write to job_failures.log.

    Example:
        log_job_failure(
            logger,
            command="process",
            job_id=job.id,
            source=job.source,
            error_message="phase_limiter exited with status 1"
        )
    """
    logger.error(
        f"{command}: job {job_id} failed: {error_message}",
        extra={
            "failed_job_id": job_id,
            "failed_job_command": command,
            "failed_job_source": source,
            "failed_job_reason": error_message,
        }
    )


def shutdown_logging() -> None:
    """
    Properly shut down the logging system.

    Flushes and closes every root handler. This is typically called in a
    finally block; after calling it, logging will no longer produce output.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except OSError:
            pass
        root_logger.removeHandler(handler)
