"""
Exception classes for trackmaster.

This module defines all custom exceptions used throughout the application.
Each exception is designed to provide clear, actionable error messages
and to distinguish between different failure modes.

Exception Hierarchy:
    TrackmasterError (base)
        ConfigError - Configuration file issues (fatal, raised at startup)
        DatabaseError - SQLite job store issues (fatal)
        DecodeError - Audio could not be decoded (permanent per-job)
        ToolError - External tool failed (transient per-job)
            ToolTimeoutError - External tool exceeded its time budget
        StorageError - Blob store upload/download failed (transient per-job)
        MissingReferenceError - Job lacks a required upstream reference
        DispatchError - Batch run could not continue
            NoJobsAvailableError - The very first page was empty
            TooManyErrorsError - Consecutive failures exceeded the threshold
            RunCancelledError - The run (or a job) observed cancellation
"""


class TrackmasterError(Exception):
    """
    Base exception for all trackmaster errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch all trackmaster errors with a single
    except clause if desired.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (e.g., job id, paths).

    Example:
        try:
            # some operation
        except TrackmasterError as e:
            logger.error(f"Operation failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'job_id': Job identifier involved in the error
                     - 'path': File that caused the error
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(TrackmasterError):
    """
    Raised when there's an issue with the configuration.

    This is a CRITICAL error that should stop program execution before
    any job is dispatched.

    Common causes:
        - config.yaml not found or has invalid YAML syntax
        - Invalid field values (e.g., negative concurrency)
        - short_fade_out greater than long_fade_out
        - Unknown blob storage type
    """
    pass


class DatabaseError(TrackmasterError):
    """
    Raised when there's an issue with the SQLite job store.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - Parent directory of the database file missing
        - Schema version mismatch
        - Permission denied / disk full
    """
    pass


class DecodeError(TrackmasterError):
    """
    Raised when an audio asset cannot be decoded to PCM.

    This is a PERMANENT per-job error: retrying the same bytes will fail
    the same way. The job is left unprocessed for manual follow-up.

    Common causes:
        - Malformed or truncated file
        - Unsupported channel layout (more than two channels)
        - Remote source could not be fetched
    """
    pass


class ToolError(TrackmasterError):
    """
    Raised when an external tool (ffmpeg, aubio, phase_limiter) fails.

    This is a TRANSIENT per-job error. It is not retried within the job and
    counts toward the dispatcher's consecutive-error breaker.

    Example:
        raise ToolError(
            "aubio: no beats found",
            details={'args': ['aubio', 'beat', '/tmp/x.mp3']}
        )
    """
    pass


class ToolTimeoutError(ToolError):
    """Raised when an external tool exceeds its time budget and is killed."""
    pass


class StorageError(TrackmasterError):
    """
    Raised when the blob store cannot store or retrieve a file.

    Common causes:
        - Network failure after all retries
        - Invalid reference string
        - Telegram API answered with ok=false
    """
    pass


class MissingReferenceError(TrackmasterError):
    """
    Raised when a job lacks an upstream reference it needs.

    This is a PERMANENT per-job error, e.g. reprocessing a job that was
    never mastered, or downloading a job without a wave image.
    """
    pass


class DispatchError(TrackmasterError):
    """
    Raised when a batch run cannot continue.

    Subclasses distinguish the reasons a run stops with an error.
    """
    pass


class NoJobsAvailableError(DispatchError):
    """Raised when the first page of a run is empty."""
    pass


class TooManyErrorsError(DispatchError):
    """
    Raised when consecutive job failures exceed the error threshold.

    The last observed job error is chained as __cause__ and kept in
    details['last_error'].
    """
    pass


class RunCancelledError(DispatchError):
    """
    Raised when cancellation is observed.

    Raised by the dispatcher loop when the run is cancelled, and by
    workers / subprocess calls that notice the cancellation signal (in
    which case it counts as one failure toward the breaker).
    """
    pass
