"""
Core module for trackmaster.

This module provides the foundational components used throughout the application:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - database: Thread-safe SQLite job store
    - models: The Job record and id generation
    - dispatcher: Bounded-concurrency batch runner
    - logger: Logging system with multiple outputs
    - progress: Rich progress bars

Usage:
    from trackmaster.core import (
        Config, load_config,
        Database, Job,
        Dispatcher, DispatchOptions, RunContext,
        setup_logging, get_logger,
        TrackmasterError, ConfigError, DatabaseError
    )
"""

from trackmaster.core.config import (
    Config,
    DatabaseConfig,
    OutputConfig,
    ProcessConfig,
    StorageConfig,
    ToolsConfig,
    load_config,
)
from trackmaster.core.database import Database
from trackmaster.core.dispatcher import (
    DispatchOptions,
    DispatchStats,
    Dispatcher,
    RunContext,
)
from trackmaster.core.exceptions import (
    ConfigError,
    DatabaseError,
    DecodeError,
    DispatchError,
    MissingReferenceError,
    NoJobsAvailableError,
    RunCancelledError,
    StorageError,
    ToolError,
    ToolTimeoutError,
    TooManyErrorsError,
    TrackmasterError,
)
from trackmaster.core.logger import (
    get_logger,
    log_job_failure,
    setup_logging,
    shutdown_logging,
)
from trackmaster.core.models import Job, new_job_id

__all__ = [
    # Config
    "Config",
    "DatabaseConfig",
    "OutputConfig",
    "ProcessConfig",
    "StorageConfig",
    "ToolsConfig",
    "load_config",
    # Database / models
    "Database",
    "Job",
    "new_job_id",
    # Dispatcher
    "Dispatcher",
    "DispatchOptions",
    "DispatchStats",
    "RunContext",
    # Exceptions
    "TrackmasterError",
    "ConfigError",
    "DatabaseError",
    "DecodeError",
    "ToolError",
    "ToolTimeoutError",
    "StorageError",
    "MissingReferenceError",
    "DispatchError",
    "NoJobsAvailableError",
    "TooManyErrorsError",
    "RunCancelledError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_job_failure",
    "shutdown_logging",
]
