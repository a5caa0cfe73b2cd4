"""Utility modules for logging, error handling, and retries."""

from stackpilot.utils.retry import RetryStrategy
from stackpilot.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    EngineError,
    ValidationError,
    ValidationErrorKind,
    PlanError,
    PlanErrorKind,
    DriverError,
    TransientDriverError,
    PermanentDriverError,
    DriverNotFoundError,
    ReferenceResolutionError,
    StateStoreError,
    ConfigurationError,
    ErrorHandler,
    error_handler
)
from stackpilot.utils.logging import get_logger, setup_logging

__all__ = [
    # Retry
    'RetryStrategy',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'EngineError',
    'ValidationError',
    'ValidationErrorKind',
    'PlanError',
    'PlanErrorKind',
    'DriverError',
    'TransientDriverError',
    'PermanentDriverError',
    'DriverNotFoundError',
    'ReferenceResolutionError',
    'StateStoreError',
    'ConfigurationError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'get_logger',
    'setup_logging',
]
