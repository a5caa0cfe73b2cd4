"""Error handling framework for planning and provisioning operations."""

from typing import Optional, Dict, Any, List, Sequence
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import (
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
    NoCredentialsError,
    PartialCredentialsError,
)
from stackpilot.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    PLAN = "plan"
    DRIVER = "driver"
    NETWORK = "network"
    THROTTLING = "throttling"
    PERMISSION = "permission"
    CREDENTIAL = "credential"
    STATE = "state"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Resource failed but independent branches continue
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class EngineError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[BaseException] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize engine error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []
        if cause is not None and self.__cause__ is None:
            self.__cause__ = cause

    @property
    def resource_id(self) -> Optional[str]:
        """Identifier of the resource the error originated from."""
        return self.context.resource_id

    def cause_chain(self) -> List[str]:
        """Render this error and its chained causes, outermost first."""
        chain = []
        seen = set()
        current: Optional[BaseException] = self
        while current is not None and id(current) not in seen:
            seen.add(id(current))
            text = current.message if isinstance(current, EngineError) else str(current)
            chain.append(f"{type(current).__name__}: {text}")
            current = current.__cause__ or current.__context__
        return chain

    def to_user_message(self) -> str:
        """Convert error to user-friendly message.

        Returns:
            Formatted error message for display to user
        """
        lines = [f"{self.severity.value.upper()}: {self.message}"]

        if self.context.resource_id:
            lines.append(f"   Resource: {self.context.resource_id}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")

        for cause in self.cause_chain()[1:]:
            lines.append(f"   Caused by: {cause}")

        if self.suggestions:
            lines.append("Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization.

        Returns:
            Dictionary representation of the error
        """
        return {
            'type': type(self).__name__,
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause_chain': self.cause_chain()[1:],
            'suggestions': self.suggestions
        }


class ValidationErrorKind(Enum):
    """Why a document failed validation."""
    DUPLICATE_IDENTIFIER = "duplicate_identifier"
    UNKNOWN_REFERENCE = "unknown_reference"
    UNKNOWN_TYPE = "unknown_type"
    DUPLICATE_KEY = "duplicate_key"
    MISSING_VARIABLE = "missing_variable"
    MALFORMED_DOCUMENT = "malformed_document"


class ValidationError(EngineError):
    """Malformed resource document. Raised before any provider call."""

    def __init__(
        self,
        message: str,
        kind: ValidationErrorKind,
        resource_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault('context', ErrorContext(resource_id=resource_id, operation='validate'))
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.kind = kind


class PlanErrorKind(Enum):
    """Why a plan could not be compiled."""
    CYCLE_DETECTED = "cycle_detected"
    TYPE_CHANGED = "type_changed"


class PlanError(EngineError):
    """Plan compilation failure. Raised before any provider call."""

    def __init__(
        self,
        message: str,
        kind: PlanErrorKind,
        identifiers: Sequence[str] = (),
        **kwargs
    ):
        identifiers = list(identifiers)
        kwargs.setdefault(
            'context',
            ErrorContext(resource_id=identifiers[0] if identifiers else None, operation='plan')
        )
        super().__init__(
            message,
            category=ErrorCategory.PLAN,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.kind = kind
        self.identifiers = identifiers


class DriverError(EngineError):
    """Failure reported by a resource driver."""

    transient = False

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.DRIVER)
        super().__init__(message, severity=ErrorSeverity.ERROR, **kwargs)


class TransientDriverError(DriverError):
    """Retryable driver failure (network, throttling, timeout)."""

    transient = True


class PermanentDriverError(DriverError):
    """Non-retryable driver failure (validation, permission, conflict)."""


class DriverNotFoundError(EngineError):
    """No driver is registered for a resource type."""

    def __init__(self, type_tag: str, **kwargs):
        kwargs.setdefault('context', ErrorContext(resource_type=type_tag))
        super().__init__(
            f"No driver registered for resource type: {type_tag}",
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )
        self.type_tag = type_tag


class ReferenceResolutionError(EngineError):
    """A reference could not be resolved from a dependency's outputs."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VALIDATION,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class StateStoreError(EngineError):
    """State persistence failure.

    When raised after a successful provider call, the real resource may
    have changed while its record is stale.
    """

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.STATE,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ConfigurationError(EngineError):
    """Error in configuration file or settings."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ErrorHandler:
    """Classifies exceptions raised by drivers into transient and permanent failures."""

    # AWS error codes that should trigger a retry
    TRANSIENT_ERROR_CODES = {
        'RequestTimeout',
        'RequestTimeoutException',
        'ServiceUnavailable',
        'ThrottlingException',
        'TooManyRequestsException',
        'RequestLimitExceeded',
        'Throttling',
        'RequestThrottled',
        'SlowDown',
        'ProvisionedThroughputExceededException',
        'LimitExceededException',
        'InternalError',
        'InternalFailure',
        'ServiceException',
    }

    # Mapping of non-retryable AWS error codes to categories and suggestions
    PERMANENT_ERROR_MAPPING = {
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation',
            ]
        },
        'AccessDeniedException': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct AWS region'
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
            ]
        },
        'ValidationException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter or configuration',
            'suggestions': [
                'Review the error message for specific validation failures',
                'Verify all required properties are provided'
            ]
        },
        'InvalidParameterException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check property format and constraints',
            ]
        },
        'ResourceInUseException': {
            'category': ErrorCategory.DRIVER,
            'message': 'Resource is currently in use',
            'suggestions': [
                'Check for dependents that still use this resource',
            ]
        },
        'BucketAlreadyExists': {
            'category': ErrorCategory.DRIVER,
            'message': 'Bucket name is already taken',
            'suggestions': [
                'Bucket names are global; choose a different BucketName',
            ]
        },
    }

    # Network-related exceptions that should trigger a retry
    TRANSIENT_EXCEPTIONS = (
        ConnectionError,
        TimeoutError,
        BotoConnectionError,
        HTTPClientError,
    )

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def classify(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None
    ) -> EngineError:
        """Convert an exception into an engine error.

        Args:
            error: The exception to classify
            context: Additional context about where the error occurred

        Returns:
            TransientDriverError for retryable failures, PermanentDriverError
            for other driver failures, or the error itself when it already is
            an EngineError
        """
        context = context or ErrorContext()

        if isinstance(error, EngineError):
            if error.context.resource_id is None:
                error.context.resource_id = context.resource_id
                error.context.resource_type = error.context.resource_type or context.resource_type
                error.context.operation = error.context.operation or context.operation
            return error

        if isinstance(error, ClientError):
            return self._classify_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return PermanentDriverError(
                f"AWS credentials are missing or incomplete: {error}",
                category=ErrorCategory.CREDENTIAL,
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile or in stackpilot.yaml',
                ]
            )

        if isinstance(error, self.TRANSIENT_EXCEPTIONS):
            return TransientDriverError(
                f"Network error: {error}",
                category=ErrorCategory.NETWORK,
                context=context,
                cause=error,
            )

        return PermanentDriverError(
            f"{type(error).__name__}: {error}",
            context=context,
            cause=error,
        )

    def _classify_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> DriverError:
        """Classify an AWS ClientError.

        Args:
            error: The ClientError
            context: Error context

        Returns:
            Categorized DriverError
        """
        error_code = error.response.get('Error', {}).get('Code', 'Unknown')
        error_message = error.response.get('Error', {}).get('Message', str(error))
        metadata = error.response.get('ResponseMetadata', {})
        status_code = metadata.get('HTTPStatusCode') or 0

        context.request_id = metadata.get('RequestId')

        if error_code in self.TRANSIENT_ERROR_CODES or status_code >= 500:
            category = ErrorCategory.THROTTLING if 'hrottl' in error_code else ErrorCategory.NETWORK
            return TransientDriverError(
                f"AWS Error ({error_code}): {error_message}",
                category=category,
                context=context,
                cause=error,
            )

        error_info = self.PERMANENT_ERROR_MAPPING.get(error_code)
        if error_info:
            return PermanentDriverError(
                f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=list(error_info['suggestions'])
            )

        return PermanentDriverError(
            f"AWS Error ({error_code}): {error_message}",
            context=context,
            cause=error,
            suggestions=[f'AWS Request ID: {context.request_id}'] if context.request_id else []
        )

    def log_error(self, error: EngineError):
        """Log an error with appropriate level.

        Args:
            error: The error to log
        """
        log_message = error.to_user_message()
        extra = {'resource_id': error.resource_id} if error.resource_id else {}

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message, extra=extra)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message, extra=extra)
        else:
            self.logger.info(log_message, extra=extra)

        self.logger.debug(f"Error details: {error.to_dict()}")


# Global error handler instance
error_handler = ErrorHandler()
