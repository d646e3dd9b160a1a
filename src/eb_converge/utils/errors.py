"""Error taxonomy for convergence runs."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError
from eb_converge.utils.logging import get_logger

logger = get_logger(__name__)


# Error codes that mean "the resource does not exist". These drive the
# Absent outcome and are never surfaced as failures.
NOT_FOUND_CODES = frozenset({
    '404',
    'NoSuchBucket',
    'NoSuchEntity',
    'NoSuchHostedZone',
    'NoSuchCORSConfiguration',
    'NoSuchPublicAccessBlockConfiguration',
    'ResourceNotFoundException',
    'DBInstanceNotFound',
    'DBInstanceNotFoundFault',
    'DBSubnetGroupNotFoundFault',
    'InvalidGroup.NotFound',
    'LoadBalancerNotFound',
    'ListenerNotFound',
})


def error_code(error: ClientError) -> str:
    """Extract the AWS error code from a ClientError."""
    return error.response.get('Error', {}).get('Code', 'Unknown')


def is_not_found(error: ClientError) -> bool:
    """Return True if the ClientError reports a missing resource."""
    return error_code(error) in NOT_FOUND_CODES


class ErrorCategory(Enum):
    """Categories of errors that can occur during a convergence run."""
    CONFIGURATION = "configuration"
    AWS = "aws"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    DEPENDENCY = "dependency"
    PROVISIONING = "provisioning"
    DIVERGENCE = "divergence"
    DECLINED = "declined"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"
    WARNING = "warning"  # Reported, run continues
    INFO = "info"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_service: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class ConvergenceError(Exception):
    """Base exception for convergence errors."""

    fatal = True

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize convergence error.

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
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            'message': self.message,
            'category': self.category.value,
            'severity': self.severity.value,
            'fatal': self.fatal,
            'context': {
                'resource_id': self.context.resource_id,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'aws_service': self.context.aws_service,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(ConvergenceError):
    """Invalid or missing desired configuration, raised before any AWS call."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class CredentialError(ConvergenceError):
    """AWS credentials are missing or invalid."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CREDENTIAL,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class TransientAPIError(ConvergenceError):
    """Unexpected AWS API failure. Not retried; re-running is the recovery path."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.AWS, **kwargs):
        super().__init__(
            message,
            category=category,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class DependencyError(ConvergenceError):
    """A prerequisite resource could not be resolved."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ProvisioningError(ConvergenceError):
    """A write completed but left the resource in a failed state."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.PROVISIONING,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PolicyDivergenceWarning(ConvergenceError):
    """Observed state differs in a way that is never applied automatically."""

    fatal = False

    def __init__(self, message: str, changed_fields=None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DIVERGENCE,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )
        self.changed_fields = frozenset(changed_fields or ())


class UserDeclinedError(ConvergenceError):
    """The operator declined a confirmation prompt."""

    fatal = False

    def __init__(self, message: str, changed_fields=None, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DECLINED,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )
        self.changed_fields = frozenset(changed_fields or ())


class ResourceNotReadyWarning(ConvergenceError):
    """A prerequisite is not in a writable state yet; a later run picks it up."""

    fatal = False

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.DEPENDENCY,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class ErrorHandler:
    """Converts AWS and SDK exceptions into ConvergenceErrors."""

    AWS_ERROR_MAPPING = {
        'InvalidClientTokenId': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS credentials are invalid or expired',
            'suggestions': [
                'Check that your AWS credentials are correctly configured',
                'Verify credentials using: aws sts get-caller-identity',
            ]
        },
        'ExpiredToken': {
            'category': ErrorCategory.CREDENTIAL,
            'message': 'AWS session token has expired',
            'suggestions': [
                'Refresh your AWS session credentials',
                'Re-authenticate with your identity provider',
            ]
        },
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you have the required permissions for this operation',
            ]
        },
        'UnauthorizedOperation': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Operation not authorized',
            'suggestions': [
                'Add the required IAM permission for this operation',
                'Verify you are operating in the correct AWS region',
            ]
        },
        'LimitExceeded': {
            'category': ErrorCategory.AWS,
            'message': 'AWS service limit exceeded',
            'suggestions': [
                'Request a service limit increase through AWS Support',
                'Review and clean up unused resources',
            ]
        },
        'Throttling': {
            'category': ErrorCategory.AWS,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Wait a few moments and re-run; every step is idempotent',
            ]
        },
        'InvalidParameterValue': {
            'category': ErrorCategory.CONFIGURATION,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check the configured values against the AWS service limits',
            ]
        },
        'ValidationError': {
            'category': ErrorCategory.CONFIGURATION,
            'message': 'Invalid parameter or configuration',
            'suggestions': [
                'Review the error message for specific validation failures',
            ]
        },
    }

    def __init__(self):
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> ConvergenceError:
        """Handle an exception and convert it to a ConvergenceError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            ConvergenceError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, ConvergenceError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
            return CredentialError(
                message='No usable AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        return ConvergenceError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.CRITICAL,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_aws_error(
        self,
        error: ClientError,
        context: ErrorContext
    ) -> TransientAPIError:
        code = error_code(error)
        message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = context.aws_operation or getattr(error, 'operation_name', None)

        info = self.AWS_ERROR_MAPPING.get(code)
        if info:
            return TransientAPIError(
                message=f"{info['message']}: {message}",
                category=info['category'],
                context=context,
                cause=error,
                suggestions=info['suggestions']
            )

        return TransientAPIError(
            message=f"AWS Error ({code}): {message}",
            context=context,
            cause=error,
            suggestions=[
                'Re-run the convergence once the underlying issue is resolved',
                f'AWS Request ID: {context.request_id}',
            ]
        )

    def log_error(self, error: ConvergenceError):
        """Log an error with the level matching its severity."""
        log_message = error.to_user_message()

        if error.severity in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR):
            self.logger.error(log_message)
        elif error.severity == ErrorSeverity.WARNING:
            self.logger.warning(log_message)
        else:
            self.logger.info(log_message)

        self.logger.debug(f"Error details: {error.to_dict()}")


error_handler = ErrorHandler()
