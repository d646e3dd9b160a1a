"""Utility modules for logging, AWS client management, and helpers."""

from eb_converge.utils.aws_client import AWSClientManager, AWSCredentials
from eb_converge.utils.confirm import Confirmer, PromptConfirmer, StaticConfirmer
from eb_converge.utils.errors import (
    NOT_FOUND_CODES,
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    ConvergenceError,
    ConfigurationError,
    CredentialError,
    TransientAPIError,
    DependencyError,
    ProvisioningError,
    PolicyDivergenceWarning,
    UserDeclinedError,
    ResourceNotReadyWarning,
    ErrorHandler,
    error_handler,
    is_not_found,
)
from eb_converge.utils.logging import get_logger, setup_logging, LogContext
from eb_converge.utils.polling import BoundedPoller, PollResult, PollStatus

__all__ = [
    # AWS Client
    'AWSClientManager',
    'AWSCredentials',

    # Confirmation
    'Confirmer',
    'PromptConfirmer',
    'StaticConfirmer',

    # Errors
    'NOT_FOUND_CODES',
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'ConvergenceError',
    'ConfigurationError',
    'CredentialError',
    'TransientAPIError',
    'DependencyError',
    'ProvisioningError',
    'PolicyDivergenceWarning',
    'UserDeclinedError',
    'ResourceNotReadyWarning',
    'ErrorHandler',
    'error_handler',
    'is_not_found',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',

    # Polling
    'BoundedPoller',
    'PollResult',
    'PollStatus',
]
