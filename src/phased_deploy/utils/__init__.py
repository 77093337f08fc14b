"""Utility modules for logging, errors, retries and cancellation."""

from phased_deploy.utils.retry import BackoffPolicy, RetryStrategy, with_retry
from phased_deploy.utils.errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    PlanError,
    CyclicDependencyError,
    UnknownDependencyError,
    ApplyError,
    ProbeTimeout,
    RollbackError,
    VerificationFailure,
    LeaseHeldError,
    ClusterError,
    OperationCancelled,
    ErrorHandler,
    error_handler
)
from phased_deploy.utils.cancellation import CancellationToken, install_signal_handlers
from phased_deploy.utils.logging import get_logger, setup_logging, LogContext

__all__ = [
    # Retry
    'BackoffPolicy',
    'RetryStrategy',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorSeverity',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'PlanError',
    'CyclicDependencyError',
    'UnknownDependencyError',
    'ApplyError',
    'ProbeTimeout',
    'RollbackError',
    'VerificationFailure',
    'LeaseHeldError',
    'ClusterError',
    'OperationCancelled',
    'ErrorHandler',
    'error_handler',

    # Cancellation
    'CancellationToken',
    'install_signal_handlers',

    # Logging
    'get_logger',
    'setup_logging',
    'LogContext',
]
