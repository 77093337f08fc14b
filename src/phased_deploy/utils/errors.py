"""Error handling framework for orchestration runs."""

from typing import Optional, Dict, Any, List
from enum import Enum
from dataclasses import dataclass

from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as URLLibHTTPError

from phased_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a run."""
    CONFIGURATION = "configuration"
    PLAN = "plan"
    APPLY = "apply"
    PROBE = "probe"
    ROLLBACK = "rollback"
    VERIFICATION = "verification"
    LOCK = "lock"
    CLUSTER = "cluster"
    NETWORK = "network"
    PERMISSION = "permission"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    CRITICAL = "critical"  # Run cannot continue
    ERROR = "error"  # Stage failed, rollback follows
    WARNING = "warning"  # Non-fatal issue
    INFO = "info"  # Informational message


@dataclass
class ErrorContext:
    """Context information for an error."""
    descriptor: Optional[str] = None
    operation: Optional[str] = None
    kind: Optional[str] = None
    resource_name: Optional[str] = None
    status_code: Optional[int] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for orchestration errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

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

        if self.context.descriptor:
            lines.append(f"   Descriptor: {self.context.descriptor}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.context.kind and self.context.resource_name:
            lines.append(f"   Object: {self.context.kind}/{self.context.resource_name}")

        if self.cause:
            lines.append(f"   Cause: {str(self.cause)}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
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
                'descriptor': self.context.descriptor,
                'operation': self.context.operation,
                'kind': self.context.kind,
                'resource_name': self.context.resource_name,
                'status_code': self.context.status_code,
                'additional_info': self.context.additional_info
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions
        }


class ConfigurationError(DeploymentError):
    """Error in configuration file or command-line usage."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class PlanError(DeploymentError):
    """The descriptor set cannot be turned into a deployment plan.

    Always raised before any cluster mutation.
    """

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('severity', ErrorSeverity.CRITICAL)
        super().__init__(message, category=ErrorCategory.PLAN, **kwargs)


class CyclicDependencyError(PlanError):
    """Descriptors depend on each other in a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = list(cycle)
        super().__init__(
            f"Cyclic dependency detected: {' -> '.join(self.cycle)}",
            **kwargs
        )


class UnknownDependencyError(PlanError):
    """A descriptor depends on a name that is not in the descriptor set."""

    def __init__(self, descriptor: str, dependency: str, **kwargs):
        self.descriptor = descriptor
        self.dependency = dependency
        super().__init__(
            f'unknown dependency "{dependency}" (declared by "{descriptor}")',
            context=ErrorContext(descriptor=descriptor),
            **kwargs
        )


class ApplyError(DeploymentError):
    """The cluster rejected a configuration document."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.APPLY,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ProbeTimeout(DeploymentError):
    """A stage did not reach the awaited health status before its timeout."""

    def __init__(
        self,
        message: str,
        last_status: Optional[str] = None,
        diagnostics: Optional[List[str]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            category=ErrorCategory.PROBE,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )
        self.last_status = last_status
        self.diagnostics = diagnostics or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['last_status'] = self.last_status
        data['diagnostics'] = self.diagnostics
        return data


class RollbackError(DeploymentError):
    """One or more removals did not complete.

    Carries the exact set of resources still present, keyed by descriptor.
    Never retried automatically.
    """

    def __init__(self, message: str, still_present: Optional[Dict[str, List[str]]] = None, **kwargs):
        kwargs.setdefault('suggestions', [
            'Inspect the listed resources for finalizers or stuck termination',
            'Check that your credentials are allowed to delete these objects',
            'Remove the resources manually, then re-run teardown to confirm absence'
        ])
        super().__init__(
            message,
            category=ErrorCategory.ROLLBACK,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )
        self.still_present = still_present or {}

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['still_present'] = self.still_present
        return data


class VerificationFailure(DeploymentError):
    """A post-deploy smoke check failed. Warning only."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.VERIFICATION,
            severity=ErrorSeverity.WARNING,
            **kwargs
        )


class LeaseHeldError(DeploymentError):
    """Another run already holds the lock for this target."""

    def __init__(self, target: str, holder: Optional[str] = None, **kwargs):
        self.target = target
        self.holder = holder
        message = f"Target '{target}' is locked by another run"
        if holder:
            message += f" ({holder})"
        kwargs.setdefault('suggestions', [
            'Wait for the other run to finish',
            'If the holder crashed, remove its lock (file backend) or wait for the lease to expire'
        ])
        super().__init__(
            message,
            category=ErrorCategory.LOCK,
            severity=ErrorSeverity.CRITICAL,
            **kwargs
        )


class ClusterError(DeploymentError):
    """Error talking to the cluster API."""

    def __init__(self, message: str, transient: bool = False, **kwargs):
        kwargs.setdefault('category', ErrorCategory.CLUSTER)
        super().__init__(message, **kwargs)
        self.transient = transient


class OperationCancelled(DeploymentError):
    """The run was cancelled by an external signal."""

    def __init__(self, message: str = "Operation cancelled", **kwargs):
        super().__init__(
            message,
            category=ErrorCategory.CANCELLED,
            severity=ErrorSeverity.ERROR,
            **kwargs
        )


class ErrorHandler:
    """Handles and categorizes errors from the Kubernetes API and other sources."""

    # Mapping of HTTP status codes returned by the API server
    API_STATUS_MAPPING = {
        401: {
            'category': ErrorCategory.PERMISSION,
            'message': 'Cluster credentials were rejected',
            'transient': False,
            'suggestions': [
                'Check the kubeconfig context in use',
                'Refresh expired credentials or tokens',
                'Verify with: kubectl auth whoami'
            ]
        },
        403: {
            'category': ErrorCategory.PERMISSION,
            'message': 'Forbidden - insufficient RBAC permissions',
            'transient': False,
            'suggestions': [
                'Check the Role/ClusterRole bound to your user or service account',
                'Verify with: kubectl auth can-i <verb> <resource> -n <namespace>'
            ]
        },
        404: {
            'category': ErrorCategory.CLUSTER,
            'message': 'Resource or API not found',
            'transient': False,
            'suggestions': [
                'Verify the apiVersion and kind are served by this cluster',
                'Check that the target namespace exists'
            ]
        },
        409: {
            'category': ErrorCategory.CLUSTER,
            'message': 'Conflict with the current object state',
            'transient': True,
            'suggestions': [
                'Another controller may own conflicting fields',
                'Retry the operation'
            ]
        },
        422: {
            'category': ErrorCategory.APPLY,
            'message': 'Configuration document is invalid',
            'transient': False,
            'suggestions': [
                'Review the validation message for the failing field',
                'Validate the manifest with: phased-deploy deploy --dry-run'
            ]
        },
        429: {
            'category': ErrorCategory.CLUSTER,
            'message': 'API server rate limit exceeded',
            'transient': True,
            'suggestions': [
                'Reduce concurrent clients against this API server',
                'Exponential backoff is already enabled'
            ]
        },
        500: {
            'category': ErrorCategory.CLUSTER,
            'message': 'API server internal error',
            'transient': True,
            'suggestions': ['Retry the operation', 'Check API server health']
        },
        503: {
            'category': ErrorCategory.NETWORK,
            'message': 'API server temporarily unavailable',
            'transient': True,
            'suggestions': ['Wait a few moments and retry', 'Check control plane health']
        }
    }

    def __init__(self):
        """Initialize error handler."""
        self.logger = get_logger(__name__)

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Handle an exception and convert to DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ApiException):
            return self._handle_api_error(error, context)

        if isinstance(error, ConfigException):
            return ConfigurationError(
                f'Cannot load cluster configuration: {error}',
                context=context,
                cause=error,
                suggestions=[
                    'Check the kubeconfig path and context name for this target',
                    'Run inside the cluster or set KUBECONFIG'
                ]
            )

        if isinstance(error, (ConnectionError, TimeoutError, URLLibHTTPError)):
            return self._handle_network_error(error, context)

        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.ERROR,
            context=context,
            cause=error,
            suggestions=['Check logs for more details']
        )

    def _handle_api_error(
        self,
        error: ApiException,
        context: ErrorContext
    ) -> ClusterError:
        """Handle an ApiException raised by the Kubernetes client.

        Args:
            error: The ApiException
            context: Error context

        Returns:
            Categorized ClusterError
        """
        status = error.status or 0
        context.status_code = status
        reason = error.reason or 'Unknown'

        error_info = self.API_STATUS_MAPPING.get(status)
        if error_info is None and status >= 500:
            error_info = self.API_STATUS_MAPPING[500]

        if error_info:
            return ClusterError(
                f"{error_info['message']}: {reason}",
                transient=error_info['transient'],
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return ClusterError(
            f"API error ({status}): {reason}",
            context=context,
            cause=error,
            suggestions=['Check the API server audit log for more details']
        )

    def _handle_network_error(
        self,
        error: Exception,
        context: ErrorContext
    ) -> ClusterError:
        """Handle network-related errors.

        Args:
            error: The network error
            context: Error context

        Returns:
            Transient ClusterError
        """
        return ClusterError(
            f'Network error: {str(error)}',
            transient=True,
            category=ErrorCategory.NETWORK,
            context=context,
            cause=error,
            suggestions=[
                'Check connectivity to the API server',
                'Check whether a VPN or proxy is interfering'
            ]
        )


# Global error handler instance
error_handler = ErrorHandler()
