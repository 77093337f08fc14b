"""Tests for error mapping, retries and cancellation."""

import signal

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from phased_deploy.utils.cancellation import CancellationToken, install_signal_handlers
from phased_deploy.utils.errors import (
    ClusterError,
    ConfigurationError,
    DeploymentError,
    ErrorCategory,
    ErrorContext,
    OperationCancelled,
    RollbackError,
    error_handler,
)
from phased_deploy.utils.retry import BackoffPolicy, RetryStrategy


class TestErrorHandler:
    @pytest.mark.parametrize("status, category, transient", [
        (401, ErrorCategory.PERMISSION, False),
        (403, ErrorCategory.PERMISSION, False),
        (422, ErrorCategory.APPLY, False),
        (429, ErrorCategory.CLUSTER, True),
        (503, ErrorCategory.NETWORK, True),
        (504, ErrorCategory.CLUSTER, True),
    ])
    def test_api_status_mapping(self, status, category, transient):
        error = error_handler.handle_exception(
            ApiException(status=status, reason="Reason"),
            ErrorContext(descriptor="kafka", operation="apply")
        )
        assert isinstance(error, ClusterError)
        assert error.category is category
        assert error.transient is transient
        assert error.context.status_code == status
        assert error.suggestions

    def test_unmapped_status(self):
        error = error_handler.handle_exception(ApiException(status=418, reason="Teapot"))
        assert error.message == "API error (418): Teapot"
        assert not error.transient

    def test_deployment_errors_pass_through(self):
        original = ConfigurationError("bad")
        assert error_handler.handle_exception(original) is original

    def test_kubeconfig_problems_are_configuration_errors(self):
        error = error_handler.handle_exception(ConfigException("context not found"))
        assert isinstance(error, ConfigurationError)

    def test_network_errors_are_transient(self):
        error = error_handler.handle_exception(ConnectionError("reset"))
        assert error.transient
        assert error.category is ErrorCategory.NETWORK

    def test_unknown_errors_keep_cause(self):
        cause = KeyError("x")
        error = error_handler.handle_exception(cause)
        assert type(error) is DeploymentError
        assert error.cause is cause

    def test_user_message(self):
        error = RollbackError("Removal incomplete", still_present={"kafka": ["pod/kafka-0"]},
                              context=ErrorContext(descriptor="kafka", operation="delete"))
        message = error.to_user_message()
        assert message.startswith("CRITICAL: Removal incomplete")
        assert "Descriptor: kafka" in message
        assert "Suggested fixes:" in message
        assert error.to_dict()["still_present"] == {"kafka": ["pod/kafka-0"]}


class TestBackoffPolicy:
    def test_doubles_up_to_cap(self):
        policy = BackoffPolicy(base_interval=2.0, max_interval=30.0)
        assert [policy.delay(n) for n in range(6)] == [2.0, 4.0, 8.0, 16.0, 30.0, 30.0]

    def test_jitter_never_exceeds_cap(self):
        policy = BackoffPolicy(base_interval=10.0, max_interval=10.0, jitter=True)
        assert all(policy.delay(n) <= 10.0 for n in range(20))


class TestRetryStrategy:
    def setup_method(self):
        self.sleeps = []
        self.strategy = RetryStrategy(max_retries=2, backoff=BackoffPolicy(1.0, 10.0), sleep=self.sleeps.append)

    def flaky(self, *errors):
        remaining = list(errors)

        def call():
            if remaining:
                raise remaining.pop(0)
            return "ok"
        return call

    def test_retries_transient_errors(self):
        call = self.flaky(ApiException(status=503), ConnectionError("reset"))
        assert self.strategy.execute_with_retry(call) == "ok"
        assert self.sleeps == [1.0, 2.0]

    def test_gives_up_after_max_retries(self):
        call = self.flaky(*[ApiException(status=500)] * 3)
        with pytest.raises(ApiException):
            self.strategy.execute_with_retry(call)
        assert len(self.sleeps) == 2

    def test_permanent_errors_are_not_retried(self):
        with pytest.raises(ApiException):
            self.strategy.execute_with_retry(self.flaky(ApiException(status=422)))
        assert self.sleeps == []

    def test_cluster_error_transient_flag(self):
        assert self.strategy.should_retry(ClusterError("x", transient=True), 0)
        assert not self.strategy.should_retry(ClusterError("x"), 0)


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("SIGINT")
        token.cancel("SIGTERM")
        assert token.cancelled
        assert token.reason == "SIGINT"

    def test_wait_returns_early_when_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert token.wait(10.0) is True

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("SIGTERM")
        with pytest.raises(OperationCancelled, match="SIGTERM"):
            token.raise_if_cancelled()


class TestSignalHandlers:
    def test_second_signal_falls_through_to_defaults(self, monkeypatch):
        """The first signal cancels; a repeat gets the default behavior."""
        installed = {}
        monkeypatch.setattr(signal, "signal", lambda signum, handler: installed.__setitem__(signum, handler))
        token = CancellationToken()

        install_signal_handlers(token)
        handler = installed[signal.SIGINT]
        assert installed[signal.SIGTERM] is handler

        handler(signal.SIGINT, None)

        assert token.reason == "SIGINT"
        assert installed[signal.SIGINT] is signal.default_int_handler
        assert installed[signal.SIGTERM] is signal.SIG_DFL
