"""Tests for node retry strategies."""

import pytest

from app.config import Settings
from automation.models import FlowErrorHandling, NodeRetryConfig
from automation.retry_strategies import (
    RETRY_PRESETS,
    RetryPolicy,
    RetryStrategy,
    resolve_retry_strategy,
)
from core.constants import ErrorStrategy
from core.exceptions import NodeExecutionError
from flow_builders import chain, node


# ─── Building strategies ───

@pytest.mark.unit
class TestFromNodeConfig:
    def test_explicit_policy(self):
        s = RetryStrategy.from_node_config(
            NodeRetryConfig(max_retries=4, policy="linear", base_delay=0.5, max_delay=3.0)
        )
        assert s.policy == RetryPolicy.LINEAR
        assert s.max_retries == 4
        assert s.base_delay == 0.5
        assert s.max_delay == 3.0
        assert s.jitter is False

    def test_preset_keeps_node_budget(self):
        s = RetryStrategy.from_node_config(NodeRetryConfig(max_retries=1, policy="records"))
        assert s.policy == RetryPolicy.FIXED
        assert s.max_retries == 1
        assert s.base_delay == 2.0
        assert RETRY_PRESETS["records"].max_retries == 3

    def test_zero_retries_means_none(self):
        s = RetryStrategy.from_node_config(NodeRetryConfig(max_retries=0, policy="exponential"))
        assert s.policy == RetryPolicy.NONE

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            RetryStrategy.from_node_config(NodeRetryConfig(max_retries=2, policy="sometimes"))

    def test_from_error_handling(self):
        s = RetryStrategy.from_error_handling(
            FlowErrorHandling(strategy=ErrorStrategy.RETRY, max_retries=2, retry_delay_ms=1500)
        )
        assert s.policy == RetryPolicy.FIXED
        assert s.compute_delay(1) == 1.5
        assert s.compute_delay(2) == 1.5


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_none_delay(self):
        assert RetryStrategy.none().compute_delay(1) == 0.0

    def test_exponential_doubles(self):
        s = RetryStrategy.exponential(max_retries=5, base_delay=1.0, jitter=False)
        assert [s.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_linear_grows_by_base(self):
        s = RetryStrategy.linear(max_retries=5, base_delay=2.0)
        assert [s.compute_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(max_retries=9, base_delay=10.0, max_delay=30.0, jitter=False)
        assert s.compute_delay(5) == 30.0

    def test_jitter_stays_in_range(self):
        s = RetryStrategy.exponential(max_retries=3, base_delay=10.0, max_delay=100.0)
        for _ in range(50):
            assert 5.0 <= s.compute_delay(1) <= 15.0


# ─── Should retry ───

@pytest.mark.unit
class TestShouldRetry:
    def test_none_never_retries(self):
        assert RetryStrategy.none().should_retry(0) is False

    def test_budget(self):
        s = RetryStrategy.fixed(max_retries=2, delay=0)
        assert s.should_retry(0) is True
        assert s.should_retry(1) is True
        assert s.should_retry(2) is False

    def test_node_error_flag_decides(self):
        s = RetryStrategy.fixed(max_retries=5, delay=0)
        assert s.should_retry(0, NodeExecutionError("HTTP 503", retryable=True)) is True
        assert s.should_retry(0, NodeExecutionError("HTTP 400", retryable=False)) is False

    @pytest.mark.parametrize(
        "error,expected",
        [
            (TimeoutError("read timed out"), True),
            (ConnectionResetError("reset by peer"), True),
            (ValueError("bad input"), False),
            (RuntimeError("HTTP 503"), False),
        ],
    )
    def test_other_exceptions(self, error, expected):
        s = RetryStrategy.exponential(max_retries=3)
        assert s.should_retry(0, error) is expected


# ─── Resolution ───

@pytest.mark.unit
class TestResolveRetryStrategy:
    def test_node_override_wins(self):
        call = node("call", "http_request", retry=NodeRetryConfig(max_retries=2, policy="fixed", base_delay=0.5))
        flow = chain("retry_flow", call, error_handling=FlowErrorHandling(strategy=ErrorStrategy.RETRY, max_retries=5))
        s = resolve_retry_strategy(call, flow, Settings())
        assert s.policy == RetryPolicy.FIXED
        assert s.max_retries == 2
        assert s.base_delay == 0.5

    def test_flow_retry_strategy(self):
        call = node("call", "http_request")
        flow = chain(
            "retry_flow",
            call,
            error_handling=FlowErrorHandling(strategy=ErrorStrategy.RETRY, max_retries=4, retry_delay_ms=250),
        )
        s = resolve_retry_strategy(call, flow, Settings())
        assert s.max_retries == 4
        assert s.compute_delay(1) == 0.25

    def test_flow_fail_strategy_falls_through_to_settings(self):
        call = node("call", "http_request")
        flow = chain("retry_flow", call, error_handling=FlowErrorHandling(strategy=ErrorStrategy.FAIL))
        s = resolve_retry_strategy(call, flow, Settings(DEFAULT_MAX_RETRIES=2, RETRY_POLICY="fixed"))
        assert s.policy == RetryPolicy.FIXED
        assert s.max_retries == 2

    def test_no_retries_configured(self):
        call = node("call", "http_request")
        s = resolve_retry_strategy(call, chain("retry_flow", call), Settings(DEFAULT_MAX_RETRIES=0))
        assert s.policy == RetryPolicy.NONE

    @pytest.mark.parametrize("policy", ["fixed", "exponential", "linear"])
    def test_settings_policies(self, policy):
        call = node("call", "http_request")
        s = resolve_retry_strategy(
            call, chain("retry_flow", call), Settings(DEFAULT_MAX_RETRIES=1, RETRY_POLICY=policy)
        )
        assert s.policy == RetryPolicy(policy)
        assert s.jitter is False
