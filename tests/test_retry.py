"""Tests for node retries as driven by the engine."""

import pytest

from automation.models import FlowErrorHandling, NodeRetryConfig
from core.constants import ErrorCode, ErrorSeverity, ErrorStrategy, ExecutionStatus, StepStatus
from flow_builders import chain, node
from nodes.collaborators import HttpResponse, HttpTransportError


def _call_flow(retry=None, **kwargs):
    return chain(
        "flaky_call",
        node("call", "http_request", config={"url": "https://api.test/orders"}, retry=retry),
        **kwargs,
    )


def _fixed(max_retries):
    return NodeRetryConfig(max_retries=max_retries, policy="fixed", base_delay=0)


@pytest.mark.unit
class TestNodeRetries:
    @pytest.mark.asyncio
    async def test_retry_until_success(self, engine, install, http, execution_store):
        http.script(HttpResponse(503), HttpResponse(503), HttpResponse(200, body={"id": 1}))
        await install(_call_flow(retry=_fixed(2)))

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.COMPLETED
        attempts = [s for s in log.steps if s.node_id == "call"]
        assert [s.retry_attempt for s in attempts] == [0, 1, 2]
        assert [s.status for s in attempts] == [StepStatus.FAILURE, StepStatus.FAILURE, StepStatus.SUCCESS]
        assert log.variables["call"]["data"] == {"id": 1}

        errors = await execution_store.list_errors(log.id)
        assert len(errors) == 2
        assert all(e.severity == ErrorSeverity.ERROR for e in errors)
        assert all(e.retryable for e in errors)
        assert [e.context["attempt"] for e in errors] == [0, 1]
        assert all(e.resolved_at is not None for e in errors)

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, engine, install, http, execution_store):
        http.default = HttpResponse(503)
        await install(_call_flow(retry=_fixed(2)))

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.FAILED
        assert log.error.code == ErrorCode.HTTP_ERROR
        assert len(http.calls) == 3

        errors = await execution_store.list_errors(log.id)
        critical = [e for e in errors if e.severity == ErrorSeverity.CRITICAL]
        assert len(critical) == 1
        assert critical[0].context == {"attempts": 3}
        assert all(e.resolved_at is None for e in errors)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self, engine, install, http):
        http.script(HttpResponse(400))
        await install(_call_flow(retry=_fixed(3)))

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.FAILED
        assert len(http.calls) == 1

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(self, engine, install, http):
        http.script(HttpTransportError("connection reset"))
        await install(_call_flow(retry=_fixed(1)))

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.COMPLETED
        first = [s for s in log.steps if s.node_id == "call"][0]
        assert first.error.code == ErrorCode.HTTP_TRANSPORT_ERROR

    @pytest.mark.asyncio
    async def test_no_retry_by_default(self, engine, install, http):
        http.script(HttpResponse(503))
        await install(_call_flow())

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.FAILED
        assert len(http.calls) == 1

    @pytest.mark.asyncio
    async def test_flow_level_retry_strategy(self, engine, install, http):
        http.script(HttpResponse(502))
        await install(
            _call_flow(
                error_handling=FlowErrorHandling(strategy=ErrorStrategy.RETRY, max_retries=1, retry_delay_ms=0)
            )
        )

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.COMPLETED
        assert len(http.calls) == 2

    @pytest.mark.asyncio
    async def test_node_retry_overrides_flow_strategy(self, engine, install, http):
        http.default = HttpResponse(503)
        await install(
            _call_flow(
                retry=NodeRetryConfig(max_retries=0, policy="none"),
                error_handling=FlowErrorHandling(strategy=ErrorStrategy.RETRY, max_retries=5, retry_delay_ms=0),
            )
        )

        log = await engine.execute("flaky_call")

        assert log.status == ExecutionStatus.FAILED
        assert len(http.calls) == 1
