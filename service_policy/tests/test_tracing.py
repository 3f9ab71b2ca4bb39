"""
Unit tests for evaluation tracing.
"""

import pytest
from unittest.mock import patch
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from shared.test_helpers import make_token
from shared.tracing import trace_operation
from service_policy.app.rules.models import EvaluationRequest


@pytest.fixture
def exporter():
    """Route spans from trace_operation into memory."""
    span_exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    with patch("shared.tracing.get_tracer", side_effect=provider.get_tracer):
        yield span_exporter


class TestTraceOperation:
    """Test cases for trace_operation."""

    def test_attributes_are_recorded(self, exporter):
        with trace_operation("policy.test", resource="portal", tenant=None):
            pass

        span = exporter.get_finished_spans()[0]
        assert span.name == "policy.test"
        assert span.attributes["resource"] == "portal"
        assert "tenant" not in span.attributes

    def test_errors_mark_span(self, exporter):
        with pytest.raises(RuntimeError):
            with trace_operation("policy.test"):
                raise RuntimeError("boom")

        span = exporter.get_finished_spans()[0]
        assert span.status.status_code == StatusCode.ERROR
        assert span.attributes["error.message"] == "boom"

    @pytest.mark.asyncio
    async def test_evaluation_span(self, exporter, evaluator):
        await evaluator.evaluate(EvaluationRequest(make_token(), "portal", "read", {}))

        span = exporter.get_finished_spans()[0]
        assert span.name == "policy.evaluate"
        assert span.attributes["policy.decision"] == "PERMIT"
        assert span.attributes["policy.reason"] == "POLICY_SATISFIED"
        assert span.attributes["policy.cached"] is False
