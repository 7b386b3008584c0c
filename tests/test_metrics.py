"""Tests for the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from booking_orchestrator.services.metrics import MetricsClient, timed


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.object(MetricsClient, "_start_flush_thread"):
        return MetricsClient(enabled=enabled)


class TestMetricsRecording:
    """Verify that record_success / record_failure buffer the right data."""

    def test_record_success_appends_two_data_points(self):
        client = _make_client()
        client.record_success("qdrant", "search:common_answers", latency_ms=12.5)
        assert client.pending == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency_skips_latency_point(self):
        client = _make_client()
        client.record_failure("anthropic", "llm_invoke", error_type="timeout")
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_record_failure_with_latency_appends_three_data_points(self):
        client = _make_client()
        client.record_failure("gemini", "embed_query", error_type="DeadlineExceeded", latency_ms=800.0)
        assert client.pending == 3

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("supabase", "claim_slot", error_type="APIError")
        error_metric = next(
            m for m in client._buffer if m["MetricName"] == "ExternalAPI/ErrorCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map == {"Service": "supabase", "ErrorType": "APIError"}

    def test_record_outcome_uses_turn_namespace(self):
        client = _make_client()
        client.record_outcome("SpamZone", "suspicious")
        (datum,) = client._buffer
        assert datum["MetricName"] == "Turn/SpamZone"
        assert datum["Dimensions"] == [{"Name": "Outcome", "Value": "suspicious"}]


class TestTimed:
    def test_success_is_recorded(self):
        client = MagicMock()
        with timed("qdrant", "upsert:common_answers", client=client):
            pass
        client.record_success.assert_called_once()
        assert client.record_success.call_args[0][:2] == ("qdrant", "upsert:common_answers")

    def test_failure_is_recorded_and_reraised(self):
        client = MagicMock()
        with pytest.raises(ConnectionError):
            with timed("qdrant", "search:doctor_mappings", client=client):
                raise ConnectionError("refused")
        kwargs = client.record_failure.call_args[1]
        assert kwargs["error_type"] == "ConnectionError"


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client(enabled=False)
        client.record_success("gemini", "embed_query", latency_ms=100.0)
        with patch.object(client, "_get_cw_client") as get_client:
            assert client.flush() == 0
        get_client.assert_not_called()
        assert client.pending == 0

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)
        mock_cw = MagicMock()
        client._cw_client = mock_cw

        client.record_success("anthropic", "llm_invoke", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        kwargs = mock_cw.put_metric_data.call_args[1]
        assert kwargs["Namespace"] == "BookingOrchestrator"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_empty_buffer_returns_zero(self):
        client = _make_client(enabled=True)
        assert client.flush() == 0

    def test_put_failure_is_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_outcome("CacheLookup", "hit")
        assert client.flush() == 0
