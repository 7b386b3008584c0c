"""CloudWatch custom metrics emitter with background batching.

Two families of metrics are published:

* ``ExternalAPI/*``: count, latency and errors for every call to an
  external dependency (``anthropic`` chat/router, ``gemini`` embeddings,
  ``qdrant`` vector search, ``supabase`` schedule store).
* ``Turn/*``: pipeline outcomes per chat turn (spam zone, cache hit or
  miss, agent-loop result) so the filter layers can be tuned from data.

Metrics are buffered in memory and flushed by a daemon thread every
``FLUSH_INTERVAL_SECONDS``.  With ``METRICS_ENABLED != "true"`` (local dev,
tests) they are only logged at DEBUG level.

>>> from booking_orchestrator.services.metrics import metrics
>>> metrics.record_success("qdrant", "search:common_answers", latency_ms=8.2)
>>> metrics.record_outcome("SpamZone", "suspicious")
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "BookingOrchestrator"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self, enabled: bool | None = None) -> None:
        if enabled is None:
            enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._enabled = enabled
        self._buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    def _get_cw_client(self):
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── External API calls ────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful call to an external dependency."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(
            _datum(
                "ExternalAPI/RequestCount",
                [service_dim, {"Name": "Status", "Value": "success"}],
                now, 1, "Count",
            )
        )
        self._append(
            _datum(
                "ExternalAPI/Latency",
                [service_dim, {"Name": "Operation", "Value": operation}],
                now, latency_ms, "Milliseconds",
            )
        )
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call to an external dependency."""
        now = datetime.now(UTC)
        service_dim = {"Name": "Service", "Value": service}
        self._append(
            _datum(
                "ExternalAPI/RequestCount",
                [service_dim, {"Name": "Status", "Value": "failure"}],
                now, 1, "Count",
            )
        )
        self._append(
            _datum(
                "ExternalAPI/ErrorCount",
                [service_dim, {"Name": "ErrorType", "Value": error_type}],
                now, 1, "Count",
            )
        )
        if latency_ms > 0:
            self._append(
                _datum(
                    "ExternalAPI/Latency",
                    [service_dim, {"Name": "Operation", "Value": operation}],
                    now, latency_ms, "Milliseconds",
                )
            )
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    # ── Pipeline outcomes ─────────────────────────────────────────────

    def record_outcome(self, stage: str, outcome: str) -> None:
        """Count one turn outcome, e.g. ``("CacheLookup", "hit")``."""
        self._append(
            _datum(
                f"Turn/{stage}",
                [{"Name": "Outcome", "Value": outcome}],
                datetime.now(UTC), 1, "Count",
            )
        )
        logger.debug("Metric: turn %s=%s", stage, outcome)

    # ── Flushing ──────────────────────────────────────────────────────

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    @property
    def pending(self) -> int:
        """Number of buffered data points awaiting flush."""
        with self._lock:
            return len(self._buffer)

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info("Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS)


def _datum(
    name: str,
    dimensions: list[dict[str, str]],
    timestamp: datetime,
    value: float,
    unit: str,
) -> dict[str, Any]:
    return {
        "MetricName": name,
        "Dimensions": dimensions,
        "Timestamp": timestamp,
        "Value": value,
        "Unit": unit,
    }


class timed:
    """Context manager that records success/failure of an external call.

    >>> with timed("gemini", "embed_query"):
    ...     vector = embeddings.embed_query(text)

    Exceptions are recorded and re-raised.
    """

    def __init__(self, service: str, operation: str, client: MetricsClient | None = None):
        self.service = service
        self.operation = operation
        self._client = client
        self._t0 = 0.0

    def __enter__(self) -> timed:
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        client = self._client or metrics
        elapsed = (time.perf_counter() - self._t0) * 1000
        if exc_type is None:
            client.record_success(self.service, self.operation, latency_ms=elapsed)
        else:
            client.record_failure(
                self.service, self.operation,
                error_type=exc_type.__name__, latency_ms=elapsed,
            )
        return False


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
