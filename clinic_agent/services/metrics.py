"""CloudWatch custom metrics emitter with background batching.

Publishes per-call metrics (count, latency, errors) for the external
services the agent talks to (the completion gateway, Resend) and outcome
counters for the booking core (booked / rejected / race lost, confirmation
link results).

Design
------
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), metrics are
  logged at DEBUG level but **not** pushed to CloudWatch.

Usage
-----
>>> from clinic_agent.services.metrics import metrics
>>> metrics.record_success("completion", "dispatch", latency_ms=812.0)
>>> metrics.record_failure("resend", "send_email", error_type="HTTPStatusError")
>>> metrics.record_event("Booking/Outcome", "slot_unavailable")
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

NAMESPACE = "ClinicAgent"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


class MetricsClient:
    """Batched CloudWatch metrics publisher."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
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

    # ── Public API ────────────────────────────────────────────────────

    def record_success(self, service: str, operation: str, latency_ms: float) -> None:
        """Record a successful call to an external service."""
        now = datetime.now(UTC)
        dims = [{"Name": "Service", "Value": service}]

        self._append({
            "MetricName": "ExternalAPI/RequestCount",
            "Dimensions": dims + [{"Name": "Status", "Value": "success"}],
            "Timestamp": now,
            "Value": 1,
            "Unit": "Count",
        })
        self._append({
            "MetricName": "ExternalAPI/Latency",
            "Dimensions": dims + [{"Name": "Operation", "Value": operation}],
            "Timestamp": now,
            "Value": latency_ms,
            "Unit": "Milliseconds",
        })
        logger.debug("Metric: %s %s success latency=%.1fms", service, operation, latency_ms)

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed call to an external service."""
        now = datetime.now(UTC)
        dims = [{"Name": "Service", "Value": service}]

        self._append({
            "MetricName": "ExternalAPI/RequestCount",
            "Dimensions": dims + [{"Name": "Status", "Value": "failure"}],
            "Timestamp": now,
            "Value": 1,
            "Unit": "Count",
        })
        self._append({
            "MetricName": "ExternalAPI/ErrorCount",
            "Dimensions": dims + [{"Name": "ErrorType", "Value": error_type}],
            "Timestamp": now,
            "Value": 1,
            "Unit": "Count",
        })
        if latency_ms > 0:
            self._append({
                "MetricName": "ExternalAPI/Latency",
                "Dimensions": dims + [{"Name": "Operation", "Value": operation}],
                "Timestamp": now,
                "Value": latency_ms,
                "Unit": "Milliseconds",
            })
        logger.debug(
            "Metric: %s %s failure error=%s latency=%.1fms",
            service, operation, error_type, latency_ms,
        )

    def record_event(self, metric_name: str, outcome: str) -> None:
        """Count one business event, e.g. a booking outcome."""
        self._append({
            "MetricName": metric_name,
            "Dimensions": [{"Name": "Outcome", "Value": outcome}],
            "Timestamp": datetime.now(UTC),
            "Value": 1,
            "Unit": "Count",
        })
        logger.debug("Metric: %s outcome=%s", metric_name, outcome)

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

    # ── Internal ──────────────────────────────────────────────────────

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


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
