from __future__ import annotations

from tenantplane.services.telemetry import (
    counters_snapshot,
    external_call_stats,
    increment_counter,
    record_external_call,
    record_request,
    request_stats,
)


def test_request_stats_summarise_window() -> None:
    assert request_stats(60) == {"count": 0, "error_rate": None, "p95_ms": None}

    for latency in (10.0, 20.0, 30.0):
        record_request(path="/v1/settings", tenant_id=7, status_code=200, latency_ms=latency)
    record_request(path="/v1/settings", tenant_id=7, status_code=500, latency_ms=40.0)

    stats = request_stats(60)
    assert stats["count"] == 4
    assert stats["error_rate"] == 0.25
    assert stats["p95_ms"] == 40.0


def test_external_calls_grouped_by_integration() -> None:
    record_external_call(integration="hosting.create.flat", latency_ms=12.0, success=True)
    record_external_call(integration="hosting.create.flat", latency_ms=30.0, success=False)
    record_external_call(integration="hosting.delete.org", latency_ms=5.0, success=True)
    increment_counter("provision_ok_total")
    increment_counter("provision_ok_total")

    stats = external_call_stats(60)
    assert stats["hosting.create.flat"] == {"count": 2, "failures": 1, "p95_ms": 30.0, "max_ms": 30.0}
    assert stats["hosting.delete.org"]["failures"] == 0
    assert counters_snapshot() == {"provision_ok_total": 2}
