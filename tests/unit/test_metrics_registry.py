from __future__ import annotations

from paddock_auth import metrics


def test_metrics_registry_records_and_formats() -> None:
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        metrics.record_operation("token")
        metrics.record_operation("key_issue", count=2)
        metrics.record_error("UNAUTHENTICATED")
        metrics.record_resolution("federated")

        text = metrics.format_prometheus(registry.snapshot())

        assert 'paddock_auth_ops_total{op="token"} 1' in text
        assert 'paddock_auth_ops_total{op="key_issue"} 2' in text
        assert 'paddock_auth_ops_total{op="refresh"} 0' in text
        assert 'paddock_auth_errors_total{code="UNAUTHENTICATED"} 1' in text
        assert 'paddock_auth_resolutions_total{via="federated"} 1' in text
        assert 'paddock_auth_resolutions_total{via="api_key"} 0' in text
        assert "paddock_auth_uptime_seconds" in text
    finally:
        metrics.install_registry(None)


def test_empty_error_series_has_placeholder() -> None:
    text = metrics.format_prometheus(metrics.MetricsRegistry().snapshot())
    assert 'paddock_auth_errors_total{code="none"} 0' in text


def test_reset_clears_counters() -> None:
    registry = metrics.MetricsRegistry()
    registry.record_operation("authorize", count=3)
    registry.record_operation("ignored", count=0)
    registry.reset()

    snapshot = registry.snapshot()
    assert snapshot.operations["authorize"] == 0
    assert "ignored" not in snapshot.operations


def test_record_helpers_no_registry() -> None:
    metrics.install_registry(None)
    # No-ops without an installed registry.
    metrics.record_operation("token")
    metrics.record_error("NOT_FOUND")
    metrics.record_resolution("api_key")
