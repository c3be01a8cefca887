from __future__ import annotations

from tenantbot.services.telemetry import MetricsRegistry


def test_render_prometheus_text() -> None:
    metrics = MetricsRegistry(buckets=(0.1, 1.0))
    metrics.describe("jobs_completed_total", "Jobs completed per job type")
    metrics.increment_counter("jobs_completed_total", labels={"job_type": "reminder"})
    metrics.increment_counter("jobs_completed_total", labels={"job_type": "reminder"})
    metrics.set_gauge("auth_cache_size", 3)
    metrics.observe("job_duration_seconds", 0.05, labels={"job_type": "cleanup"})
    metrics.observe("job_duration_seconds", 0.5, labels={"job_type": "cleanup"})

    text = metrics.render_prometheus()
    assert "# HELP jobs_completed_total Jobs completed per job type" in text
    assert "# TYPE jobs_completed_total counter" in text
    assert 'jobs_completed_total{job_type="reminder"} 2' in text
    assert "auth_cache_size 3" in text
    assert 'job_duration_seconds_bucket{job_type="cleanup",le="0.1"} 1' in text
    assert 'job_duration_seconds_bucket{job_type="cleanup",le="1"} 2' in text
    assert 'job_duration_seconds_bucket{job_type="cleanup",le="+Inf"} 2' in text
    assert 'job_duration_seconds_count{job_type="cleanup"} 2' in text


def test_accessors_and_p95() -> None:
    metrics = MetricsRegistry()
    for value in range(1, 101):
        metrics.observe("client_creation_duration_seconds", value / 100.0)
    assert metrics.histogram_count("client_creation_duration_seconds") == 100
    assert metrics.p95("client_creation_duration_seconds") == 0.95
    assert metrics.p95("missing") is None
    assert metrics.gauge_value("missing") is None

    metrics.increment_counter("invalid_auth_events_total", labels={"tenant_id": "T1"})
    assert metrics.counters_snapshot() == {"invalid_auth_events_total": {"tenant_id=T1": 1.0}}


def test_label_values_are_escaped() -> None:
    metrics = MetricsRegistry()
    metrics.increment_counter("events_total", labels={"reason": 'bad "quote"'})
    assert 'events_total{reason="bad \\"quote\\""} 1' in metrics.render_prometheus()
