import pytest

from habitstreak.core.metrics import MetricsRegistry, normalize_path


def test_normalize_path_collapses_ids():
    assert normalize_path("/v1/habits/123/streak") == "/v1/habits/:id/streak"
    assert normalize_path("/v1/habits/3f2a9c1e-77aa-4b0e-9d11-0a8e5f0c2b44/calendar") == "/v1/habits/:id/calendar"
    assert normalize_path("/v1/habits/running/streak") == "/v1/habits/running/streak"


def test_export_includes_help_type_and_escaped_labels():
    registry = MetricsRegistry()
    ops = registry.counter("ops_total", "Operations", ["operation"])
    size = registry.gauge("cache_size", "Entries")

    ops.inc(labels={"operation": 'say "hi"'})
    ops.inc(labels={"operation": 'say "hi"'}, amount=2)
    size.set(4)

    text = registry.export_prometheus()
    assert "# HELP ops_total Operations" in text
    assert "# TYPE ops_total counter" in text
    assert 'ops_total{operation="say \\"hi\\""} 3.0' in text
    assert "cache_size 4.0" in text

    registry.reset()
    assert "ops_total{" not in registry.export_prometheus()


def test_name_cannot_be_reused_for_another_kind():
    registry = MetricsRegistry()
    assert registry.counter("ops_total", "Operations") is registry.counter("ops_total", "Operations")
    with pytest.raises(ValueError):
        registry.gauge("ops_total", "Operations")
