"""Tests for provider ordering and the health state machine."""
import pytest

from ai.adapters.providers import BaseProvider
from ai.adapters.registry import ProviderHealth, ProviderRegistry


class NullProvider(BaseProvider):
    async def call(self, operation, request, timeout):
        return None


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def make_registry(*names, **kwargs) -> ProviderRegistry:
    registry = ProviderRegistry(**kwargs)
    for priority, name in enumerate(names):
        registry.register(name, NullProvider(name), priority=priority)
    return registry


def names(descriptors):
    return [d.name for d in descriptors]


def test_candidates_skip_unavailable():
    registry = make_registry("A", "B", "C")
    registry.get("B").health = ProviderHealth.DEGRADED
    registry.get("C").health = ProviderHealth.UNAVAILABLE

    assert names(registry.candidates("generateCode")) == ["A", "B"]


def test_all_unavailable_returns_everything_by_priority():
    registry = make_registry("A", "B", "C")
    for name in ("C", "A", "B"):
        registry.get(name).health = ProviderHealth.UNAVAILABLE

    assert names(registry.candidates("generateCode")) == ["A", "B", "C"]


def test_healthy_before_degraded_regardless_of_priority():
    registry = make_registry("A", "B", "C")
    registry.get("A").health = ProviderHealth.DEGRADED

    assert names(registry.candidates("explainCode")) == ["B", "C", "A"]


def test_operations_filter():
    registry = ProviderRegistry()
    registry.register("peer", NullProvider("peer"), priority=0, operations=["generateCode"])
    registry.register("cloud", NullProvider("cloud"), priority=1)

    assert names(registry.candidates("generateCode")) == ["peer", "cloud"]
    assert names(registry.candidates("chat")) == ["cloud"]


def test_health_state_machine():
    registry = make_registry("A", failure_threshold=3)
    descriptor = registry.get("A")

    registry.report_outcome("A", False, "boom")
    assert descriptor.health is ProviderHealth.DEGRADED
    assert descriptor.consecutive_failures == 1

    registry.report_outcome("A", False)
    assert descriptor.health is ProviderHealth.DEGRADED

    registry.report_outcome("A", False)
    assert descriptor.health is ProviderHealth.UNAVAILABLE
    assert descriptor.consecutive_failures == 3

    registry.report_outcome("A", True)
    assert descriptor.health is ProviderHealth.HEALTHY
    assert descriptor.consecutive_failures == 0
    assert descriptor.last_error is None


def test_threshold_of_one_still_degrades_first():
    registry = make_registry("A", failure_threshold=1)

    registry.report_outcome("A", False)
    assert registry.get("A").health is ProviderHealth.DEGRADED
    registry.report_outcome("A", False)
    assert registry.get("A").health is ProviderHealth.UNAVAILABLE


def test_probe_after_reoffers_unavailable_provider():
    clock = FakeClock()
    registry = make_registry("A", "B", failure_threshold=2, probe_after=30, clock=clock)
    registry.report_outcome("A", False)
    registry.report_outcome("A", False)
    assert registry.get("A").health is ProviderHealth.UNAVAILABLE

    clock.now = 29
    assert names(registry.candidates("chat")) == ["B"]

    clock.now = 30
    assert names(registry.candidates("chat")) == ["B", "A"]


def test_register_rejects_duplicates_and_unknown_lookups():
    registry = make_registry("A")
    with pytest.raises(ValueError):
        registry.register("A", NullProvider("A"))
    with pytest.raises(KeyError):
        registry.get("missing")
    with pytest.raises(KeyError):
        registry.report_outcome("missing", True)
    assert "A" in registry
    assert len(registry) == 1


def test_snapshot_is_plain_data_in_priority_order():
    registry = make_registry("A", "B")
    registry.report_outcome("B", False, "HTTP 503")

    snapshot = registry.snapshot()

    assert [entry["name"] for entry in snapshot] == ["A", "B"]
    assert snapshot[1]["health"] == "degraded"
    assert snapshot[1]["last_error"] == "HTTP 503"
