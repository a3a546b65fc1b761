"""Provider registry with per-provider health.

Health follows a small state machine driven by the request coordinator::

    healthy --1 failure--> degraded --N consecutive failures--> unavailable
    any state --success--> healthy

Candidate ordering for an operation is healthy providers by priority, then
degraded ones by priority.  Unavailable providers are left out unless every
provider for the operation is unavailable, in which case all of them are
returned by priority so callers never see an empty list while something is
configured.  With ``probe_after`` set, an unavailable provider whose last
failure is older than that window is offered once more after the degraded
ones (half-open probe).
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from core.logging import logger

from .providers import BaseProvider


class ProviderHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class ProviderDescriptor:
    """A registered provider and its current health."""
    name: str
    priority: int
    health: ProviderHealth = ProviderHealth.HEALTHY
    consecutive_failures: int = 0
    operations: FrozenSet[str] = field(default_factory=frozenset)
    last_failure_at: Optional[float] = None
    last_error: Optional[str] = None

    def supports(self, operation: str) -> bool:
        return not self.operations or operation in self.operations


class ProviderRegistry:
    """Ordered set of providers plus the health state the coordinator reports into."""

    def __init__(
        self,
        failure_threshold: int = 3,
        probe_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.probe_after = probe_after
        self._clock = clock
        self._descriptors: Dict[str, ProviderDescriptor] = {}
        self._clients: Dict[str, BaseProvider] = {}

    def register(
        self,
        name: str,
        client: BaseProvider,
        priority: int = 0,
        operations: Optional[Iterable[str]] = None,
    ) -> ProviderDescriptor:
        if name in self._descriptors:
            raise ValueError(f"provider {name} already registered")
        descriptor = ProviderDescriptor(name=name, priority=priority, operations=frozenset(operations or ()))
        self._descriptors[name] = descriptor
        self._clients[name] = client
        logger.info(f"Registered provider '{name}' (priority {priority})")
        return descriptor

    def __len__(self) -> int:
        return len(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def get(self, name: str) -> ProviderDescriptor:
        if name not in self._descriptors:
            raise KeyError(f"provider {name} not registered")
        return self._descriptors[name]

    def client(self, name: str) -> BaseProvider:
        if name not in self._clients:
            raise KeyError(f"provider {name} not registered")
        return self._clients[name]

    # ------------------------------------------------------------------
    def candidates(self, operation: str) -> List[ProviderDescriptor]:
        eligible = sorted(
            (d for d in self._descriptors.values() if d.supports(operation)),
            key=lambda d: (d.priority, d.name),
        )
        if not eligible:
            return []
        if all(d.health is ProviderHealth.UNAVAILABLE for d in eligible):
            return eligible

        healthy = [d for d in eligible if d.health is ProviderHealth.HEALTHY]
        degraded = [d for d in eligible if d.health is ProviderHealth.DEGRADED]
        probing = [d for d in eligible if self._probe_due(d)]
        return healthy + degraded + probing

    def report_outcome(self, name: str, success: bool, error: Optional[str] = None) -> ProviderDescriptor:
        descriptor = self.get(name)
        previous = descriptor.health
        if success:
            descriptor.health = ProviderHealth.HEALTHY
            descriptor.consecutive_failures = 0
            descriptor.last_error = None
        else:
            descriptor.consecutive_failures += 1
            descriptor.last_failure_at = self._clock()
            descriptor.last_error = error
            if descriptor.consecutive_failures >= self.failure_threshold and previous is not ProviderHealth.HEALTHY:
                descriptor.health = ProviderHealth.UNAVAILABLE
            elif previous is ProviderHealth.HEALTHY:
                descriptor.health = ProviderHealth.DEGRADED
        if descriptor.health is not previous:
            log = logger.info if descriptor.health is ProviderHealth.HEALTHY else logger.warning
            log(f"Provider '{name}' {previous.value} -> {descriptor.health.value} "
                f"({descriptor.consecutive_failures} consecutive failures)")
        return descriptor

    def snapshot(self) -> List[Dict[str, Any]]:
        """Plain data for status displays, in priority order."""
        return [
            {
                "name": d.name,
                "priority": d.priority,
                "health": d.health.value,
                "consecutive_failures": d.consecutive_failures,
                "operations": sorted(d.operations),
                "last_error": d.last_error,
            }
            for d in sorted(self._descriptors.values(), key=lambda d: (d.priority, d.name))
        ]

    # ------------------------------------------------------------------
    def _probe_due(self, descriptor: ProviderDescriptor) -> bool:
        if descriptor.health is not ProviderHealth.UNAVAILABLE or self.probe_after is None:
            return False
        if descriptor.last_failure_at is None:
            return True
        return self._clock() - descriptor.last_failure_at >= self.probe_after
