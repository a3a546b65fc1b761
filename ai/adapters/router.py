"""Request coordinator: cache, provider fallback, retry with backoff.

``execute`` walks the registry's candidates in passes.  Within one pass every
candidate is tried at most once; when a pass ends without success a fresh
candidate list is taken (health may have changed meanwhile) and the next pass
starts, until ``max_attempts`` calls have been made in total.  Attempt ``k``
(``k >= 2``) is preceded by ``backoff_delay(k)``; the first attempt never waits.

Permanent provider errors take the provider out of the remaining passes of the
current call; everything else counts as transient.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Set

from core.config import RoutingConfig
from core.errors import AllProvidersExhausted, ProviderError
from core.logging import logger

from .cache import ResponseCache, make_fingerprint
from .registry import ProviderRegistry

__all__ = ["RequestCoordinator", "ExecutionResult", "ProviderFailure", "backoff_delay"]


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Delay before ``attempt`` (1-based): 0, base, 2*base, 4*base ... capped."""
    if attempt <= 1:
        return 0.0
    return min(base * (2 ** (attempt - 2)), cap)


@dataclass
class ProviderFailure:
    provider: str
    attempt: int
    reason: str
    error_type: str
    elapsed: float
    transient: bool = True


@dataclass
class ExecutionResult:
    value: Any
    provider: Optional[str]
    attempts: int
    cached: bool
    failures: List[ProviderFailure] = field(default_factory=list)


class RequestCoordinator:
    def __init__(
        self,
        registry: ProviderRegistry,
        cache: ResponseCache,
        routing: Optional[RoutingConfig] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.cache = cache
        self.routing = routing or RoutingConfig()
        self._sleep = sleep
        self._clock = clock

    def fingerprint(self, operation: str, request: Mapping[str, Any]) -> str:
        return make_fingerprint(operation, request, self.routing.context_fields.get(operation))

    async def execute(
        self,
        operation: str,
        request: Mapping[str, Any],
        *,
        ttl: Optional[float] = None,
        use_cache: bool = True,
    ) -> Any:
        result = await self.execute_detailed(operation, request, ttl=ttl, use_cache=use_cache)
        return result.value

    async def execute_detailed(
        self,
        operation: str,
        request: Mapping[str, Any],
        *,
        ttl: Optional[float] = None,
        use_cache: bool = True,
    ) -> ExecutionResult:
        fingerprint = self.fingerprint(operation, request)
        if use_cache:
            cached = self.cache.get(fingerprint)
            if cached is not None:
                logger.debug(f"Cache hit for {operation} ({fingerprint[:24]})")
                return ExecutionResult(value=cached, provider=None, attempts=0, cached=True)

        routing = self.routing
        failures: List[ProviderFailure] = []
        excluded: Set[str] = set()
        attempt = 0

        while attempt < routing.max_attempts:
            candidates = [d for d in self.registry.candidates(operation) if d.name not in excluded]
            if not candidates:
                break
            for descriptor in candidates:
                if attempt >= routing.max_attempts:
                    break
                attempt += 1
                delay = backoff_delay(attempt, routing.backoff_base, routing.backoff_cap)
                if delay > 0:
                    await self._sleep(delay)

                started = self._clock()
                try:
                    value = await asyncio.wait_for(
                        self.registry.client(descriptor.name).call(operation, request, routing.attempt_timeout),
                        timeout=routing.attempt_timeout,
                    )
                except asyncio.CancelledError:
                    raise
                except asyncio.TimeoutError:
                    failure = ProviderFailure(
                        provider=descriptor.name,
                        attempt=attempt,
                        reason=f"timed out after {routing.attempt_timeout:.1f}s",
                        error_type="Timeout",
                        elapsed=self._clock() - started,
                    )
                except Exception as e:
                    failure = ProviderFailure(
                        provider=descriptor.name,
                        attempt=attempt,
                        reason=str(e) or type(e).__name__,
                        error_type=type(e).__name__,
                        elapsed=self._clock() - started,
                        transient=e.transient if isinstance(e, ProviderError) else True,
                    )
                else:
                    self.registry.report_outcome(descriptor.name, True)
                    if value is not None:
                        self.cache.put(fingerprint, value, ttl if ttl is not None else routing.ttl_for(operation))
                    return ExecutionResult(
                        value=value,
                        provider=descriptor.name,
                        attempts=attempt,
                        cached=False,
                        failures=failures,
                    )

                failures.append(failure)
                self.registry.report_outcome(descriptor.name, False, failure.reason)
                logger.warning(
                    f"{operation}: attempt {attempt}/{routing.max_attempts} via '{descriptor.name}' failed "
                    f"({failure.error_type}: {failure.reason})"
                )
                if not failure.transient:
                    excluded.add(descriptor.name)

        logger.error(f"{operation}: all providers exhausted after {attempt} attempt(s)")
        raise AllProvidersExhausted(operation, failures)
