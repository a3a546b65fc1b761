"""Composition root: one bridge, registry, cache and coordinator per process.

``BridgeRuntime`` builds every runtime object from a ``Config`` and a
transport, wires the request handlers the peer may call, and owns the
background sweepers.

Served actions:

* ``ai.execute``        ``{operation, request, ttl?}`` -> coordinator result
* ``status``            -> provider health, cache stats, pending requests
* ``cache.invalidate``  ``{pattern}`` -> number of evicted entries
"""
import asyncio
import shlex
from typing import Any, Dict, List, Optional

from ai.adapters.cache import ResponseCache
from ai.adapters.providers import create_provider
from ai.adapters.registry import ProviderRegistry
from ai.adapters.router import RequestCoordinator
from bridge.correlation import CorrelationStore
from bridge.message_bridge import DISCONNECTED, MessageBridge
from bridge.messages import BridgeMessage, Origin
from bridge.transports import NativeProcessTransport, StdioTransport, Transport, WebSocketTransport
from core.config import Config
from core.errors import ConfigError
from core.logging import logger
from services.session_sync import SessionSynchronizer

EXECUTE_ACTION = "ai.execute"
STATUS_ACTION = "status"
INVALIDATE_ACTION = "cache.invalidate"


def build_transport(config: Config) -> Transport:
    """Instantiate the transport named by ``BRIDGE_TRANSPORT``."""
    app = config.app
    max_frame_bytes = config.bridge.max_frame_bytes
    if app.BRIDGE_TRANSPORT == "stdio":
        return StdioTransport(max_frame_bytes=max_frame_bytes)
    if app.BRIDGE_TRANSPORT == "native":
        if not app.BRIDGE_NATIVE_COMMAND:
            raise ConfigError("BRIDGE_NATIVE_COMMAND must be set for the native transport.")
        return NativeProcessTransport(shlex.split(app.BRIDGE_NATIVE_COMMAND), max_frame_bytes=max_frame_bytes)
    if app.BRIDGE_TRANSPORT == "websocket":
        if not app.BRIDGE_WS_URL:
            raise ConfigError("BRIDGE_WS_URL must be set for the websocket transport.")
        return WebSocketTransport(app.BRIDGE_WS_URL, max_frame_bytes=max_frame_bytes)
    raise ConfigError(f"Unknown transport '{app.BRIDGE_TRANSPORT}'")


class BridgeRuntime:
    def __init__(self, config: Config, transport: Transport, session_id: str = "default"):
        self.config = config
        self.store = CorrelationStore(timeout=config.bridge.request_timeout)
        self.bridge = MessageBridge(
            transport,
            self.store,
            side=Origin(config.app.BRIDGE_SIDE),
            sweep_interval=config.bridge.sweep_interval,
        )
        self.registry = ProviderRegistry(
            failure_threshold=config.routing.failure_threshold,
            probe_after=config.routing.probe_after,
        )
        for provider in config.providers.providers:
            client = create_provider(
                provider.kind,
                name=provider.name,
                bridge=self.bridge,
                model=provider.model,
                base_url=provider.base_url,
                api_key_env=provider.api_key_env,
                action=provider.action,
            )
            self.registry.register(provider.name, client, provider.priority, provider.operations)
        self.cache = ResponseCache(max_size=config.routing.cache_max_entries)
        self.coordinator = RequestCoordinator(self.registry, self.cache, config.routing)
        self.session = SessionSynchronizer(self.bridge, session_id)

        self._closed = asyncio.Event()
        self._cache_sweeper: Optional[asyncio.Task] = None
        self._subscriptions = [
            self.bridge.subscribe(EXECUTE_ACTION, self.handle_execute),
            self.bridge.subscribe(STATUS_ACTION, self.handle_status),
            self.bridge.subscribe(INVALIDATE_ACTION, self.handle_invalidate),
            self.bridge.subscribe(DISCONNECTED, self._on_disconnected),
        ]

    # ------------------------------------------------------------------
    async def start(self) -> None:
        self._closed.clear()
        self.session.start()
        await self.bridge.start()
        if self._cache_sweeper is None:
            self._cache_sweeper = asyncio.create_task(
                self.cache.run_sweeper(self.config.routing.cache_sweep_interval)
            )
        logger.info(f"Bridge runtime started as {self.bridge.side.value} over {self.bridge.transport.name}")

    async def stop(self) -> None:
        sweeper, self._cache_sweeper = self._cache_sweeper, None
        if sweeper is not None:
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)
        self.session.stop()
        await self.bridge.stop()
        self._closed.set()
        logger.info("Bridge runtime stopped")

    async def run_until_closed(self) -> None:
        """Start, serve until the channel closes, then shut down."""
        await self.start()
        try:
            await self._closed.wait()
        finally:
            await self.stop()

    # ------------------------------------------------------------------
    async def handle_execute(self, message: BridgeMessage) -> Any:
        payload = message.payload if isinstance(message.payload, dict) else {}
        operation = payload.get("operation")
        if not operation:
            raise ValueError("ai.execute needs an 'operation'")
        request = payload.get("request") or {}
        if not isinstance(request, dict):
            raise ValueError("ai.execute 'request' must be an object")
        if not isinstance(request.get("context") or {}, dict):
            raise ValueError("ai.execute 'context' must be an object")
        if not isinstance(request.get("history") or [], list):
            raise ValueError("ai.execute 'history' must be a list")
        ttl = payload.get("ttl")
        if ttl is not None:
            if isinstance(ttl, bool) or not isinstance(ttl, (int, float, str)):
                raise ValueError("ai.execute 'ttl' must be a number of seconds")
            try:
                ttl = float(ttl)
            except ValueError:
                raise ValueError(f"ai.execute 'ttl' must be a number of seconds, got {ttl!r}") from None
        return await self.coordinator.execute(operation, request, ttl=ttl)

    def handle_status(self, message: BridgeMessage) -> Dict[str, Any]:
        return self.status()

    def handle_invalidate(self, message: BridgeMessage) -> int:
        payload = message.payload if isinstance(message.payload, dict) else {}
        pattern = payload.get("pattern")
        if not pattern or not isinstance(pattern, str):
            raise ValueError("cache.invalidate needs a 'pattern' string")
        return self.cache.invalidate(pattern)

    def status(self) -> Dict[str, Any]:
        providers: List[Dict[str, Any]] = self.registry.snapshot()
        return {
            "side": self.bridge.side.value,
            "connected": self.bridge.connected,
            "pending_requests": len(self.store),
            "providers": providers,
            "cache": self.cache.stats(),
            "session": self.session.snapshot(),
        }

    def _on_disconnected(self, message: BridgeMessage) -> None:
        self._closed.set()
