"""
Relay Engine

The single object owning the store, the rule mirror, the runtime toggles and
every engine built on them. It is constructed once at start-up and handed to
request handlers through the application state.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

import structlog

from capture_relay.core.config import ApplicationConfig
from capture_relay.core.helpers import RequestIdGenerator
from capture_relay.core.store import CollectionStore, JsonFileStore
from capture_relay.engine.capture import CaptureEngine
from capture_relay.engine.cleanup import CleanupService
from capture_relay.engine.flags import RelayFlags, toggle_status
from capture_relay.engine.interception import InterceptionEngine
from capture_relay.engine.modification import ModificationEngine
from capture_relay.engine.query import QueryService
from capture_relay.engine.rule_store import RuleStore
from capture_relay.engine.upstream import UpstreamClient

logger = structlog.get_logger()

# Upper bound on waiting for background origin calls at shutdown
SHUTDOWN_DRAIN_SECONDS = 10.0


class RelayEngine:
    """Capture, modification and interception behind one facade"""

    def __init__(
        self,
        store: CollectionStore,
        upstream: Optional[UpstreamClient] = None,
        capture_enabled: bool = True,
        intercept_enabled: bool = False,
        upstream_timeout_seconds: float = 30.0,
        retention_days: int = 7,
        cleanup_interval_hours: float = 24,
        id_generator: Optional[Callable[[], str]] = None
    ):
        self.store = store
        self.upstream = upstream or UpstreamClient(timeout_seconds=upstream_timeout_seconds)
        self.flags = RelayFlags(capture_enabled=capture_enabled, intercept_enabled=intercept_enabled)
        self.new_request_id = id_generator or RequestIdGenerator()
        self.logger = logger.bind(component="relay_engine")

        self.rules = RuleStore(store)
        self.capture = CaptureEngine(store, self.rules, self.flags)
        self.modification = ModificationEngine(store, self.rules, self.flags)
        self.interception = InterceptionEngine(
            store,
            self.rules,
            self.upstream,
            timeout_seconds=upstream_timeout_seconds
        )
        self.query = QueryService(store)
        self.cleanup = CleanupService(store, retention_days=retention_days, interval_hours=cleanup_interval_hours)

        self._started = False

    @classmethod
    def from_config(cls, config: ApplicationConfig) -> "RelayEngine":
        """Build the engine with a JSON file store and an aiohttp upstream client"""
        upstream = UpstreamClient(
            timeout_seconds=config.relay.upstream_timeout_seconds,
            verify_ssl=config.relay.upstream_verify_ssl,
            max_concurrency=config.relay.max_concurrent_forwards
        )
        return cls(
            store=JsonFileStore(config.storage.data_directory),
            upstream=upstream,
            capture_enabled=config.relay.capture_enabled,
            intercept_enabled=config.relay.intercept_enabled,
            upstream_timeout_seconds=config.relay.upstream_timeout_seconds,
            retention_days=config.storage.retention_days,
            cleanup_interval_hours=config.storage.cleanup_interval_hours
        )

    async def start(self):
        """Create missing collections, load rules and start retention"""
        if self._started:
            return
        await self.store.initialize()
        await self.rules.load()
        await self.cleanup.start()
        self._started = True
        self.logger.info(
            "Relay engine started",
            capture_enabled=self.flags.capture_enabled,
            intercept_enabled=self.flags.intercept_enabled
        )

    async def close(self):
        """Stop retention, drain background origin calls and close the HTTP session"""
        await self.cleanup.stop()
        try:
            await asyncio.wait_for(self.interception.join(), timeout=SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            self.logger.warning("Background forwards still running at shutdown", in_flight=self.interception.in_flight)
        await self.upstream.close()
        self._started = False
        self.logger.info("Relay engine stopped")

    # Capture API

    async def capture_request(self, envelope: Dict[str, Any], server_request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Persist a request envelope and, when interception is on, evaluate it

        Returns:
            {intercepted: True, request_id} when held, else {success: True, request_id}
        """
        server_request_id = server_request_id or self.new_request_id()
        outcome = await self.capture.capture_request(envelope, server_request_id)
        request_id = outcome.record.id

        if self.flags.intercept_enabled:
            record = await self.interception.submit({**envelope, "id": request_id}, server_request_id)
            if record.intercepted:
                return {"intercepted": True, "request_id": record.id}

        return {"success": True, "request_id": request_id}

    async def capture_response(self, envelope: Dict[str, Any], server_request_id: Optional[str] = None) -> Dict[str, Any]:
        server_request_id = server_request_id or self.new_request_id()
        outcome = await self.capture.capture_response(envelope, server_request_id)
        return {"success": True, "request_id": outcome.record.request_id}

    async def modify_response(self, envelope: Dict[str, Any], server_request_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Persist a response and apply the response rules to it

        Returns:
            {modified: False} or {modified: True, status, headers, body}
        """
        server_request_id = server_request_id or self.new_request_id()
        outcome = await self.capture.capture_response(
            envelope,
            server_request_id,
            capture_type="rewrite_response_modify"
        )
        result = await self.modification.apply_response_rules(outcome.record)
        if result is None:
            return {"modified": False}
        return result.to_reply()

    # Toggles

    def capture_status(self) -> Dict[str, Any]:
        return toggle_status(self.flags.capture_enabled)

    def set_capture_enabled(self, enabled: bool) -> Dict[str, Any]:
        self.flags.capture_enabled = bool(enabled)
        self.logger.info("Capture toggled", enabled=self.flags.capture_enabled)
        return self.capture_status()

    def intercept_status(self) -> Dict[str, Any]:
        return toggle_status(self.flags.intercept_enabled)

    def set_intercept_enabled(self, enabled: bool) -> Dict[str, Any]:
        self.flags.intercept_enabled = bool(enabled)
        self.logger.info("Interception toggled", enabled=self.flags.intercept_enabled)
        return self.intercept_status()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "capture": self.capture.get_stats(),
            "modification": self.modification.get_stats(),
            "interception": self.interception.get_stats(),
            "cleanup": self.cleanup.get_stats(),
            "upstream": self.upstream.get_stats(),
        }
