"""
Interception Engine

Hold / auto-release state machine for captured requests.

A request that matches no intercept rule is released at once and forwarded
to its origin by a background task. A matching request is rewritten by the
rule, stored as held, and only forwarded when an operator releases it.
Origin calls never raise into the caller: failures become a stored 500
response carrying the error text.
"""

import asyncio
from typing import Any, Dict, List, Optional, Set

import structlog

from capture_relay.core.errors import RecordNotFoundError, StoreError, UpstreamError
from capture_relay.core.helpers import utc_now_iso
from capture_relay.core.store import INTERCEPTED_REQUESTS, RESPONSES, CollectionStore
from capture_relay.engine.matcher import match_url
from capture_relay.engine.rule_store import RuleStore
from capture_relay.engine.upstream import UpstreamClient
from capture_relay.models.records import (
    CapturedResponse,
    ForwardedResponse,
    InterceptedRequest,
    RequestSnapshot,
    body_size,
)

logger = structlog.get_logger()


class InterceptionEngine:
    """
    Evaluates intercept rules and forwards released requests

    Origin calls run as independent tasks tracked in self._tasks, so a slow
    origin never blocks capture or the release of other requests. Manual
    releases of the same id share one task, which makes release exactly-once.
    """

    def __init__(
        self,
        store: CollectionStore,
        rule_store: RuleStore,
        upstream: UpstreamClient,
        timeout_seconds: float = 30.0
    ):
        self.store = store
        self.rule_store = rule_store
        self.upstream = upstream
        self.timeout_seconds = timeout_seconds
        self.logger = logger.bind(component="interception_engine")

        self._tasks: Set[asyncio.Task] = set()
        self._releases: Dict[str, asyncio.Task] = {}
        self._release_lock = asyncio.Lock()

        self.stats = {
            "intercepted": 0,
            "auto_released": 0,
            "manually_released": 0,
            "upstream_errors": 0,
            "errors": 0,
        }

    # Intake

    async def submit(self, envelope: Dict[str, Any], server_request_id: str) -> InterceptedRequest:
        """
        Evaluate a request envelope against the intercept rules

        Args:
            envelope: Request envelope (url, method, headers, body)
            server_request_id: Id assigned to the inbound capture call

        Returns:
            The stored InterceptedRequest, held when a rule matched
        """
        snapshot = RequestSnapshot(
            url=envelope.get("url") or "",
            method=(envelope.get("method") or "GET").upper(),
            headers=dict(envelope.get("headers") or {}),
            body=envelope.get("body"),
        )
        record_id = envelope.get("id") or server_request_id
        match = match_url(self.rule_store.intercept_rules, snapshot.url, snapshot.method)

        common = {
            "id": record_id,
            "url": snapshot.url,
            "method": snapshot.method,
            "original_request": snapshot,
            "server_timestamp": utc_now_iso(),
            "server_request_id": server_request_id,
        }

        if match is None:
            record = InterceptedRequest(
                headers=dict(snapshot.headers),
                body=snapshot.body,
                intercepted=False,
                released=True,
                auto_released=True,
                released_at=utc_now_iso(),
                **common
            )
            await self._store_record(record)
            self._spawn(self._auto_release(record))
            self.stats["auto_released"] += 1
            self.logger.debug("Request auto-released", request_id=record.id, url=record.url)
            return record

        rule = match.rule
        headers = dict(snapshot.headers)
        if rule.modify_headers:
            headers.update(rule.modify_headers)
        body = rule.modify_body if rule.modify_body is not None else snapshot.body

        record = InterceptedRequest(
            headers=headers,
            body=body,
            intercepted=True,
            released=False,
            matched_rule_id=rule.id,
            **common
        )
        await self._store_record(record)
        self.stats["intercepted"] += 1
        self.logger.info(
            "Request intercepted",
            request_id=record.id,
            url=record.url,
            method=record.method,
            rule_id=rule.id,
            rule_name=rule.name
        )
        return record

    async def _store_record(self, record: InterceptedRequest):
        try:
            await self.store.append(INTERCEPTED_REQUESTS, record.to_record())
        except StoreError as e:
            self.logger.error("Failed to persist intercepted request", request_id=record.id, error=str(e))

    # Origin calls

    async def forward(self, record: InterceptedRequest) -> ForwardedResponse:
        """Send the current request fields to the origin, never raises"""
        try:
            result = await asyncio.wait_for(
                self.upstream.send(record.method, record.url, record.headers, record.body),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            return self._error_response(record, f"Upstream request timed out after {self.timeout_seconds}s")
        except UpstreamError as e:
            return self._error_response(record, str(e))
        except Exception as e:
            self.logger.exception("Unexpected error forwarding request", request_id=record.id)
            return self._error_response(record, str(e) or type(e).__name__)

        return ForwardedResponse(
            status=result.status,
            headers=result.headers,
            body=result.body,
            body_size=result.body_size
        )

    def _error_response(self, record: InterceptedRequest, message: str) -> ForwardedResponse:
        self.stats["upstream_errors"] += 1
        self.logger.warning("Upstream call failed", request_id=record.id, url=record.url, error=message)
        return ForwardedResponse(
            status=500,
            headers={},
            body=message,
            body_size=body_size(message),
            error=message
        )

    async def _record_response(
        self,
        record: InterceptedRequest,
        response: ForwardedResponse,
        mark_released: bool
    ) -> Optional[Dict[str, Any]]:
        """Attach the response to the stored record and copy it to the responses collection"""
        released_at = record.released_at or utc_now_iso()

        def attach(records):
            for stored in records:
                if stored.get("id") == record.id:
                    stored["response"] = response.model_dump()
                    if mark_released:
                        stored["released"] = True
                        stored["releasedAt"] = released_at
                    return dict(stored)
            return None

        stored = await self.store.update(INTERCEPTED_REQUESTS, attach)

        captured = CapturedResponse(
            request_id=record.id,
            url=record.url,
            method=record.method,
            status=response.status,
            headers=response.headers,
            body=response.body,
            body_size=response.body_size,
            server_timestamp=utc_now_iso(),
            server_request_id=record.server_request_id,
            capture_type="intercept_release",
        )
        try:
            await self.store.append(RESPONSES, captured.to_record())
        except StoreError as e:
            # The intercepted record already carries the response
            self.stats["errors"] += 1
            self.logger.error("Failed to copy released response", request_id=record.id, error=str(e))
        return stored

    async def _auto_release(self, record: InterceptedRequest):
        response = await self.forward(record)
        try:
            await self._record_response(record, response, mark_released=False)
        except StoreError as e:
            self.logger.error("Failed to store auto-released response", request_id=record.id, error=str(e))

    # Manual release

    async def release(self, record_id: str) -> InterceptedRequest:
        """
        Forward a held request and record the origin's response

        Releasing an already released request returns the stored record
        without calling the origin again.

        Raises:
            RecordNotFoundError: no intercepted request has this id
        """
        async with self._release_lock:
            task = self._releases.get(record_id)
            if task is None:
                record = await self.get(record_id)
                if record.released:
                    self.logger.debug("Request already released", request_id=record_id)
                    return record
                task = asyncio.create_task(self._release(record))
                self._releases[record_id] = task
        return await asyncio.shield(task)

    async def _release(self, record: InterceptedRequest) -> InterceptedRequest:
        try:
            record = record.model_copy(update={"released_at": utc_now_iso()})
            response = await self.forward(record)
            stored = await self._record_response(record, response, mark_released=True)
        finally:
            self._releases.pop(record.id, None)

        self.stats["manually_released"] += 1
        self.logger.info("Request released", request_id=record.id, url=record.url, status=response.status)
        if stored is not None:
            return InterceptedRequest.model_validate(stored)
        return record.model_copy(update={"released": True, "response": response})

    async def release_batch(self, record_ids: List[str]) -> List[Dict[str, Any]]:
        """Release each id independently and report per-item results"""

        async def release_one(record_id: str) -> Dict[str, Any]:
            try:
                record = await self.release(record_id)
            except RecordNotFoundError as e:
                return {"id": record_id, "success": False, "error": str(e)}
            except StoreError as e:
                self.logger.error("Release failed", request_id=record_id, error=str(e))
                return {"id": record_id, "success": False, "error": str(e)}
            return {"id": record_id, "success": True, "status": record.status_code}

        return list(await asyncio.gather(*(release_one(record_id) for record_id in record_ids)))

    # Reads

    async def list_records(self) -> List[InterceptedRequest]:
        records = await self.store.read_all(INTERCEPTED_REQUESTS)
        return [InterceptedRequest.model_validate(record) for record in records]

    async def get(self, record_id: str) -> InterceptedRequest:
        for record in await self.store.read_all(INTERCEPTED_REQUESTS):
            if record.get("id") == record_id:
                return InterceptedRequest.model_validate(record)
        raise RecordNotFoundError(INTERCEPTED_REQUESTS, record_id)

    async def pending(self) -> List[InterceptedRequest]:
        return [record for record in await self.list_records() if not record.released]

    # Task tracking

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks) + len(self._releases)

    async def join(self):
        """Wait until every background origin call has finished"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "in_flight": self.in_flight}
