"""
Cleanup Service

Deletion of captured traffic (by id, by host, in bulk) and time based
retention of the traffic collections.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog

from capture_relay.core.helpers import EPOCH, hostname_of, parse_timestamp, utc_now
from capture_relay.core.store import (
    INTERCEPTED_REQUESTS,
    MODIFIED_RESPONSES,
    REQUESTS,
    RESPONSES,
    CollectionStore,
)

logger = structlog.get_logger()

TRAFFIC_COLLECTIONS = (REQUESTS, RESPONSES, MODIFIED_RESPONSES, INTERCEPTED_REQUESTS)


def _remove(records: List[Dict[str, Any]], predicate) -> List[Dict[str, Any]]:
    """Drop records matching predicate in place and return the removed ones"""
    removed = [record for record in records if predicate(record)]
    if removed:
        records[:] = [record for record in records if not predicate(record)]
    return removed


def _refers_to(record: Dict[str, Any], ids: Iterable[str], keys) -> bool:
    return any(record.get(key) in ids for key in keys if record.get(key))


class CleanupService:
    """Deletes traffic records and enforces the retention window"""

    def __init__(self, store: CollectionStore, retention_days: int = 7, interval_hours: int = 24):
        self.store = store
        self.retention_days = retention_days
        self.interval_hours = interval_hours
        self.logger = logger.bind(component="cleanup_service")
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "cleanup_runs": 0,
            "records_expired": 0,
            "records_deleted": 0,
        }

    # Deletion

    async def delete_request(self, request_id: str) -> Dict[str, Any]:
        """
        Delete a request and the responses that share its id

        Returns:
            {success, deletedCount} where deletedCount counts requests only
        """
        ids = {request_id}
        removed = await self.store.update(
            REQUESTS,
            lambda records: _remove(records, lambda r: _refers_to(r, ids, ("id", "server_request_id")))
        )
        for collection in (RESPONSES, MODIFIED_RESPONSES):
            await self.store.update(
                collection,
                lambda records: _remove(records, lambda r: _refers_to(r, ids, ("request_id", "server_request_id")))
            )

        self.stats["records_deleted"] += len(removed)
        self.logger.info("Request deleted", request_id=request_id, deleted=len(removed))
        return {"success": bool(removed), "deletedCount": len(removed)}

    async def delete_response(self, response_id: str) -> Dict[str, Any]:
        ids = {response_id}
        removed = await self.store.update(
            RESPONSES,
            lambda records: _remove(
                records, lambda r: _refers_to(r, ids, ("id", "request_id", "server_request_id"))
            )
        )
        self.stats["records_deleted"] += len(removed)
        self.logger.info("Response deleted", response_id=response_id, deleted=len(removed))
        return {"success": bool(removed), "deletedCount": len(removed)}

    async def delete_batch(self, collection: str, ids: List[str]) -> Dict[str, Any]:
        """Delete several ids, reporting a result per id"""
        delete = self.delete_request if collection == REQUESTS else self.delete_response
        results = []
        for record_id in ids:
            outcome = await delete(record_id)
            results.append({"id": record_id, **outcome})
        succeeded = sum(1 for result in results if result["success"])
        return {
            "success": succeeded > 0,
            "total": len(ids),
            "succeeded": succeeded,
            "failed": len(ids) - succeeded,
            "results": results,
        }

    async def delete_requests_by_host(self, hostname: str) -> Dict[str, Any]:
        """Delete every request for a host, cascading to its responses"""
        removed = await self.store.update(
            REQUESTS,
            lambda records: _remove(records, lambda r: hostname_of(r.get("url")) == hostname)
        )
        ids = {r.get("id") or r.get("server_request_id") for r in removed} - {None}
        if ids:
            for collection in (RESPONSES, MODIFIED_RESPONSES):
                await self.store.update(
                    collection,
                    lambda records: _remove(
                        records, lambda r: _refers_to(r, ids, ("request_id", "server_request_id"))
                    )
                )

        self.stats["records_deleted"] += len(removed)
        self.logger.info("Requests deleted for host", hostname=hostname, deleted=len(removed))
        return {"success": True, "deletedCount": len(removed)}

    async def delete_responses_by_host(self, hostname: str) -> Dict[str, Any]:
        removed = await self.store.update(
            RESPONSES,
            lambda records: _remove(records, lambda r: hostname_of(r.get("url")) == hostname)
        )
        self.stats["records_deleted"] += len(removed)
        self.logger.info("Responses deleted for host", hostname=hostname, deleted=len(removed))
        return {"success": True, "deletedCount": len(removed)}

    async def clear_all(self) -> Dict[str, int]:
        """Empty every traffic collection, rules are left untouched"""
        def remove_all(records):
            count = len(records)
            records.clear()
            return count

        counts = {}
        for collection in TRAFFIC_COLLECTIONS:
            counts[collection] = await self.store.update(collection, remove_all)
        self.stats["records_deleted"] += sum(counts.values())
        self.logger.warning("All captured data cleared", **counts)
        return counts

    # Retention

    async def cleanup_expired(self, retention_days: Optional[int] = None) -> Dict[str, int]:
        """
        Remove traffic older than the retention window

        Records without a parsable server_timestamp are kept, and held
        intercepted requests are never expired.

        Args:
            retention_days: Override of the configured window, 0 disables cleanup

        Returns:
            Number of removed records per collection
        """
        days = self.retention_days if retention_days is None else retention_days
        if days <= 0:
            return {}

        cutoff = utc_now() - timedelta(days=days)

        def expired(record: Dict[str, Any]) -> bool:
            received = parse_timestamp(record.get("server_timestamp"))
            if received == EPOCH:
                return False
            if record.get("intercepted") and not record.get("released"):
                return False
            return received < cutoff

        counts = {}
        for collection in TRAFFIC_COLLECTIONS:
            removed = await self.store.update(collection, lambda records: _remove(records, expired))
            counts[collection] = len(removed)

        total = sum(counts.values())
        self.stats["cleanup_runs"] += 1
        self.stats["records_expired"] += total
        if total:
            self.logger.info("Expired records removed", retention_days=days, **counts)
        return counts

    async def start(self):
        """Run retention once and keep running it in the background"""
        if self._task is not None or self.retention_days <= 0:
            return
        self._task = asyncio.create_task(self._cleanup_loop())
        self.logger.info(
            "Cleanup loop started",
            retention_days=self.retention_days,
            interval_hours=self.interval_hours
        )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Cleanup loop stopped")

    async def _cleanup_loop(self):
        while True:
            try:
                await self.cleanup_expired()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Cleanup cycle failed", error=str(e))
            await asyncio.sleep(self.interval_hours * 3600)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
