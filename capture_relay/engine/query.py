"""
Query Service

Filtered, paginated reads over the stored traffic collections, plus the host
listings and per-host statistics shown by the dashboard.
"""

import math
import re
from collections import Counter
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import structlog
from pydantic import ValidationError

from capture_relay.core.errors import RecordNotFoundError
from capture_relay.core.helpers import utc_now, utc_now_iso
from capture_relay.core.store import (
    INTERCEPTED_REQUESTS,
    MODIFIED_RESPONSES,
    REQUESTS,
    RESPONSES,
    CollectionStore,
)
from capture_relay.models.records import (
    CapturedRequest,
    CapturedResponse,
    InterceptedRequest,
    ModifiedResponse,
    TrafficRecord,
)

logger = structlog.get_logger()

COLLECTION_MODELS: Dict[str, Type[TrafficRecord]] = {
    REQUESTS: CapturedRequest,
    RESPONSES: CapturedResponse,
    MODIFIED_RESPONSES: ModifiedResponse,
    INTERCEPTED_REQUESTS: InterceptedRequest,
}

DEFAULT_PAGE_SIZE = 20

Entry = Tuple[Dict[str, Any], TrafficRecord]


def keyword_predicate(keyword: str, is_regex: bool) -> Callable[[TrafficRecord], bool]:
    """
    Build the keyword filter

    Regex search is case-insensitive. An invalid pattern, or a plain keyword,
    is matched as a case-sensitive substring.
    """
    if is_regex:
        try:
            pattern = re.compile(keyword, re.IGNORECASE)
        except re.error as e:
            logger.warning("Invalid search regex, using substring search", keyword=keyword, error=str(e))
        else:
            return lambda record: any(pattern.search(value) for value in record.search_fields())

    return lambda record: any(keyword in value for value in record.search_fields())


def paginate_list(items: List[Any], page: int, limit: int) -> Dict[str, Any]:
    total = len(items)
    start = (page - 1) * limit
    return {
        "data": items[start:start + limit],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": math.ceil(total / limit),
        },
    }


class QueryService:
    """Read side of the relay"""

    def __init__(self, store: CollectionStore):
        self.store = store
        self.logger = logger.bind(component="query_service")

    def _model(self, collection: str) -> Type[TrafficRecord]:
        try:
            return COLLECTION_MODELS[collection]
        except KeyError:
            raise RecordNotFoundError(collection, "*") from None

    async def load(self, collection: str) -> List[Entry]:
        """Stored records paired with their typed view, malformed records skipped"""
        model = self._model(collection)
        entries = []
        for record in await self.store.read_all(collection):
            try:
                entries.append((record, model.model_validate(record)))
            except ValidationError as e:
                self.logger.warning("Skipping malformed record", collection=collection, error=str(e))
        return entries

    async def paginate(
        self,
        collection: str,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        host: Optional[str] = None,
        keyword: Optional[str] = None,
        is_regex: bool = False
    ) -> Dict[str, Any]:
        """
        Filter, sort and slice one collection

        Args:
            collection: Collection name
            page: 1-based page number
            limit: Page size
            host: Exact hostname filter, records with unparsable URLs never match
            keyword: Keyword searched in url, method, headers, body and status
            is_regex: Treat keyword as a case-insensitive regular expression

        Returns:
            {data, pagination: {total, page, limit, totalPages}}, newest first
        """
        page = max(1, int(page))
        limit = max(1, int(limit))
        entries = await self.load(collection)

        if host:
            entries = [entry for entry in entries if entry[1].hostname == host]
        if keyword:
            matches = keyword_predicate(keyword, is_regex)
            entries = [entry for entry in entries if matches(entry[1])]

        entries.sort(key=lambda entry: entry[1].received_at, reverse=True)
        return paginate_list([record for record, _ in entries], page, limit)

    async def list_all(self, collection: str) -> List[Dict[str, Any]]:
        self._model(collection)
        return await self.store.read_all(collection)

    async def find(self, collection: str, record_id: str, keys=("id", "server_request_id")) -> Dict[str, Any]:
        """First record whose id-like fields equal record_id"""
        for record in await self.store.read_all(collection):
            if any(record.get(key) == record_id for key in keys):
                return record
        raise RecordNotFoundError(collection, record_id)

    async def find_request(self, record_id: str) -> Dict[str, Any]:
        return await self.find(REQUESTS, record_id)

    async def find_response(self, request_id: str) -> Dict[str, Any]:
        return await self.find(RESPONSES, request_id, keys=("request_id", "server_request_id"))

    async def find_modified_response(self, request_id: str) -> Dict[str, Any]:
        return await self.find(MODIFIED_RESPONSES, request_id, keys=("request_id", "server_request_id"))

    # Hosts

    async def hosts(self) -> List[str]:
        """Distinct hostnames seen in captured responses, in first-seen order"""
        seen = {}
        for _, response in await self.load(RESPONSES):
            if response.hostname:
                seen.setdefault(response.hostname, None)
        return list(seen)

    async def hosts_paginated(self, page: int = 1, limit: int = DEFAULT_PAGE_SIZE, keyword: Optional[str] = None):
        hosts = await self.hosts()
        if keyword:
            needle = keyword.lower()
            hosts = [host for host in hosts if needle in host.lower()]
        hosts.sort()
        return paginate_list(hosts, max(1, int(page)), max(1, int(limit)))

    async def active_hosts(self, hours: int = 24) -> Dict[str, Any]:
        """Hosts with responses inside the window, busiest first"""
        cutoff = utc_now() - timedelta(hours=hours)
        activity: Dict[str, Dict[str, Any]] = {}

        for record, response in await self.load(RESPONSES):
            if not record.get("server_timestamp") or response.received_at < cutoff:
                continue
            if not response.hostname:
                continue
            entry = activity.setdefault(response.hostname, {
                "hostname": response.hostname,
                "count": 0,
                "lastActive": None,
                "_last": None,
            })
            entry["count"] += 1
            if entry["_last"] is None or response.received_at > entry["_last"]:
                entry["_last"] = response.received_at
                entry["lastActive"] = response.server_timestamp

        hosts = sorted(activity.values(), key=lambda entry: entry["count"], reverse=True)
        for entry in hosts:
            entry.pop("_last")
        return {"hours": hours, "hosts": hosts}

    async def stats(self) -> Dict[str, Any]:
        """Per-host response counts, modified counts and method histograms"""
        responses = await self.load(RESPONSES)
        modified = await self.load(MODIFIED_RESPONSES)

        per_host: Dict[str, Dict[str, Any]] = {}
        for _, response in responses:
            if not response.hostname:
                continue
            entry = per_host.setdefault(response.hostname, {
                "hostname": response.hostname,
                "responseCount": 0,
                "modifiedCount": 0,
                "methods": Counter(),
            })
            entry["responseCount"] += 1
            entry["methods"][response.method or "UNKNOWN"] += 1

        for _, response in modified:
            if response.hostname in per_host:
                per_host[response.hostname]["modifiedCount"] += 1

        for entry in per_host.values():
            entry["methods"] = dict(entry["methods"])

        return {
            "totalResponses": len(responses),
            "totalModifiedResponses": len(modified),
            "hosts": list(per_host.values()),
            "lastUpdated": utc_now_iso(),
        }
