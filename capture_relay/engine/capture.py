"""
Capture Engine

Gates persistence of captured requests and responses behind the global
capture toggle and the capture rules.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

import structlog
from pydantic import ValidationError

from capture_relay.core.errors import StoreError
from capture_relay.core.helpers import utc_now_iso
from capture_relay.core.store import REQUESTS, RESPONSES, CollectionStore
from capture_relay.engine.flags import RelayFlags
from capture_relay.engine.matcher import matches_capture_rules
from capture_relay.engine.rule_store import RuleStore
from capture_relay.models.records import CapturedRequest, CapturedResponse, TrafficRecord, body_size

logger = structlog.get_logger()

SKIP_PAUSED = "capture_paused"
SKIP_FILTERED = "no_capture_rule_matched"
SKIP_STORE_ERROR = "store_error"


@dataclass
class CaptureOutcome:
    """What happened to one captured envelope"""

    record: TrafficRecord
    persisted: bool
    skipped_reason: Optional[str] = None


class CaptureEngine:
    """Persists captured envelopes that pass the capture gate"""

    def __init__(self, store: CollectionStore, rule_store: RuleStore, flags: RelayFlags):
        self.store = store
        self.rule_store = rule_store
        self.flags = flags
        self.logger = logger.bind(component="capture_engine")

        self.stats = {
            "requests_persisted": 0,
            "responses_persisted": 0,
            "skipped": 0,
            "errors": 0,
            "invalid_fields": 0,
        }

    def gate(self, url: str, method: str) -> Optional[str]:
        """Return the reason a record would be skipped, None when it passes"""
        if not self.flags.capture_enabled:
            return SKIP_PAUSED
        if not matches_capture_rules(self.rule_store.capture_rules, url, method):
            return SKIP_FILTERED
        return None

    async def capture_request(self, envelope: Dict[str, Any], server_request_id: str) -> CaptureOutcome:
        data = dict(envelope)
        data.setdefault("id", server_request_id)
        data.update(
            capture_type="rewrite_request",
            server_timestamp=utc_now_iso(),
            server_request_id=server_request_id,
        )
        record = self._validate(CapturedRequest, data)
        return await self._persist(REQUESTS, record)

    async def capture_response(
        self,
        envelope: Dict[str, Any],
        server_request_id: str,
        capture_type: str = "rewrite_response"
    ) -> CaptureOutcome:
        data = dict(envelope)
        if not data.get("request_id"):
            data["request_id"] = server_request_id
        if data.get("body_size") is None:
            data["body_size"] = body_size(data.get("body"))
        data.update(
            capture_type=capture_type,
            server_timestamp=utc_now_iso(),
            server_request_id=server_request_id,
        )
        record = self._validate(CapturedResponse, data)
        return await self._persist(RESPONSES, record)

    def _validate(self, model: Type[TrafficRecord], data: Dict[str, Any]) -> TrafficRecord:
        """
        Type an envelope, dropping fields that cannot be read

        Capture never fails on client data: each invalid top-level field is
        logged and removed before validating again.
        """
        try:
            return model.model_validate(data)
        except ValidationError as e:
            invalid = {error["loc"][0] for error in e.errors() if error["loc"]}
            self.logger.warning("Dropping unreadable envelope fields", fields=sorted(map(str, invalid)), url=data.get("url"))
            self.stats["invalid_fields"] += len(invalid)
            cleaned = {key: value for key, value in data.items() if key not in invalid}
            return model.model_validate(cleaned)

    async def _persist(self, collection: str, record: TrafficRecord) -> CaptureOutcome:
        reason = self.gate(record.url, record.method)
        if reason:
            self.stats["skipped"] += 1
            self.logger.debug("Capture skipped", collection=collection, url=record.url, reason=reason)
            return CaptureOutcome(record=record, persisted=False, skipped_reason=reason)

        try:
            await self.store.append(collection, record.to_record())
        except StoreError as e:
            # At-most-once: the caller still gets the record, unpersisted
            self.stats["errors"] += 1
            self.logger.error("Failed to persist capture", collection=collection, url=record.url, error=str(e))
            return CaptureOutcome(record=record, persisted=False, skipped_reason=SKIP_STORE_ERROR)

        self.stats[f"{collection}_persisted"] += 1
        self.logger.debug("Capture persisted", collection=collection, url=record.url)
        return CaptureOutcome(record=record, persisted=True)

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
