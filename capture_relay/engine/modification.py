"""
Modification Engine

Applies response rules to a captured response and produces the rewritten
response that is echoed back to the capturing client.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from capture_relay.core.errors import StoreError
from capture_relay.core.helpers import utc_now_iso
from capture_relay.core.store import MODIFIED_RESPONSES, CollectionStore
from capture_relay.engine.body import render_template
from capture_relay.engine.flags import RelayFlags
from capture_relay.engine.matcher import match_url
from capture_relay.engine.rule_store import RuleStore
from capture_relay.models.records import CapturedResponse, ModifiedResponse, body_size
from capture_relay.models.rules import ResponseRule

logger = structlog.get_logger()

DEFAULT_STATUS = 200


@dataclass
class RewrittenResponse:
    """Derived response returned to the client when a rule matched"""

    status: int
    headers: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    rule: Optional[ResponseRule] = None
    candidates: int = 1
    record: Optional[ModifiedResponse] = None

    def to_reply(self) -> Dict[str, Any]:
        return {
            "modified": True,
            "status": self.status,
            "headers": self.headers,
            "body": self.body,
        }


class ModificationEngine:
    """Rewrites responses that match an enabled response rule"""

    def __init__(self, store: CollectionStore, rule_store: RuleStore, flags: RelayFlags):
        self.store = store
        self.rule_store = rule_store
        self.flags = flags
        self.logger = logger.bind(component="modification_engine")

        self.stats = {
            "evaluated": 0,
            "modified": 0,
            "errors": 0,
        }

    def rewrite(self, response: CapturedResponse, rule: ResponseRule) -> Dict[str, Any]:
        """Status, headers and body produced by a rule for one response"""
        status = rule.response_status
        if status is None:
            status = response.status if response.status is not None else DEFAULT_STATUS

        headers = rule.response_headers
        if headers is None:
            headers = response.headers or {}

        if rule.response_body is None:
            body = response.body
        else:
            body = render_template(rule.response_body, response.content_type)

        return {"status": status, "headers": dict(headers), "body": body}

    async def apply_response_rules(self, response: CapturedResponse) -> Optional[RewrittenResponse]:
        """
        Resolve the best response rule for a captured response and rewrite it

        Args:
            response: The captured response, its url and method drive matching

        Returns:
            RewrittenResponse when a rule matched, None otherwise
        """
        self.stats["evaluated"] += 1
        match = match_url(self.rule_store.response_rules, response.url, response.method)
        if match is None:
            return None

        rule = match.rule
        rewritten = self.rewrite(response, rule)
        result = RewrittenResponse(rule=rule, candidates=match.candidates, **rewritten)
        self.stats["modified"] += 1
        self.logger.info(
            "Response modified",
            url=response.url,
            rule_id=rule.id,
            rule_name=rule.name,
            candidates=match.candidates,
            status=result.status
        )

        if self.flags.capture_enabled:
            result.record = await self._persist(response, result)
        return result

    async def _persist(self, response: CapturedResponse, result: RewrittenResponse) -> Optional[ModifiedResponse]:
        data = response.to_record()
        data.update(
            status=result.status,
            headers=result.headers,
            body=result.body,
            body_size=body_size(result.body),
            matchedRule=result.rule.id,
            ruleName=result.rule.name,
            matchedRulesCount=result.candidates,
            original_url=response.url,
            capture_type="rewrite_response_modify",
            server_timestamp=response.server_timestamp or utc_now_iso(),
        )
        record = ModifiedResponse.model_validate(data)

        try:
            await self.store.append(MODIFIED_RESPONSES, record.to_record())
        except StoreError as e:
            self.stats["errors"] += 1
            self.logger.error("Failed to persist modified response", url=response.url, error=str(e))
        return record

    def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()
