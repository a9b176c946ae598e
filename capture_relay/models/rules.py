"""
Rule models for capture filtering, response rewriting and request interception

Rules are stored as plain JSON objects. Field aliases keep the stored key
names used by the dashboard (pathRegex, responseStatus, createdAt, ...).
"""

import json
from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from capture_relay.core.helpers import new_id, parse_timestamp, utc_now_iso


class Rule(BaseModel):
    """Fields and behaviour shared by every rule kind"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kind: ClassVar[str] = "rule"

    id: str = Field(default_factory=new_id)
    host: str = "*"
    enabled: bool = True
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: Optional[str] = None

    def accepts_method(self, method: str) -> bool:
        raise NotImplementedError

    def accepts_host(self, hostname: str) -> bool:
        # Unanchored containment: "example.com" also matches "evilexample.com.attacker.net"
        return self.host == "*" or self.host in hostname

    @property
    def pattern(self) -> Optional[str]:
        """Path regex, capture rules never carry one"""
        return None

    @property
    def recency(self) -> datetime:
        return parse_timestamp(self.updated_at or self.created_at)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CaptureRule(Rule):
    """Decides whether a captured envelope is persisted at all"""

    kind: ClassVar[str] = "capture"

    host: str
    methods: List[str] = Field(default_factory=list)

    @field_validator("methods", mode="before")
    @classmethod
    def normalize_methods(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(m).strip().upper() for m in v if str(m).strip()]

    def accepts_method(self, method: str) -> bool:
        return not self.methods or method.upper() in self.methods


class PatternRule(Rule):
    """A rule scoped by host, a single method and a path regex"""

    name: str = ""
    method: str = "*"
    path_regex: str = Field("", alias="pathRegex")
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    updated_at: Optional[str] = Field(None, alias="updatedAt")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        if not v:
            return "*"
        return str(v).strip().upper()

    def accepts_method(self, method: str) -> bool:
        return self.method == "*" or self.method == method.upper()

    @property
    def pattern(self) -> Optional[str]:
        return self.path_regex or None


class ResponseRule(PatternRule):
    """Replaces status, headers and body of a matching response"""

    kind: ClassVar[str] = "response"

    response_status: Optional[int] = Field(None, alias="responseStatus")
    response_headers: Optional[Dict[str, Any]] = Field(None, alias="responseHeaders")
    response_body: Optional[str] = Field(None, alias="responseBody")

    @field_validator("response_body", mode="before")
    @classmethod
    def serialize_body(cls, v):
        # Dashboards sometimes post the template as a JSON object
        if v is None or isinstance(v, str):
            return v
        return json.dumps(v, ensure_ascii=False, separators=(",", ":"))


class InterceptRule(PatternRule):
    """Holds matching requests for manual release, optionally rewriting them"""

    kind: ClassVar[str] = "intercept"

    modify_headers: Optional[Dict[str, Any]] = Field(None, alias="modifyHeaders")
    modify_body: Optional[Any] = Field(None, alias="modifyBody")


RULE_MODELS = {
    CaptureRule.kind: CaptureRule,
    ResponseRule.kind: ResponseRule,
    InterceptRule.kind: InterceptRule,
}
