"""
Captured traffic records

Envelopes pushed by the capturing client are kept with every field they
carry; the models below only type the fields the relay reads or sets.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from capture_relay.core.helpers import hostname_of, new_id, parse_timestamp, utc_now_iso


def body_text(body: Any) -> str:
    """Searchable text for a body that may be a string, JSON value or binary marker"""
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"))


def body_size(body: Any) -> int:
    if body is None:
        return 0
    if isinstance(body, dict) and body.get("_type") == "binary":
        # base64 expands 3 bytes into 4 characters
        return len(body.get("data", "")) * 3 // 4
    return len(body_text(body).encode("utf-8"))


def id_text(value: Any) -> Optional[str]:
    """Ids pushed by clients may be numbers, they are stored as strings"""
    if value is None or isinstance(value, str):
        return value
    return str(value)


def timestamp_text(value: Any) -> Optional[str]:
    """
    Normalise a client timestamp to text

    Numbers are read as epoch milliseconds when they are too large to be
    seconds, and rendered as ISO-8601 UTC.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return id_text(value)
    seconds = value / 1000 if abs(value) > 1e11 else value
    try:
        moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return str(value)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TrafficRecord(BaseModel):
    """Base for every stored traffic record"""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    url: str = ""
    method: str = ""
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    server_timestamp: Optional[str] = None
    server_request_id: Optional[str] = None

    @field_validator("url", "method", mode="before")
    @classmethod
    def null_as_empty(cls, v):
        return "" if v is None else v

    @field_validator("headers", mode="before")
    @classmethod
    def null_headers(cls, v):
        return v or {}

    @field_validator("server_request_id", mode="before")
    @classmethod
    def coerce_request_id(cls, v):
        return id_text(v)

    @field_validator("server_timestamp", mode="before")
    @classmethod
    def coerce_server_timestamp(cls, v):
        return timestamp_text(v)

    @property
    def hostname(self) -> Optional[str]:
        return hostname_of(self.url)

    @property
    def received_at(self) -> datetime:
        return parse_timestamp(self.server_timestamp)

    @property
    def status_code(self) -> Optional[int]:
        return None

    def search_fields(self) -> List[str]:
        """Fields searched by keyword and regex filters"""
        fields = [
            self.url or "",
            self.method or "",
            json.dumps(self.headers, ensure_ascii=False, separators=(",", ":")),
            body_text(self.body),
        ]
        if self.status_code is not None:
            fields.append(str(self.status_code))
        return fields

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class CapturedRequest(TrafficRecord):
    """A request snapshot pushed by the capturing client"""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    id: str = Field(default_factory=new_id)
    timestamp: Optional[str] = None
    source: str = "rewrite"
    capture_type: str = "rewrite_request"

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return id_text(v)

    @field_validator("timestamp", mode="before")
    @classmethod
    def coerce_timestamp(cls, v):
        return timestamp_text(v)


class CapturedResponse(TrafficRecord):
    """A response snapshot, correlated to its request on a best-effort basis"""

    request_id: Optional[str] = None
    status: Optional[int] = None
    body_size: int = 0
    capture_type: str = "rewrite_response"

    @field_validator("request_id", mode="before")
    @classmethod
    def coerce_request_id_field(cls, v):
        return id_text(v)

    @field_validator("status", mode="before")
    @classmethod
    def lenient_status(cls, v):
        # Unreadable status codes are stored as unknown
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None

    @field_validator("body_size", mode="before")
    @classmethod
    def lenient_body_size(cls, v):
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    @property
    def status_code(self) -> Optional[int]:
        return self.status

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return str(value).lower()
        return ""


class ModifiedResponse(CapturedResponse):
    """A response rewritten by a response rule"""

    modified: bool = True
    matched_rule: str = Field(alias="matchedRule")
    rule_name: str = Field("", alias="ruleName")
    matched_rules_count: int = Field(1, alias="matchedRulesCount")
    original_url: str = ""
    capture_type: str = "rewrite_response_modify"


class RequestSnapshot(BaseModel):
    """The pristine inbound request, written once when a request is intercepted"""

    model_config = ConfigDict(frozen=True)

    url: str
    method: str
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None


class ForwardedResponse(BaseModel):
    """Response recorded after the relay called the origin itself"""

    model_config = ConfigDict(extra="allow")

    status: int
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    body_size: int = 0
    error: Optional[str] = None
    received_at: str = Field(default_factory=utc_now_iso)


class InterceptedRequest(TrafficRecord):
    """A request evaluated by the interception engine, held or auto-released"""

    id: str = Field(default_factory=new_id)
    original_request: RequestSnapshot = Field(alias="originalRequest")
    intercepted: bool = False
    released: bool = False
    auto_released: bool = Field(False, alias="autoReleased")
    released_at: Optional[str] = Field(None, alias="releasedAt")
    matched_rule_id: Optional[str] = Field(None, alias="matchedRuleId")
    response: Optional[ForwardedResponse] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return id_text(v)

    @property
    def status_code(self) -> Optional[int]:
        return self.response.status if self.response else None
