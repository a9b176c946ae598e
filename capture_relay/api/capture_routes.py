"""
Capture API consumed by the traffic-capturing client
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from capture_relay.api.deps import get_relay, get_request_id
from capture_relay.engine.relay import RelayEngine

logger = structlog.get_logger()

router = APIRouter(prefix="/capture", tags=["capture"])


class RequestEnvelope(BaseModel):
    """Request snapshot pushed by the client, unknown fields are kept"""

    model_config = ConfigDict(extra="allow")

    url: str
    method: str = "GET"
    headers: Dict[str, Any] = Field(default_factory=dict)
    body: Any = None


class ResponseEnvelope(RequestEnvelope):
    status: Optional[int] = None


@router.post("/request")
async def capture_request(
    envelope: RequestEnvelope,
    relay: RelayEngine = Depends(get_relay),
    request_id: str = Depends(get_request_id)
):
    """Store a captured request, answers {intercepted: true} when it is held"""
    logger.info("Request captured", url=envelope.url, method=envelope.method)
    return await relay.capture_request(envelope.model_dump(), request_id)


@router.post("/response")
async def capture_response(
    envelope: ResponseEnvelope,
    relay: RelayEngine = Depends(get_relay),
    request_id: str = Depends(get_request_id)
):
    """Store a captured response"""
    logger.info("Response captured", url=envelope.url, status=envelope.status)
    return await relay.capture_response(envelope.model_dump(), request_id)


@router.post("/response/modify")
async def modify_response(
    payload: Dict[str, Any] = Body(...),
    relay: RelayEngine = Depends(get_relay),
    request_id: str = Depends(get_request_id)
):
    """
    Store a captured response and return its rewritten form

    The client always gets a usable answer: any failure is reported as
    {modified: false, error} with status 200.
    """
    try:
        envelope = ResponseEnvelope.model_validate(payload)
        return await relay.modify_response(envelope.model_dump(), request_id)
    except ValidationError as e:
        logger.warning("Invalid response envelope", error=str(e))
        return {"modified": False, "error": str(e)}
    except Exception as e:
        logger.exception("Response modification failed", url=payload.get("url"))
        return {"modified": False, "error": str(e)}
