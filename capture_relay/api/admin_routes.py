"""
Admin API for the dashboard

Provides endpoints for:
- Rule management (capture, response and intercept rules)
- Paginated traffic queries, hosts and statistics
- Deletion and bulk cleanup
- Release of intercepted requests
- Capture and interception toggles
"""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from capture_relay.api.deps import get_config, get_relay
from capture_relay.core.config import ApplicationConfig
from capture_relay.core.store import INTERCEPTED_REQUESTS, MODIFIED_RESPONSES, REQUESTS, RESPONSES
from capture_relay.engine.relay import RelayEngine
from capture_relay.models.rules import CaptureRule, InterceptRule, ResponseRule

logger = structlog.get_logger()

router = APIRouter(prefix="/admin", tags=["admin"])

CLEAR_DATA_TOKEN = "YES_DELETE_ALL"
CLEAR_RULES_TOKEN = "YES_DELETE_ALL_RULES"


class IdsRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class ConfirmRequest(BaseModel):
    confirm: Optional[str] = None


def _require_ids(request: IdsRequest) -> List[str]:
    if not request.ids:
        raise HTTPException(status_code=400, detail="Provide a non-empty ids array")
    return request.ids


def _require_bool(payload: Dict[str, Any]) -> bool:
    enabled = payload.get("enabled")
    if not isinstance(enabled, bool):
        raise HTTPException(status_code=400, detail="enabled must be a boolean")
    return enabled


# Rule management

def register_rule_routes(path: str, kind: str):
    """Add list/get/create/update/delete/toggle/clear routes for one rule kind"""

    @router.get(f"/{path}", name=f"list_{kind}_rules")
    async def list_rules(relay: RelayEngine = Depends(get_relay)):
        return [rule.to_record() for rule in relay.rules.rules(kind)]

    @router.get(f"/{path}/{{rule_id}}", name=f"get_{kind}_rule")
    async def get_rule(rule_id: str, relay: RelayEngine = Depends(get_relay)):
        return relay.rules.get(kind, rule_id).to_record()

    @router.post(f"/{path}", status_code=201, name=f"create_{kind}_rule")
    async def create_rule(payload: Dict[str, Any] = Body(...), relay: RelayEngine = Depends(get_relay)):
        rule = await relay.rules.add(kind, payload)
        return rule.to_record()

    @router.put(f"/{path}/{{rule_id}}", name=f"update_{kind}_rule")
    async def update_rule(
        rule_id: str,
        payload: Dict[str, Any] = Body(...),
        relay: RelayEngine = Depends(get_relay)
    ):
        rule = await relay.rules.update(kind, rule_id, payload)
        return rule.to_record()

    @router.patch(f"/{path}/{{rule_id}}/status", name=f"set_{kind}_rule_status")
    async def set_rule_status(
        rule_id: str,
        payload: Dict[str, Any] = Body(...),
        relay: RelayEngine = Depends(get_relay)
    ):
        rule = await relay.rules.set_enabled(kind, rule_id, _require_bool(payload))
        return {"success": True, "rule": rule.to_record()}

    @router.patch(f"/{path}/{{rule_id}}/enable", name=f"enable_{kind}_rule")
    async def enable_rule(rule_id: str, relay: RelayEngine = Depends(get_relay)):
        rule = await relay.rules.set_enabled(kind, rule_id, True)
        return {"success": True, "rule": rule.to_record()}

    @router.patch(f"/{path}/{{rule_id}}/disable", name=f"disable_{kind}_rule")
    async def disable_rule(rule_id: str, relay: RelayEngine = Depends(get_relay)):
        rule = await relay.rules.set_enabled(kind, rule_id, False)
        return {"success": True, "rule": rule.to_record()}

    @router.delete(f"/{path}/{{rule_id}}", name=f"delete_{kind}_rule")
    async def delete_rule(rule_id: str, relay: RelayEngine = Depends(get_relay)):
        await relay.rules.delete(kind, rule_id)
        return {"success": True, "id": rule_id}

    @router.delete(f"/{path}", name=f"clear_{kind}_rules")
    async def clear_rules(request: ConfirmRequest = Body(...), relay: RelayEngine = Depends(get_relay)):
        if request.confirm != CLEAR_RULES_TOKEN:
            raise HTTPException(status_code=400, detail=f"Send confirm={CLEAR_RULES_TOKEN} to delete every rule")
        count = await relay.rules.clear(kind)
        return {"success": True, "deletedCount": count}


register_rule_routes("capture-rules", CaptureRule.kind)
register_rule_routes("response-rules", ResponseRule.kind)
register_rule_routes("intercept-rules", InterceptRule.kind)


# Paginated queries

def register_paginated_route(path: str, collection: str):

    @router.get(f"/{path}", name=f"paginate_{collection}")
    async def paginate(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=1000),
        host: Optional[str] = None,
        keyword: Optional[str] = None,
        is_regex: bool = Query(False, alias="isRegex"),
        relay: RelayEngine = Depends(get_relay)
    ):
        return await relay.query.paginate(collection, page, limit, host, keyword, is_regex)


register_paginated_route("requests-paginated", REQUESTS)
register_paginated_route("responses-paginated", RESPONSES)
register_paginated_route("modified-responses-paginated", MODIFIED_RESPONSES)
register_paginated_route("intercepted-paginated", INTERCEPTED_REQUESTS)


# Hosts and statistics

@router.get("/hosts")
async def list_hosts(relay: RelayEngine = Depends(get_relay)):
    """Distinct hostnames seen in captured responses"""
    return await relay.query.hosts()


@router.get("/hosts-paginated")
async def list_hosts_paginated(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=1000),
    keyword: Optional[str] = None,
    relay: RelayEngine = Depends(get_relay)
):
    return await relay.query.hosts_paginated(page, limit, keyword)


@router.get("/hosts/active")
async def list_active_hosts(hours: int = Query(24, ge=1), relay: RelayEngine = Depends(get_relay)):
    """Hosts with responses in the last `hours` hours, busiest first"""
    return await relay.query.active_hosts(hours)


@router.get("/stats")
async def get_stats(relay: RelayEngine = Depends(get_relay)):
    """Per-host response counts plus engine counters"""
    stats = await relay.query.stats()
    stats["engine"] = relay.get_stats()
    return stats


# Full lists and details

@router.get("/requests")
async def list_requests(relay: RelayEngine = Depends(get_relay)):
    return await relay.query.list_all(REQUESTS)


@router.get("/responses")
async def list_responses(relay: RelayEngine = Depends(get_relay)):
    return await relay.query.list_all(RESPONSES)


@router.get("/modified-responses")
async def list_modified_responses(relay: RelayEngine = Depends(get_relay)):
    return await relay.query.list_all(MODIFIED_RESPONSES)


@router.get("/requests/{request_id}")
async def get_request(request_id: str, relay: RelayEngine = Depends(get_relay)):
    return await relay.query.find_request(request_id)


@router.get("/responses/{request_id}")
async def get_response(request_id: str, relay: RelayEngine = Depends(get_relay)):
    return await relay.query.find_response(request_id)


@router.get("/modified-responses/{request_id}")
async def get_modified_response(request_id: str, relay: RelayEngine = Depends(get_relay)):
    return await relay.query.find_modified_response(request_id)


# Deletion

@router.delete("/requests/batch")
async def delete_requests_batch(request: IdsRequest = Body(...), relay: RelayEngine = Depends(get_relay)):
    return await relay.cleanup.delete_batch(REQUESTS, _require_ids(request))


@router.delete("/responses/batch")
async def delete_responses_batch(request: IdsRequest = Body(...), relay: RelayEngine = Depends(get_relay)):
    return await relay.cleanup.delete_batch(RESPONSES, _require_ids(request))


@router.delete("/requests/{request_id}")
async def delete_request(request_id: str, relay: RelayEngine = Depends(get_relay)):
    """Delete a request together with the responses that share its id"""
    result = await relay.cleanup.delete_request(request_id)
    if not result["success"]:
        raise HTTPException(status_code=404, detail=f"No request with id {request_id}")
    return result


@router.delete("/responses/{response_id}")
async def delete_response(response_id: str, relay: RelayEngine = Depends(get_relay)):
    result = await relay.cleanup.delete_response(response_id)
    if not result["success"]:
        raise HTTPException(status_code=404, detail=f"No response with id {response_id}")
    return result


@router.delete("/hosts/{hostname}/requests")
async def delete_host_requests(hostname: str, relay: RelayEngine = Depends(get_relay)):
    return await relay.cleanup.delete_requests_by_host(hostname)


@router.delete("/hosts/{hostname}/responses")
async def delete_host_responses(hostname: str, relay: RelayEngine = Depends(get_relay)):
    return await relay.cleanup.delete_responses_by_host(hostname)


@router.delete("/all-data")
async def delete_all_data(request: ConfirmRequest = Body(...), relay: RelayEngine = Depends(get_relay)):
    """Empty every traffic collection, requires confirm=YES_DELETE_ALL"""
    if request.confirm != CLEAR_DATA_TOKEN:
        raise HTTPException(status_code=400, detail=f"Send confirm={CLEAR_DATA_TOKEN} to delete all data")
    counts = await relay.cleanup.clear_all()
    return {"success": True, "deleted": counts}


# Interception

@router.get("/intercepted/{record_id}")
async def get_intercepted(record_id: str, relay: RelayEngine = Depends(get_relay)):
    record = await relay.interception.get(record_id)
    return record.to_record()


@router.post("/intercepted/release-batch")
async def release_batch(request: IdsRequest = Body(...), relay: RelayEngine = Depends(get_relay)):
    """Release several held requests, results are reported per id"""
    results = await relay.interception.release_batch(_require_ids(request))
    return {
        "success": True,
        "released": sum(1 for result in results if result["success"]),
        "results": results,
    }


@router.post("/intercepted/{record_id}/release")
async def release_intercepted(record_id: str, relay: RelayEngine = Depends(get_relay)):
    """Forward a held request to its origin, repeated calls are no-ops"""
    record = await relay.interception.release(record_id)
    return {"success": True, "request": record.to_record()}


# Toggles and status

@router.get("/capture-status")
async def get_capture_status(relay: RelayEngine = Depends(get_relay)):
    return relay.capture_status()


@router.post("/capture-status")
async def set_capture_status(payload: Dict[str, Any] = Body(...), relay: RelayEngine = Depends(get_relay)):
    status = relay.set_capture_enabled(_require_bool(payload))
    return {"success": True, "status": status}


@router.get("/intercept-status")
async def get_intercept_status(relay: RelayEngine = Depends(get_relay)):
    return relay.intercept_status()


@router.post("/intercept-status")
async def set_intercept_status(payload: Dict[str, Any] = Body(...), relay: RelayEngine = Depends(get_relay)):
    status = relay.set_intercept_enabled(_require_bool(payload))
    return {"success": True, "status": status}


@router.get("/status")
async def get_store_status(
    relay: RelayEngine = Depends(get_relay),
    config: ApplicationConfig = Depends(get_config)
):
    """Backing files of every collection and the effective configuration"""
    return {**relay.store.describe(), "config": config.to_dict()}
