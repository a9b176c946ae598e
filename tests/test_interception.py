"""
Test the hold / auto-release / manual-release state machine
"""

import asyncio

import pytest

from capture_relay.core.errors import RecordNotFoundError, StoreError
from capture_relay.core.store import INTERCEPTED_REQUESTS, RESPONSES, MemoryStore
from capture_relay.engine.interception import InterceptionEngine
from capture_relay.engine.rule_store import RuleStore


def envelope(url="https://shop.test/cart", method="POST", body="original"):
    return {
        "url": url,
        "method": method,
        "headers": {"Content-Type": "text/plain", "X-Keep": "1"},
        "body": body,
    }


async def make_engine(store, upstream, timeout=2.0):
    rules = RuleStore(store)
    await rules.load()
    return rules, InterceptionEngine(store, rules, upstream, timeout_seconds=timeout)


async def test_unmatched_request_is_auto_released(store, upstream):
    _, engine = await make_engine(store, upstream)

    record = await engine.submit(envelope(), "srv-1")

    assert record.released
    assert record.auto_released
    assert not record.intercepted
    assert record.released_at

    await engine.join()

    stored = await engine.get(record.id)
    assert stored.response.status == 200
    assert stored.response.body == "origin says hi"
    assert upstream.calls[0]["method"] == "POST"
    assert upstream.calls[0]["body"] == "original"

    responses = await store.read_all(RESPONSES)
    assert len(responses) == 1
    assert responses[0]["request_id"] == record.id


async def test_upstream_failure_stored_as_500(store, fake_upstream):
    upstream = fake_upstream(error="Upstream request failed: connection refused")
    _, engine = await make_engine(store, upstream)

    record = await engine.submit(envelope(), "srv-1")
    await engine.join()

    stored = await engine.get(record.id)
    assert stored.released and stored.auto_released
    assert stored.response.status == 500
    assert "connection refused" in stored.response.body
    assert stored.response.error


async def test_slow_origin_times_out_into_500(store, fake_upstream):
    upstream = fake_upstream(delay=5.0)
    _, engine = await make_engine(store, upstream, timeout=0.05)

    record = await engine.submit(envelope(), "srv-1")
    await engine.join()

    stored = await engine.get(record.id)
    assert stored.response.status == 500
    assert "timed out" in stored.response.body


async def test_matching_rule_holds_and_rewrites(store, upstream):
    rules, engine = await make_engine(store, upstream)
    rule = await rules.add("intercept", {
        "host": "shop.test",
        "method": "POST",
        "pathRegex": "^/cart",
        "modifyHeaders": {"X-Injected": "yes", "X-Keep": "2"},
        "modifyBody": "B",
    })

    record = await engine.submit(envelope(), "srv-1")

    assert record.intercepted
    assert not record.released
    assert record.matched_rule_id == rule.id
    assert record.body == "B"
    assert record.headers == {"Content-Type": "text/plain", "X-Keep": "2", "X-Injected": "yes"}
    assert record.original_request.body == "original"
    assert record.original_request.headers == {"Content-Type": "text/plain", "X-Keep": "1"}

    await engine.join()
    assert upstream.calls == [], "held requests must not be forwarded"

    stored = (await store.read_all(INTERCEPTED_REQUESTS))[0]
    assert stored["originalRequest"]["body"] == "original"
    assert stored["body"] == "B"


async def test_release_forwards_current_fields_once(store, upstream):
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "shop.test", "modifyBody": "B"})
    record = await engine.submit(envelope(), "srv-1")

    first = await engine.release(record.id)
    second = await engine.release(record.id)

    assert first.released and not first.auto_released
    assert first.response.status == 200
    assert second.released
    assert second.response == first.response
    assert len(upstream.calls) == 1
    assert upstream.calls[0]["body"] == "B"
    assert len(await store.read_all(RESPONSES)) == 1

    stored = await engine.get(record.id)
    assert stored.original_request.body == "original"


async def test_concurrent_releases_forward_once(store, fake_upstream):
    upstream = fake_upstream(delay=0.05)
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "*"})
    record = await engine.submit(envelope(), "srv-1")

    results = await asyncio.gather(*(engine.release(record.id) for _ in range(5)))

    assert all(result.released for result in results)
    assert len(upstream.calls) == 1
    assert len(await store.read_all(RESPONSES)) == 1


async def test_release_reports_success_when_origin_fails(store, fake_upstream):
    upstream = fake_upstream(error="Upstream request failed: boom")
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "*"})
    record = await engine.submit(envelope(), "srv-1")

    released = await engine.release(record.id)

    assert released.released
    assert released.response.status == 500
    assert "boom" in released.response.body


class ResponsesUnwritable(MemoryStore):
    async def _dump(self, name, records):
        if name == RESPONSES:
            raise StoreError(name, "disk full")
        await super()._dump(name, records)


async def test_release_survives_responses_write_failure(upstream):
    store = ResponsesUnwritable()
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "*"})
    record = await engine.submit(envelope(), "srv-1")

    released = await engine.release(record.id)

    assert released.released
    assert released.response.status == 200
    assert (await engine.get(record.id)).released
    assert engine.get_stats()["errors"] == 1
    assert await store.read_all(RESPONSES) == []


async def test_release_unknown_id(store, upstream):
    _, engine = await make_engine(store, upstream)

    with pytest.raises(RecordNotFoundError):
        await engine.release("missing")


async def test_batch_release_reports_per_item(store, upstream):
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "*"})
    held = await engine.submit(envelope(), "srv-1")

    results = await engine.release_batch([held.id, "missing"])

    by_id = {result["id"]: result for result in results}
    assert by_id[held.id]["success"] is True
    assert by_id[held.id]["status"] == 200
    assert by_id["missing"]["success"] is False
    assert "missing" in by_id["missing"]["error"]


async def test_pending_lists_only_held_requests(store, upstream):
    rules, engine = await make_engine(store, upstream)
    await rules.add("intercept", {"host": "held.test"})

    held = await engine.submit(envelope(url="https://held.test/"), "srv-1")
    await engine.submit(envelope(url="https://free.test/"), "srv-2")
    await engine.join()

    assert [record.id for record in await engine.pending()] == [held.id]


async def test_relay_reports_intercepted_requests(relay, upstream):
    relay.set_intercept_enabled(True)
    await relay.rules.add("intercept", {"host": "shop.test"})

    held = await relay.capture_request(envelope())
    free = await relay.capture_request(envelope(url="https://other.test/"))
    await relay.interception.join()

    assert held["intercepted"] is True
    assert free["success"] is True
    assert len(upstream.calls) == 1


async def test_interception_off_by_default(relay, upstream):
    await relay.rules.add("intercept", {"host": "*"})

    reply = await relay.capture_request(envelope())

    assert reply["success"] is True
    assert upstream.calls == []
