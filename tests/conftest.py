"""
Shared fixtures: in-memory store, scripted upstream and a started engine
"""

import asyncio

import pytest

from capture_relay.core.errors import UpstreamError
from capture_relay.core.store import MemoryStore
from capture_relay.engine.relay import RelayEngine
from capture_relay.engine.upstream import UpstreamResponse
from capture_relay.models.records import body_size


class FakeUpstream:
    """Stands in for UpstreamClient and records every call"""

    def __init__(self, status=200, body="origin says hi", headers=None, error=None, delay=0.0):
        self.status = status
        self.body = body
        self.headers = headers or {"Content-Type": "text/plain"}
        self.error = error
        self.delay = delay
        self.calls = []
        self.closed = False

    async def send(self, method, url, headers=None, body=None):
        self.calls.append({"method": method, "url": url, "headers": dict(headers or {}), "body": body})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise UpstreamError(self.error, url=url)
        return UpstreamResponse(
            status=self.status,
            headers=dict(self.headers),
            body=self.body,
            body_size=body_size(self.body)
        )

    async def close(self):
        self.closed = True

    def get_stats(self):
        return {"requests_sent": len(self.calls)}


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def relay(store, upstream):
    engine = RelayEngine(store, upstream=upstream, retention_days=0, upstream_timeout_seconds=2.0)
    await engine.start()
    yield engine
    await engine.close()


@pytest.fixture
def fake_upstream():
    """Factory for upstreams with a scripted failure or delay"""
    return FakeUpstream
