"""End-to-end scenarios through a ResilienceContext and a mocked HTTP API.

These use real sleeps and a real httpx client over ``httpx.MockTransport``,
so the only thing simulated is the network itself.
"""

import json
import time

import httpx
import pytest

from eventsync.core.connection import ManualSignalSource, NetworkSignals
from eventsync.core.context import ResilienceContext
from eventsync.core.resilience.models import RetryPolicy
from eventsync.core.resilience.runner import RunOptions, RunOutcome, RunState

pytestmark = pytest.mark.integration

API = "https://api.eventsync.test"


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content or b"{}")


@pytest.mark.asyncio
async def test_transport_errors_retried_with_real_backoff(flaky_api, memory_config):
    api = flaky_api(failures=3)
    policy = RetryPolicy(max_attempts=4, base_delay_ms=10, backoff_multiplier=2, timeout_ms=1000)

    async with httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(api)) as client:

        async def list_events():
            response = await client.get("/events")
            response.raise_for_status()
            return response.json()

        async with ResilienceContext.from_config(memory_config) as ctx:
            start = time.monotonic()
            result = await ctx.run(list_events, RunOptions(retry_policy=policy, cache_key="events"))
            elapsed_ms = (time.monotonic() - start) * 1000

            assert result.outcome == RunOutcome.SUCCEEDED
            assert result.attempts == 4
            assert result.trace.count(RunState.RETRYING) == 3
            assert elapsed_ms >= 70
            assert ctx.cache.get("events") == [{"id": 1, "name": "Spring Hackathon"}]

    assert len(api.requests) == 4


@pytest.mark.asyncio
async def test_offline_submission_deferred_then_replayed_once(flaky_api, memory_config):
    api = flaky_api()
    source = ManualSignalSource(NetworkSignals(is_online=False))
    draft = {"title": "Offline-first pitch", "team_id": 4}

    async with httpx.AsyncClient(base_url=API, transport=httpx.MockTransport(api)) as client:

        async def save_submission(payload):
            response = await client.post("/submissions", json=payload)
            response.raise_for_status()
            return response.json()

        async with ResilienceContext.from_config(memory_config, signal_source=source) as ctx:
            ctx.register_handler("submission.save", save_submission)

            result = await ctx.run(
                lambda: save_submission(draft),
                RunOptions(defer_when_offline=True, queue_kind="submission.save", queue_payload=draft),
            )

            assert result.outcome == RunOutcome.DEFERRED
            assert [op.payload for op in ctx.queue.pending()] == [draft]
            assert api.requests == []

            source.set_online(True)
            await ctx.monitor.wait_for_listeners()

            assert len(api.requests) == 1
            assert len(ctx.queue) == 0

            # A later offline/online cycle has nothing left to replay
            source.set_online(False)
            source.set_online(True)
            await ctx.monitor.wait_for_listeners()

    assert len(api.requests) == 1
    assert _json(api.requests[0]) == draft
