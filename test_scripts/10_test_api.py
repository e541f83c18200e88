#!/usr/bin/env python3
"""
Test: HTTP API
Purpose: Verify the streaming endpoint and the archive/admin endpoints end to end

Tests:
- POST /api/agent/runs streams a framed run
- Invalid bodies are rejected with 422 before streaming
- Duplicate runs get 409 and runs during shutdown get 503
- Auth rejections arrive as a RUN_ERROR on the stream
- Archived runs can be listed, inspected and replayed
- Active runs can be cancelled
"""

import asyncio
import sys

import httpx

from fixtures import (
    run_tests, ArchiveContext,
    assert_equal, assert_true, assert_false, assert_in,
)

from main import create_app
from agui_engine.agent_layer.adapters.echo import EchoAgent
from agui_engine.agent_layer.orchestrator import RunOrchestrator
from agui_engine.agent_layer.pipeline import build_default_pipeline
from agui_engine.config.settings import Settings
from agui_engine.core.supervisor import RunSupervisor
from agui_engine.core.transport import decode_frames
from agui_engine.models.events import decode_event


def build_app(archive=None, agent=None, settings=None, with_pipeline=False):
    """App with state wired by hand; ASGITransport does not run the lifespan"""
    settings = settings or Settings(auth_secret_key=None)
    app = create_app()
    supervisor = RunSupervisor(drain_timeout=1.0)
    app.state.archive = archive
    app.state.supervisor = supervisor
    app.state.orchestrator = RunOrchestrator(
        agent or EchoAgent(chunk_size=4),
        stages=build_default_pipeline(settings) if with_pipeline else None,
        supervisor=supervisor,
        archive=archive,
        settings=settings,
    )
    return app


def client_for(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def run_body(thread_id="t1", run_id="r1", text="hello api"):
    """Wire-format run request body"""
    return {
        "threadId": thread_id,
        "runId": run_id,
        "messages": [{"id": f"{run_id}-user", "role": "user", "content": text}],
    }


def stream_events(response):
    return [decode_event(payload) for payload in decode_frames(response.content)]


async def wait_idle(supervisor, timeout=2.0):
    """Runs are archived after the stream closes; wait for them to deregister"""
    deadline = asyncio.get_running_loop().time() + timeout
    while supervisor.active_count and asyncio.get_running_loop().time() < deadline:
        await asyncio.sleep(0.01)


# ============================================================================
# Test: Health
# ============================================================================

async def test_health_and_metrics():
    """Test health and metrics without an archive"""
    app = build_app()
    async with client_for(app) as client:
        response = await client.get("/health")
        assert_equal(response.status_code, 200)
        assert_equal(response.json()["status"], "healthy")

        metrics = (await client.get("/metrics")).json()
        assert_false(metrics["runs"]["archive_enabled"])
        assert_equal(metrics["supervisor"]["active_runs"], 0)
        assert_true(metrics["supervisor"]["accepting"])


# ============================================================================
# Test: Streaming endpoint
# ============================================================================

async def test_stream_run():
    """Test a run streams as event-stream frames ending in RUN_FINISHED"""
    app = build_app()
    async with client_for(app) as client:
        response = await client.post("/api/agent/runs", json=run_body())

    assert_equal(response.status_code, 200)
    assert_true(response.headers["content-type"].startswith("text/event-stream"))
    assert_equal(response.headers["cache-control"], "no-cache")

    events = stream_events(response)
    assert_equal(events[0].type, "RUN_STARTED")
    assert_equal(events[0].run_id, "r1")
    assert_equal(events[-1].type, "RUN_FINISHED")
    text = "".join(event.delta for event in events if event.type == "TEXT_MESSAGE_CONTENT")
    assert_equal(text, "hello api")


async def test_invalid_request_rejected():
    """Test malformed bodies get 422 with field details"""
    app = build_app()
    async with client_for(app) as client:
        response = await client.post("/api/agent/runs", json={"threadId": "t1"})
        assert_equal(response.status_code, 422)
        assert_in("runId", response.json()["detail"]["message"])

        response = await client.post(
            "/api/agent/runs", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert_equal(response.status_code, 422)

        response = await client.post("/api/agent/runs", content=b"")
        assert_equal(response.status_code, 422)

    assert_equal(app.state.supervisor.get_stats()["total_registered"], 0)


async def test_duplicate_and_shutdown():
    """Test 409 for an active run id and 503 while shutting down"""
    app = build_app()
    supervisor = app.state.supervisor
    async with client_for(app) as client:
        supervisor.register("busy", "t1")
        response = await client.post("/api/agent/runs", json=run_body(run_id="busy"))
        assert_equal(response.status_code, 409)
        supervisor.deregister("busy")

        await supervisor.shutdown()
        response = await client.post("/api/agent/runs", json=run_body(run_id="late"))
        assert_equal(response.status_code, 503)


async def test_auth_rejection_on_stream():
    """Test a missing token yields a single AUTH_ERROR on the stream"""
    app = build_app(settings=Settings(auth_secret_key="api-secret"), with_pipeline=True)
    async with client_for(app) as client:
        response = await client.post("/api/agent/runs", json=run_body())

    assert_equal(response.status_code, 200)
    events = stream_events(response)
    assert_equal([event.type for event in events], ["RUN_ERROR"])
    assert_equal(events[0].code, "AUTH_ERROR")


async def test_cancel_endpoint():
    """Test cancelling an active run through the API"""
    app = build_app(agent=EchoAgent(chunk_size=1, chunk_delay=0.02))
    async with client_for(app) as client:
        pending = asyncio.create_task(
            client.post("/api/agent/runs", json=run_body(run_id="slow", text="x" * 200))
        )
        await asyncio.sleep(0.15)

        response = await client.post("/api/runs/slow/cancel")
        assert_equal(response.status_code, 200)
        assert_equal(response.json(), {"success": True, "run_id": "slow"})

        streamed = await asyncio.wait_for(pending, timeout=3.0)
        events = stream_events(streamed)
        assert_equal(events[-1].type, "RUN_ERROR")
        assert_equal(events[-1].code, "CANCELLED")

        await wait_idle(app.state.supervisor)
        response = await client.post("/api/runs/slow/cancel")
        assert_equal(response.status_code, 404)


# ============================================================================
# Test: Archive endpoints
# ============================================================================

async def test_archive_endpoints():
    """Test listing, inspecting and replaying archived runs"""
    async with ArchiveContext() as ctx:
        app = build_app(archive=ctx.archive)
        async with client_for(app) as client:
            live = await client.post("/api/agent/runs", json=run_body(run_id="r1"))
            await client.post("/api/agent/runs", json={
                **run_body(thread_id="t2", run_id="r2"),
                "messages": [],
            })
            await wait_idle(app.state.supervisor)

            listing = (await client.get("/api/runs")).json()
            assert_equal(listing["total"], 2)
            assert_equal({run["run_id"] for run in listing["runs"]}, {"r1", "r2"})

            filtered = (await client.get("/api/runs", params={"thread_id": "t2"})).json()
            assert_equal([run["run_id"] for run in filtered["runs"]], ["r2"])

            summary = (await client.get("/api/runs/r1")).json()
            assert_equal(summary["status"], "finished")
            assert_equal(summary["event_count"], len(stream_events(live)))

            log = (await client.get("/api/runs/r1/events")).json()
            assert_equal([event["sequence_number"] for event in log["events"]][:3], [1, 2, 3])
            assert_equal(log["events"][0]["event_type"], "RUN_STARTED")

            replay = await client.get("/api/runs/r1/events", params={"stream": "true"})
            assert_true(replay.headers["content-type"].startswith("text/event-stream"))
            assert_equal(stream_events(replay), stream_events(live))

            metrics = (await client.get("/metrics")).json()
            assert_equal(metrics["runs"]["total"], 2)
            assert_equal(metrics["runs"]["by_status"], {"finished": 2})

            assert_equal((await client.get("/api/runs/missing")).status_code, 404)
            assert_equal((await client.get("/api/runs/missing/events")).status_code, 404)


async def test_archive_disabled():
    """Test archive endpoints answer 404 when archiving is off"""
    app = build_app(archive=None)
    async with client_for(app) as client:
        response = await client.get("/api/runs")
        assert_equal(response.status_code, 404)
        assert_equal(response.json()["detail"], "Run archive is disabled")


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all API tests"""
    return await run_tests("HTTP API Tests", [
        ("Health and metrics", test_health_and_metrics),
        ("Stream run", test_stream_run),
        ("Invalid request rejected", test_invalid_request_rejected),
        ("Duplicate and shutdown", test_duplicate_and_shutdown),
        ("Auth rejection on stream", test_auth_rejection_on_stream),
        ("Cancel endpoint", test_cancel_endpoint),
        ("Archive endpoints", test_archive_endpoints),
        ("Archive disabled", test_archive_disabled),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
