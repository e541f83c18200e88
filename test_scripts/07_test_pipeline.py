#!/usr/bin/env python3
"""
Test: Middleware Pipeline
Purpose: Verify stage composition and the built-in stages

Tests:
- compose() puts the first stage outermost
- Auth stage rejects missing/invalid tokens with AUTH_ERROR
- Fixed-window rate limiter and RATE_LIMITED rejections
- Tool filter rewrites the request before the handler runs
- Audit stage passes events through unchanged
- Default pipeline follows settings
"""

import asyncio
import sys

from fixtures import (
    run_tests, make_request, make_text_run,
    assert_equal, assert_true, assert_false,
)

from agui_engine.agent_layer.pipeline import (
    FixedWindowRateLimiter,
    audit_stage,
    auth_stage,
    build_default_pipeline,
    compose,
    rate_limit_stage,
    tool_filter_stage,
)
from agui_engine.agent_layer.protocol import RunContext
from agui_engine.config.security import generate_run_token, verify_run_token
from agui_engine.config.settings import Settings
from agui_engine.models.events import CustomEvent, RunErrorEvent

SECRET = "test-secret-key"


def script_handler(events=None, seen=None):
    """Handler yielding a text run, recording the requests it receives"""
    async def handler(request, ctx):
        if seen is not None:
            seen.append(request)
        for event in events if events is not None else make_text_run(request.thread_id, request.run_id):
            yield event
    return handler


async def collect(handler, request):
    ctx = RunContext(request)
    return [event async for event in handler(request, ctx)], ctx


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ============================================================================
# Test: Composition
# ============================================================================

async def test_compose_order():
    """Test the first stage wraps all the others"""
    def tagging_stage(tag):
        def stage(handler):
            async def tagged(request, ctx):
                yield CustomEvent(name=f"enter:{tag}")
                async for event in handler(request, ctx):
                    yield event
                yield CustomEvent(name=f"exit:{tag}")
            return tagged
        return stage

    handler = compose(script_handler(events=[]), tagging_stage("outer"), tagging_stage("inner"))
    events, _ = await collect(handler, make_request())

    assert_equal([event.name for event in events], ["enter:outer", "enter:inner", "exit:inner", "exit:outer"])

    bare, _ = await collect(compose(script_handler()), make_request())
    assert_equal(len(bare), 5, "No stages leaves the handler unchanged")


# ============================================================================
# Test: Authentication
# ============================================================================

async def test_run_tokens():
    """Test token generation and verification"""
    token = generate_run_token("user:42", SECRET)
    assert_equal(verify_run_token(token, SECRET), "user:42")
    assert_equal(verify_run_token(f"Bearer {token}", SECRET), "user:42")
    assert_equal(verify_run_token(token, "other-secret"), None)
    assert_equal(verify_run_token(token, ""), None, "Empty secret fails closed")
    assert_equal(verify_run_token("garbage", SECRET), None)
    assert_equal(verify_run_token(generate_run_token("u", SECRET, ttl_seconds=-10), SECRET), None)


async def test_auth_stage_accepts_valid_token():
    """Test a valid token lets the run through"""
    token = generate_run_token("alice", SECRET)
    handler = compose(script_handler(), auth_stage(SECRET))
    events, _ = await collect(handler, make_request(forwardedProps={"authorization": token}))

    assert_equal(events[0].type, "RUN_STARTED")
    assert_equal(events[-1].type, "RUN_FINISHED")


async def test_auth_stage_rejects():
    """Test missing, malformed and forged tokens short-circuit with AUTH_ERROR"""
    seen = []
    handler = compose(script_handler(seen=seen), auth_stage(SECRET))

    for props in ({}, {"authorization": ""}, {"authorization": 42}, {"authorization": generate_run_token("x", "wrong")}):
        events, _ = await collect(handler, make_request(forwardedProps=props))
        assert_equal(len(events), 1)
        assert_true(isinstance(events[0], RunErrorEvent))
        assert_equal(events[0].code, "AUTH_ERROR")

    events, _ = await collect(handler, make_request(forwardedProps="not-a-dict"))
    assert_equal(events[0].code, "AUTH_ERROR")
    assert_equal(seen, [], "Handler must never run for rejected requests")


# ============================================================================
# Test: Rate limiting
# ============================================================================

async def test_fixed_window_limiter():
    """Test counting, rejection and window reset"""
    clock = FakeClock(now=1000.0)
    limiter = FixedWindowRateLimiter(limit=2, window_seconds=60, clock=clock)

    first = await limiter.hit("t1")
    assert_true(first.allowed)
    assert_equal(first.remaining, 1)
    assert_equal(first.reset_at, 1020.0)

    assert_true((await limiter.hit("t1")).allowed)
    rejected = await limiter.hit("t1")
    assert_false(rejected.allowed)
    assert_equal(rejected.remaining, 0)

    assert_true((await limiter.hit("t2")).allowed, "Keys are counted separately")

    clock.now = 1020.0
    renewed = await limiter.hit("t1")
    assert_true(renewed.allowed, "New window resets the count")
    assert_equal(renewed.remaining, 1)


async def test_rate_limit_stage():
    """Test over-limit runs become a single RATE_LIMITED error"""
    limiter = FixedWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
    handler = compose(script_handler(), rate_limit_stage(limiter))

    events, _ = await collect(handler, make_request(run_id="r1"))
    assert_equal(events[-1].type, "RUN_FINISHED")

    events, _ = await collect(handler, make_request(run_id="r2"))
    assert_equal([event.type for event in events], ["RUN_ERROR"])
    assert_equal(events[0].code, "RATE_LIMITED")

    events, _ = await collect(handler, make_request(thread_id="t2", run_id="r3"))
    assert_equal(events[-1].type, "RUN_FINISHED", "Other threads are unaffected")


# ============================================================================
# Test: Tool filter and audit
# ============================================================================

async def test_tool_filter_stage():
    """Test disallowed tools are removed from the request the handler sees"""
    seen = []
    handler = compose(script_handler(seen=seen), tool_filter_stage(["search"]))
    request = make_request(tools=[
        {"name": "search", "description": "Search", "parameters": {}},
        {"name": "delete_everything", "description": "No", "parameters": {}},
    ])

    _, ctx = await collect(handler, request)

    assert_equal([tool.name for tool in seen[0].tools], ["search"])
    assert_equal([tool.name for tool in ctx.request.tools], ["search"])
    assert_equal(len(request.tools), 2, "Original request is not mutated")


async def test_audit_stage_passthrough():
    """Test audit stage yields exactly what the handler yields"""
    request = make_request()
    expected = make_text_run()
    events, _ = await collect(compose(script_handler(events=expected), audit_stage()), request)
    assert_equal(events, expected)


async def test_closing_outer_stream_closes_inner():
    """Test closing the composed stream finalizes the innermost handler"""
    finalized = []

    async def handler(request, ctx):
        try:
            for event in make_text_run():
                yield event
        finally:
            finalized.append(True)

    stream = compose(handler, audit_stage(), tool_filter_stage([]))(make_request(), RunContext(make_request()))
    first = await stream.__anext__()
    assert_equal(first.type, "RUN_STARTED")
    await stream.aclose()

    assert_equal(finalized, [True])


# ============================================================================
# Test: Default pipeline
# ============================================================================

async def test_default_pipeline():
    """Test settings decide which stages are installed"""
    bare = build_default_pipeline(Settings(auth_secret_key=None, allowed_tools=None))
    assert_equal(len(bare), 2, "Audit and rate limit only")

    full = build_default_pipeline(Settings(auth_secret_key=SECRET, allowed_tools=["search"]))
    assert_equal(len(full), 4)

    handler = compose(script_handler(), *full)
    events, _ = await collect(handler, make_request())
    assert_equal(events[0].code, "AUTH_ERROR")

    token = generate_run_token("bob", SECRET)
    events, _ = await collect(handler, make_request(run_id="r2", forwardedProps={"authorization": token}))
    assert_equal(events[-1].type, "RUN_FINISHED")


# ============================================================================
# Main Test Runner
# ============================================================================

async def main():
    """Run all pipeline tests"""
    return await run_tests("Middleware Pipeline Tests", [
        ("Compose order", test_compose_order),
        ("Run tokens", test_run_tokens),
        ("Auth stage accepts valid token", test_auth_stage_accepts_valid_token),
        ("Auth stage rejects", test_auth_stage_rejects),
        ("Fixed window limiter", test_fixed_window_limiter),
        ("Rate limit stage", test_rate_limit_stage),
        ("Tool filter stage", test_tool_filter_stage),
        ("Audit stage passthrough", test_audit_stage_passthrough),
        ("Closing outer stream closes inner", test_closing_outer_stream_closes_inner),
        ("Default pipeline", test_default_pipeline),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
