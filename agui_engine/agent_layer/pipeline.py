"""
Middleware pipeline around an agent's event stream.

A handler turns a run request into an async stream of events. A stage wraps
a handler and returns a new handler, so stages can rewrite the request,
short-circuit the run with a RUN_ERROR, or observe the events flowing out.

    handler = compose(agent.run, audit_stage(), auth_stage(secret))

The first stage passed to compose() is the outermost one.
"""

import time
from asyncio import Lock
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from agui_engine.agent_layer.protocol import RunContext
from agui_engine.config.security import verify_run_token
from agui_engine.config.settings import Settings
from agui_engine.models.events import BaseEvent, RunErrorEvent
from agui_engine.models.schemas import RunAgentInput, RunErrorCode

logger = structlog.get_logger()

RunHandler = Callable[[RunAgentInput, RunContext], AsyncIterator[BaseEvent]]
Stage = Callable[[RunHandler], RunHandler]


def compose(handler: RunHandler, *stages: Stage) -> RunHandler:
    """Wrap handler in stages; the first stage ends up outermost"""
    for stage in reversed(stages):
        handler = stage(handler)
    return handler


def _reject(message: str, code: RunErrorCode) -> RunErrorEvent:
    return RunErrorEvent(message=message, code=code.value, timestamp=int(time.time() * 1000))


# ============================================================================
# Authentication
# ============================================================================


def auth_stage(secret_key: str) -> Stage:
    """
    Require a valid run token in forwardedProps.authorization.

    Runs without one produce a single RUN_ERROR with code AUTH_ERROR and
    never reach the wrapped handler.
    """

    def stage(handler: RunHandler) -> RunHandler:
        async def authenticated(request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
            props = request.forwarded_props if isinstance(request.forwarded_props, dict) else {}
            token = props.get("authorization")

            subject = None
            if isinstance(token, str) and token:
                subject = verify_run_token(token, secret_key)

            if subject is None:
                logger.warning("run_auth_rejected", run_id=ctx.run_id, token_present=bool(token))
                yield _reject("Missing or invalid run token", RunErrorCode.AUTH_ERROR)
                return

            logger.debug("run_auth_accepted", run_id=ctx.run_id, subject=subject)
            # Closing this stream closes the wrapped one too
            async with aclosing(handler(request, ctx)) as events:
                async for event in events:
                    yield event

        return authenticated

    return stage


# ============================================================================
# Rate limiting
# ============================================================================


@dataclass(frozen=True)
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes:
        allowed: Whether the run is allowed.
        remaining: Runs remaining in the current window.
        reset_at: Monotonic time when the window resets.
    """
    allowed: bool
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    In-memory fixed-window counter per key.

    Per-process only; each worker keeps its own windows.
    """

    def __init__(self, limit: int = 60, window_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        # key -> (window_start, count)
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = Lock()

    async def hit(self, key: str) -> RateLimitResult:
        """Record one run for key and check the limit"""
        now = self._clock()
        window_start = (now // self.window_seconds) * self.window_seconds
        reset_at = window_start + self.window_seconds

        async with self._lock:
            current_start, count = self._windows.get(key, (window_start, 0))
            if current_start != window_start:
                count = 0

            if count >= self.limit:
                self._windows[key] = (window_start, count)
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at)

            count += 1
            self._windows[key] = (window_start, count)

            # Drop windows that have already rolled over
            for stale in [k for k, (start, _) in self._windows.items() if start < window_start]:
                del self._windows[stale]

        return RateLimitResult(allowed=True, remaining=self.limit - count, reset_at=reset_at)


def rate_limit_stage(limiter: FixedWindowRateLimiter) -> Stage:
    """Limit runs per thread id; over the limit the run is a single RUN_ERROR(RATE_LIMITED)"""

    def stage(handler: RunHandler) -> RunHandler:
        async def limited(request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
            result = await limiter.hit(request.thread_id)
            if not result.allowed:
                logger.warning(
                    "run_rate_limited",
                    run_id=ctx.run_id,
                    thread_id=request.thread_id,
                    limit=limiter.limit,
                    window_seconds=limiter.window_seconds,
                )
                yield _reject(
                    f"Rate limit of {limiter.limit} runs per {limiter.window_seconds}s exceeded",
                    RunErrorCode.RATE_LIMITED,
                )
                return

            async with aclosing(handler(request, ctx)) as events:
                async for event in events:
                    yield event

        return limited

    return stage


# ============================================================================
# Request rewriting and auditing
# ============================================================================


def tool_filter_stage(allowed: Iterable[str]) -> Stage:
    """Remove tools whose names are not in allowed before the handler sees the request"""
    allowed = frozenset(allowed)

    def stage(handler: RunHandler) -> RunHandler:
        async def filtered(request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
            kept = [tool for tool in request.tools if tool.name in allowed]
            if len(kept) != len(request.tools):
                dropped = sorted(tool.name for tool in request.tools if tool.name not in allowed)
                logger.info("run_tools_filtered", run_id=ctx.run_id, dropped=dropped)
                request = request.model_copy(update={"tools": kept})
                ctx.request = request

            async with aclosing(handler(request, ctx)) as events:
                async for event in events:
                    yield event

        return filtered

    return stage


def audit_stage() -> Stage:
    """Log one structured record per event leaving the handler"""

    def stage(handler: RunHandler) -> RunHandler:
        async def audited(request: RunAgentInput, ctx: RunContext) -> AsyncIterator[BaseEvent]:
            sequence = 0
            async with aclosing(handler(request, ctx)) as events:
                async for event in events:
                    sequence += 1
                    logger.info(
                        "run_event_audited",
                        run_id=ctx.run_id,
                        thread_id=ctx.thread_id,
                        sequence=sequence,
                        event_type=event.type,
                    )
                    yield event

        return audited

    return stage


def build_default_pipeline(
    settings: Settings,
    limiter: Optional[FixedWindowRateLimiter] = None,
) -> List[Stage]:
    """
    Stages configured by settings, outermost first.

    Auth is installed only when a secret is configured; tool filtering only
    when an allow list is configured.
    """
    stages: List[Stage] = [audit_stage()]

    if settings.auth_secret_key:
        stages.append(auth_stage(settings.auth_secret_key))

    if limiter is None:
        limiter = FixedWindowRateLimiter(
            limit=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
        )
    stages.append(rate_limit_stage(limiter))

    if settings.allowed_tools is not None:
        stages.append(tool_filter_stage(settings.allowed_tools))

    return stages
