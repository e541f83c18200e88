"""
Agent Integration Layer.

This layer drives ANY event-producing agent through the run engine.

Key Components:
- AgentProtocol: Abstract interface that all agents must implement
- RunContext: Per-run handle (state synchronizer, cancellation, violations)
- Pipeline stages: auth, rate limiting, tool filtering, auditing
- RunOrchestrator: Validates, frames and terminates every run
- Adapters: Agent implementations (EchoAgent)
"""

from agui_engine.agent_layer.protocol import AgentProtocol, RunContext
from agui_engine.agent_layer.pipeline import (
    RunHandler,
    Stage,
    compose,
    auth_stage,
    rate_limit_stage,
    tool_filter_stage,
    audit_stage,
    build_default_pipeline,
    FixedWindowRateLimiter,
    RateLimitResult,
)
from agui_engine.agent_layer.orchestrator import RunOrchestrator
from agui_engine.agent_layer.adapters import EchoAgent

__all__ = [
    'AgentProtocol',
    'RunContext',
    'RunHandler',
    'Stage',
    'compose',
    'auth_stage',
    'rate_limit_stage',
    'tool_filter_stage',
    'audit_stage',
    'build_default_pipeline',
    'FixedWindowRateLimiter',
    'RateLimitResult',
    'RunOrchestrator',
    'EchoAgent',
]
