"""Agent adapters."""

from agui_engine.agent_layer.adapters.echo import EchoAgent

__all__ = ['EchoAgent']
