"""Event-stream protocol engine for agent runs."""
