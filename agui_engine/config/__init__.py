"""Configuration and security utilities."""

from agui_engine.config.settings import settings, Settings
from agui_engine.config.security import (
    RESERVED_PATH_SEGMENTS,
    SecurityViolationError,
    assert_safe_operations,
    find_reserved_segment,
    generate_run_token,
    verify_run_token,
)

__all__ = [
    'settings',
    'Settings',
    'RESERVED_PATH_SEGMENTS',
    'SecurityViolationError',
    'assert_safe_operations',
    'find_reserved_segment',
    'generate_run_token',
    'verify_run_token',
]
