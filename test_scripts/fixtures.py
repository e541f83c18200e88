"""
Test fixtures and helper utilities for standalone test scripts.
Provides common setup, teardown, and test data creation functions.
"""

import sys
import os
import tempfile
from datetime import datetime
from typing import List

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from agui_engine.agent_layer.protocol import AgentProtocol
from agui_engine.core.run_archive import RunArchive
from agui_engine.core.transport import EventSink, TransportError, decode_frames
from agui_engine.models.database import Database
from agui_engine.models.events import (
    BaseEvent,
    RunFinishedEvent,
    RunStartedEvent,
    TextMessageContentEvent,
    TextMessageEndEvent,
    TextMessageStartEvent,
    decode_event,
)
from agui_engine.models.schemas import RunAgentInput


# ============================================================================
# Color codes for terminal output
# ============================================================================

GREEN = '\033[92m'
RED = '\033[91m'
YELLOW = '\033[93m'
BLUE = '\033[94m'
CYAN = '\033[96m'
RESET = '\033[0m'


# ============================================================================
# Test output helpers
# ============================================================================

def print_test_header(test_name):
    """Print formatted test header"""
    print(f"\n{'='*70}")
    print(f"{CYAN}Running: {test_name}{RESET}")
    print(f"{'='*70}\n")


def print_pass(test_name):
    """Print test pass message"""
    print(f"{GREEN}✓ PASS{RESET}: {test_name}")


def print_fail(test_name, error):
    """Print test failure message with error details"""
    print(f"{RED}✗ FAIL{RESET}: {test_name}")
    print(f"{RED}  Error: {error}{RESET}")


def print_info(message):
    """Print informational message"""
    print(f"{BLUE}ℹ {message}{RESET}")


def print_summary(tests_passed, tests_failed):
    """Print test summary"""
    print(f"\n{'='*70}")
    total = tests_passed + tests_failed
    if tests_failed == 0:
        print(f"{GREEN}✓ ALL TESTS PASSED{RESET}: {tests_passed}/{total}")
    else:
        print(f"{RED}✗ SOME TESTS FAILED{RESET}: {tests_passed} passed, {tests_failed} failed")
    print(f"{'='*70}\n")


async def run_tests(title, tests):
    """
    Run (name, coroutine function) pairs and print a summary.

    Returns:
        Process exit code: 0 if every test passed
    """
    import traceback

    print_test_header(title)

    tests_passed = 0
    tests_failed = 0

    for test_name, test_func in tests:
        try:
            result = test_func()
            if hasattr(result, "__await__"):
                await result
            print_pass(test_name)
            tests_passed += 1
        except Exception as e:
            print_fail(test_name, str(e))
            traceback.print_exc()
            tests_failed += 1

    print_summary(tests_passed, tests_failed)
    return 0 if tests_failed == 0 else 1


# ============================================================================
# Test data factories
# ============================================================================

def make_request(thread_id="t1", run_id="r1", text="hello", **kwargs) -> RunAgentInput:
    """
    Create a run request with one user message.

    Args:
        thread_id: Thread id
        run_id: Run id
        text: User message content; None for no messages
        **kwargs: Extra wire fields (state, tools, forwardedProps, ...)
    """
    payload = {"threadId": thread_id, "runId": run_id, **kwargs}
    if text is not None:
        payload.setdefault("messages", [{"id": f"{run_id}-user", "role": "user", "content": text}])
    return RunAgentInput.model_validate(payload)


def make_text_run(thread_id="t1", run_id="r1", message_id="m1", text="Hi") -> List[BaseEvent]:
    """Events of a complete run streaming one assistant message"""
    return [
        RunStartedEvent(thread_id=thread_id, run_id=run_id),
        TextMessageStartEvent(message_id=message_id),
        TextMessageContentEvent(message_id=message_id, delta=text),
        TextMessageEndEvent(message_id=message_id),
        RunFinishedEvent(thread_id=thread_id, run_id=run_id),
    ]


# ============================================================================
# Sinks and agents
# ============================================================================

class CollectingSink(EventSink):
    """Sink that keeps every frame; optionally fails after a number of sends"""

    def __init__(self, fail_after=None):
        self.frames: List[str] = []
        self.closed = False
        self.fail_after = fail_after

    async def send(self, frame: str):
        if self.fail_after is not None and len(self.frames) >= self.fail_after:
            raise TransportError("Client disconnected")
        self.frames.append(frame)

    async def close(self):
        self.closed = True

    @property
    def events(self) -> List[BaseEvent]:
        """Decode collected frames back into events"""
        return [decode_event(payload) for payload in decode_frames("".join(self.frames))]

    @property
    def types(self) -> List[str]:
        return [event.type for event in self.events]


class ScriptedAgent(AgentProtocol):
    """
    Agent that yields a fixed list of events.

    Optionally raises after the script, and records whether the engine
    closed its stream early.
    """

    def __init__(self, events, raise_after=None, name="scripted"):
        super().__init__(name=name)
        self.script = list(events)
        self.raise_after = raise_after
        self.yielded = 0
        self.closed_early = False

    async def run(self, request, ctx):
        completed = False
        try:
            for event in self.script:
                yield event
                self.yielded += 1
            if self.raise_after is not None:
                raise self.raise_after
            completed = True
        finally:
            if not completed and self.raise_after is None:
                self.closed_early = True


# ============================================================================
# Database setup/teardown
# ============================================================================

class ArchiveContext:
    """Context manager for a run archive on a fresh temporary database"""

    def __init__(self):
        self._tmpdir = None
        self.db = None
        self.archive = None

    async def __aenter__(self):
        """Setup archive database"""
        self._tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self._tmpdir.name, f"test_runs_{int(datetime.now().timestamp() * 1000)}.db")
        self.db = Database(url=f"sqlite+aiosqlite:///{db_path}", echo=False)
        await self.db.init()
        self.archive = RunArchive(self.db)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Cleanup archive database"""
        if self.db:
            await self.db.close()
        if self._tmpdir:
            self._tmpdir.cleanup()


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_equal(actual, expected, message=""):
    """Assert two values are equal"""
    if actual != expected:
        raise AssertionError(
            f"{message}\nExpected: {expected}\nActual: {actual}"
        )


def assert_not_equal(actual, expected, message=""):
    """Assert two values are not equal"""
    if actual == expected:
        raise AssertionError(
            f"{message}\nExpected values to be different, but both are: {actual}"
        )


def assert_true(condition, message=""):
    """Assert condition is true"""
    if not condition:
        raise AssertionError(f"{message}\nExpected: True\nActual: False")


def assert_false(condition, message=""):
    """Assert condition is false"""
    if condition:
        raise AssertionError(f"{message}\nExpected: False\nActual: True")


def assert_in(item, container, message=""):
    """Assert item is in container"""
    if item not in container:
        raise AssertionError(
            f"{message}\nExpected {item} to be in {container}"
        )


def assert_not_in(item, container, message=""):
    """Assert item is not in container"""
    if item in container:
        raise AssertionError(
            f"{message}\nExpected {item} to not be in {container}"
        )


def assert_raises(exception_type, func, *args, **kwargs):
    """
    Assert function raises specific exception.

    Returns:
        The raised exception, for further checks
    """
    try:
        func(*args, **kwargs)
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )


async def assert_raises_async(exception_type, coro):
    """Assert awaitable raises specific exception; returns the exception"""
    try:
        await coro
    except exception_type as e:
        return e
    except Exception as e:
        raise AssertionError(
            f"Expected {exception_type.__name__} to be raised, but got {type(e).__name__}: {e}"
        )
    raise AssertionError(
        f"Expected {exception_type.__name__} to be raised, but no exception was raised"
    )
