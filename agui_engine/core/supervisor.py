"""
Run supervisor for tracking active runs and draining them on shutdown.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, Optional

import structlog

logger = structlog.get_logger()


class SupervisorClosedError(Exception):
    """Raised when registering a run while the supervisor is shutting down"""

    pass


class DuplicateRunError(Exception):
    """Raised when a run id is registered twice"""

    pass


class RunSupervisor:
    """
    Process-scoped registry of active runs.

    Each run registers when it opens and deregisters when it terminates.
    shutdown() stops new registrations, waits for active runs to drain and
    cancels whatever is still registered once the timeout expires.
    """

    def __init__(self, drain_timeout: float = 10.0):
        self.drain_timeout = drain_timeout
        self._runs: Dict[str, dict] = {}
        self._accepting = True
        self._drained = asyncio.Event()
        self._drained.set()
        self._total_registered = 0

    @property
    def accepting(self) -> bool:
        return self._accepting

    @property
    def active_count(self) -> int:
        return len(self._runs)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._runs

    def register(self, run_id: str, thread_id: str = None, task: Optional[asyncio.Task] = None):
        """
        Register a run as active.

        Raises:
            SupervisorClosedError: Supervisor is shutting down
            DuplicateRunError: Run id is already active
        """
        if not self._accepting:
            logger.warning("run_rejected_shutting_down", run_id=run_id)
            raise SupervisorClosedError("Server is shutting down; new runs are not accepted")

        if run_id in self._runs:
            raise DuplicateRunError(f"Run {run_id} is already active")

        self._runs[run_id] = {
            "thread_id": thread_id,
            "task": task,
            "registered_at": datetime.now().timestamp(),
        }
        self._total_registered += 1
        self._drained.clear()

        logger.debug("run_registered", run_id=run_id, active_runs=len(self._runs))

    def attach_task(self, run_id: str, task: asyncio.Task):
        """Associate the task driving a registered run, for cancellation on shutdown"""
        if run_id in self._runs:
            self._runs[run_id]["task"] = task

    def deregister(self, run_id: str):
        """Remove a run; unknown ids are ignored"""
        if self._runs.pop(run_id, None) is None:
            return

        logger.debug("run_deregistered", run_id=run_id, active_runs=len(self._runs))

        if not self._runs:
            self._drained.set()

    @asynccontextmanager
    async def track(self, run_id: str, thread_id: str = None):
        """Register the current task for the duration of the block"""
        self.register(run_id, thread_id, asyncio.current_task())
        try:
            yield
        finally:
            self.deregister(run_id)

    async def shutdown(self, timeout: float = None) -> int:
        """
        Stop accepting runs and drain the active ones.

        Returns:
            Number of runs cancelled because they did not finish in time
        """
        timeout = self.drain_timeout if timeout is None else timeout
        self._accepting = False

        logger.info("supervisor_draining", active_runs=len(self._runs), timeout_seconds=timeout)

        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
            logger.info("supervisor_drained")
            return 0
        except asyncio.TimeoutError:
            pass

        stragglers = [
            entry["task"] for entry in self._runs.values()
            if entry["task"] is not None and not entry["task"].done()
        ]

        logger.warning(
            "supervisor_drain_timeout",
            remaining_runs=list(self._runs.keys()),
            cancelling=len(stragglers),
        )

        for task in stragglers:
            task.cancel()

        if stragglers:
            await asyncio.gather(*stragglers, return_exceptions=True)

        self._runs.clear()
        self._drained.set()
        return len(stragglers)

    def get_stats(self) -> dict:
        """Get supervisor statistics"""
        return {
            "accepting": self._accepting,
            "active_runs": len(self._runs),
            "total_registered": self._total_registered,
            "drain_timeout_seconds": self.drain_timeout,
        }
