"""
Run archive.
Persists terminal runs and their ordered event log for replay and audit.
"""

import json
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import func, select

from agui_engine.core.run_machine import RunStateMachine
from agui_engine.models.database import Database
from agui_engine.models.events import BaseEvent, decode_event, encode_event
from agui_engine.models.orm import RunEventRecord, RunRecord
from agui_engine.models.schemas import RunOutcome, RunStatus

logger = structlog.get_logger()


class RunNotTerminalError(Exception):
    """Raised when archiving a run that has not finished or errored"""

    pass


class RunArchive:
    """
    Writes finished runs to the database and reads them back.
    """

    def __init__(self, db: Database):
        self.db = db

    async def archive(self, machine: RunStateMachine, outcome: Optional[RunOutcome] = None) -> RunRecord:
        """
        Persist a terminal run and its accepted events.

        The outcome, when given, supplies the error for runs that ended on a
        transport failure rather than a RUN_ERROR.

        Raises:
            RunNotTerminalError: Run is still active
        """
        if not machine.is_terminal:
            raise RunNotTerminalError(f"Run {machine.run_id} is {machine.status.value}")

        occurred_at = machine.finished_at or datetime.now().timestamp()
        error = machine.error
        error_code = machine.error_code
        if outcome is not None and outcome.error:
            error = outcome.error
            error_code = outcome.error_code or error_code

        async with self.db.session() as session:
            record = RunRecord(
                run_id=machine.run_id,
                thread_id=machine.thread_id,
                parent_run_id=machine.parent_run_id,
                status=machine.status.value,
                event_count=len(machine.events),
                error=error,
                error_code=error_code,
                created_at=machine.created_at,
                finished_at=machine.finished_at,
            )
            session.add(record)

            for sequence_number, event in enumerate(machine.events, start=1):
                session.add(
                    RunEventRecord(
                        run_id=machine.run_id,
                        event_type=event.type,
                        event_data=json.dumps(encode_event(event)),
                        occurred_at=(event.timestamp / 1000) if event.timestamp else occurred_at,
                        sequence_number=sequence_number,
                    )
                )

            await session.flush()

        logger.info(
            "run_archived",
            run_id=machine.run_id,
            thread_id=machine.thread_id,
            status=machine.status.value,
            event_count=len(machine.events),
        )
        return record

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get archived run by ID"""
        async with self.db.session() as session:
            result = await session.execute(select(RunRecord).where(RunRecord.run_id == run_id))
            return result.scalar_one_or_none()

    async def list_runs(
        self,
        limit: int = 100,
        status: Optional[RunStatus] = None,
        thread_id: Optional[str] = None,
    ) -> List[RunRecord]:
        """List archived runs, newest first"""
        query = select(RunRecord)
        if status:
            query = query.where(RunRecord.status == status.value)
        if thread_id:
            query = query.where(RunRecord.thread_id == thread_id)
        query = query.order_by(RunRecord.created_at.desc()).limit(limit)

        async with self.db.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_event_records(self, run_id: str) -> List[RunEventRecord]:
        """Get raw event rows for a run in sequence order"""
        async with self.db.session() as session:
            result = await session.execute(
                select(RunEventRecord)
                .where(RunEventRecord.run_id == run_id)
                .order_by(RunEventRecord.sequence_number)
            )
            return list(result.scalars().all())

    async def get_events(self, run_id: str) -> List[BaseEvent]:
        """Get the decoded event log of a run, in emission order"""
        records = await self.get_event_records(run_id)
        return [decode_event(record.event_data) for record in records]

    async def count_by_status(self) -> dict:
        """Archived run counts keyed by status"""
        async with self.db.session() as session:
            result = await session.execute(
                select(RunRecord.status, func.count(RunRecord.run_id)).group_by(RunRecord.status)
            )
            return {status: count for status, count in result.fetchall()}
