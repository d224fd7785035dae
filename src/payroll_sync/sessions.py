"""
Work session lifecycle: punches in, shifts out.

Shifts are only persisted when a supervisor ends the session. Ending a
session runs forced closure over all of its punches, stores the synthetic
clock-outs, upserts the derived shifts and marks the session closed.
Ending an already closed session again is safe and changes nothing.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .models import Punch, PunchSource, PunchType, Shift, WorkSession, WorkSessionStatus
from .shifts import derive_shifts_with_forced_closure
from .store import PayrollStore

logger = logging.getLogger(__name__)


class WorkSessionError(Exception):
    """Base exception for work session errors."""
    pass


class WorkSessionNotFoundError(WorkSessionError):
    pass


class WorkSessionClosedError(WorkSessionError):
    """Punches cannot be added to a closed session."""
    pass


@dataclass
class EndSessionResult:
    session: WorkSession
    shifts: List[Shift] = field(default_factory=list)
    synthetic_punches: List[Punch] = field(default_factory=list)

    @property
    def forced_count(self) -> int:
        return sum(1 for s in self.shifts if s.forced_out)

    def to_dict(self):
        return {
            "work_session_id": self.session.id,
            "status": self.session.status.value,
            "ended_at": self.session.ended_at.isoformat() if self.session.ended_at else None,
            "shifts": [s.to_dict() for s in self.shifts],
            "auto_clock_outs": len(self.synthetic_punches),
            "forced_shifts": self.forced_count,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkSessionService:
    """Opens sessions, records punches and ends the day."""

    def __init__(self, store: PayrollStore, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._now = clock or _utcnow

    async def _get(self, session_id: str) -> WorkSession:
        session = await self.store.get_work_session(session_id)
        if session is None:
            raise WorkSessionNotFoundError(f"Work session {session_id} not found")
        return session

    async def start_session(
        self,
        tenant_id: str,
        worksite_id: str,
        date: str,
        program_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> WorkSession:
        session = WorkSession(
            id=session_id or f"ws-{uuid.uuid4().hex[:12]}",
            tenant_id=tenant_id,
            worksite_id=worksite_id,
            date=date,
            status=WorkSessionStatus.OPEN,
            started_at=self._now(),
            program_id=program_id,
        )
        await self.store.create_work_session(session)
        logger.info(f"Started work session {session.id} tenant={tenant_id} worksite={worksite_id}")
        return session

    async def record_punch(
        self,
        session_id: str,
        worker_id: str,
        punch_type: PunchType,
        timestamp: Optional[datetime] = None,
        source: PunchSource = PunchSource.MOBILE,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
        reason: Optional[str] = None,
        punch_id: Optional[str] = None,
    ) -> Punch:
        """
        Store a clock event for an open session.

        Raises:
            WorkSessionNotFoundError, WorkSessionClosedError
        """
        session = await self._get(session_id)
        if session.status == WorkSessionStatus.CLOSED:
            raise WorkSessionClosedError(f"Work session {session_id} is closed")

        punch = Punch(
            id=punch_id or f"p-{uuid.uuid4().hex[:12]}",
            work_session_id=session_id,
            worker_id=worker_id,
            type=punch_type,
            timestamp=timestamp or self._now(),
            source=source,
            lat=lat,
            lng=lng,
            reason=reason,
        )
        await self.store.add_punches([punch])
        return punch

    async def end_session(
        self,
        session_id: str,
        ended_by: Optional[str] = None,
        end_timestamp: Optional[datetime] = None,
    ) -> EndSessionResult:
        """
        End the day: force-close open intervals and persist shifts.

        Args:
            session_id: Session to close
            ended_by: Supervisor closing the session
            end_timestamp: Closing instant; defaults to the stored end of an
                already closed session, otherwise now

        Returns:
            EndSessionResult with every shift of the session

        Raises:
            WorkSessionNotFoundError: Unknown session
            ValueError: end_timestamp is not after an open clock-in
        """
        session = await self._get(session_id)
        if end_timestamp is None:
            end_timestamp = session.ended_at or self._now()

        punches = await self.store.list_punches(session_id)
        closure = derive_shifts_with_forced_closure(punches, end_timestamp)

        for shift in closure.shifts:
            shift.tenant_id = session.tenant_id
            shift.worksite_id = session.worksite_id
            shift.program_id = session.program_id

        if closure.synthetic_punches:
            await self.store.add_punches(closure.synthetic_punches)
        await self.store.upsert_shifts(closure.shifts)

        if session.status != WorkSessionStatus.CLOSED:
            await self.store.close_work_session(session_id, end_timestamp, ended_by)
            session.status = WorkSessionStatus.CLOSED
            session.ended_at = end_timestamp
            session.ended_by = ended_by

        logger.info(
            f"Ended work session {session_id} shifts={len(closure.shifts)} "
            f"auto_clock_outs={len(closure.synthetic_punches)}"
        )

        # Return stored rows so approval/sync state is current
        stored = await self.store.list_shifts(work_session_id=session_id)
        by_id = {s.id: s for s in stored}
        shifts = [by_id.get(s.id, s) for s in closure.shifts]

        return EndSessionResult(session=session, shifts=shifts, synthetic_punches=closure.synthetic_punches)
