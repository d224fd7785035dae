"""
Shift derivation from raw clock punches.

Pure functions, no I/O. Punches for a work session are grouped per
worker, ordered by time, and paired IN -> OUT into Shift records.

Pairing rules:
- IN while another IN is open: the earlier one is emitted as an open shift
- OUT with an open IN: closes it, duration in whole minutes (floored)
- OUT with nothing open: discarded
- IN still open at end of input: emitted as an open shift

Forced closure (end of day) closes every interval still open at the given
time, including abandoned duplicate clock-ins, and emits a synthetic OUT
punch per closure. Synthetic punches carry the id of the IN they close so
running forced closure again over the same session is a no-op.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Punch, PunchSource, PunchType, Shift

logger = logging.getLogger(__name__)


# OUT sorts ahead of IN at the same instant
_TYPE_ORDER = {PunchType.OUT: 0, PunchType.IN: 1}


@dataclass
class ForcedClosureResult:
    """Shifts for the whole session plus any synthetic punches to persist."""
    shifts: List[Shift] = field(default_factory=list)
    synthetic_punches: List[Punch] = field(default_factory=list)


def shift_id_for(in_punch_id: str, out_punch_id: Optional[str] = None) -> str:
    """Deterministic shift id; naturally closed shifts include the OUT id."""
    if out_punch_id is None:
        return f"shift-{in_punch_id}"
    return f"shift-{in_punch_id}-{out_punch_id}"


def synthetic_punch_id(in_punch_id: str) -> str:
    return f"auto-out-{in_punch_id}"


def duration_minutes(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, floored."""
    return int((end - start).total_seconds() // 60)


def _sort_key(punch: Punch) -> Tuple[datetime, int, str]:
    return (punch.timestamp, _TYPE_ORDER[punch.type], punch.id)


def _group_by_worker(punches: Iterable[Punch]) -> Dict[str, List[Punch]]:
    grouped: Dict[str, List[Punch]] = defaultdict(list)
    for punch in punches:
        grouped[punch.worker_id].append(punch)
    for worker_punches in grouped.values():
        worker_punches.sort(key=_sort_key)
    return grouped


def _open_shift(punch: Punch) -> Shift:
    return Shift(
        id=shift_id_for(punch.id),
        work_session_id=punch.work_session_id,
        worker_id=punch.worker_id,
        in_at=punch.timestamp,
    )


def _closed_shift(in_punch: Punch, out_punch: Punch, forced: bool) -> Shift:
    if out_punch.timestamp < in_punch.timestamp:
        raise ValueError(
            f"Punch {out_punch.id} at {out_punch.timestamp.isoformat()} closes "
            f"{in_punch.id} which starts later"
        )
    return Shift(
        id=shift_id_for(in_punch.id) if forced else shift_id_for(in_punch.id, out_punch.id),
        work_session_id=in_punch.work_session_id,
        worker_id=in_punch.worker_id,
        in_at=in_punch.timestamp,
        out_at=out_punch.timestamp,
        duration_minutes=duration_minutes(in_punch.timestamp, out_punch.timestamp),
        forced_out=forced,
    )


def _pair_worker(punches: List[Punch]) -> Tuple[List[Shift], List[Punch]]:
    """
    Pair one worker's time-ordered punches.

    Returns the shifts produced and the IN punches left open, in the order
    they were opened (abandoned duplicate clock-ins first).
    """
    closers = {
        p.closes_punch_id: p
        for p in punches
        if p.type == PunchType.OUT and p.closes_punch_id
    }

    shifts: List[Shift] = []
    abandoned: List[Punch] = []
    current: Optional[Punch] = None

    for punch in punches:
        if punch.type == PunchType.IN:
            closer = closers.get(punch.id)
            if closer is not None:
                # Closed by an earlier forced closure; never tracked as open
                shifts.append(_closed_shift(punch, closer, forced=True))
                continue
            if current is not None:
                logger.debug(
                    f"Duplicate clock-in worker={punch.worker_id} "
                    f"prior={current.id} new={punch.id}"
                )
                shifts.append(_open_shift(current))
                abandoned.append(current)
            current = punch
        else:
            if punch.closes_punch_id:
                continue
            if current is None:
                logger.debug(f"Discarding orphan clock-out {punch.id} worker={punch.worker_id}")
                continue
            shifts.append(_closed_shift(current, punch, forced=False))
            current = None

    if current is not None:
        shifts.append(_open_shift(current))
        abandoned.append(current)

    return shifts, abandoned


def derive_shifts(punches: Iterable[Punch]) -> List[Shift]:
    """
    Derive shifts from a session's punches without closing anything.

    Args:
        punches: All punches of one work session, any workers, any order

    Returns:
        Shifts grouped by worker, each worker's in start order
    """
    shifts: List[Shift] = []
    for worker_id, worker_punches in sorted(_group_by_worker(punches).items()):
        worker_shifts, _ = _pair_worker(worker_punches)
        worker_shifts.sort(key=lambda s: (s.in_at, s.id))
        shifts.extend(worker_shifts)
    return shifts


def derive_shifts_with_forced_closure(
    punches: Iterable[Punch],
    end_timestamp: datetime,
) -> ForcedClosureResult:
    """
    Derive shifts and close every interval still open at end_timestamp.

    Args:
        punches: All punches of one work session
        end_timestamp: Closing instant; must be after every open clock-in

    Returns:
        ForcedClosureResult with the complete shift list and the synthetic
        OUT punches created by this call (empty when already closed)

    Raises:
        ValueError: If end_timestamp is not after an open clock-in
    """
    result = ForcedClosureResult()

    for worker_id, worker_punches in sorted(_group_by_worker(punches).items()):
        worker_shifts, still_open = _pair_worker(worker_punches)
        # Every open shift belongs to a punch in still_open and is replaced below
        kept = [s for s in worker_shifts if not s.is_open]

        for in_punch in still_open:
            if end_timestamp <= in_punch.timestamp:
                raise ValueError(
                    f"end_timestamp {end_timestamp.isoformat()} is not after open clock-in "
                    f"{in_punch.id} at {in_punch.timestamp.isoformat()}"
                )
            out_punch = Punch(
                id=synthetic_punch_id(in_punch.id),
                work_session_id=in_punch.work_session_id,
                worker_id=in_punch.worker_id,
                type=PunchType.OUT,
                timestamp=end_timestamp,
                source=PunchSource.SYSTEM,
                reason="Auto clock-out at end of day",
                closes_punch_id=in_punch.id,
            )
            result.synthetic_punches.append(out_punch)
            kept.append(_closed_shift(in_punch, out_punch, forced=True))

        kept.sort(key=lambda s: (s.in_at, s.id))
        result.shifts.extend(kept)

    if result.synthetic_punches:
        logger.info(
            f"Forced closure created {len(result.synthetic_punches)} clock-outs "
            f"at {end_timestamp.isoformat()}"
        )

    return result
