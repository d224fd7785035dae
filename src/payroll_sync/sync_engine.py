"""
Payroll Sync Engine.

Drives approved shifts into QuickBooks as TimeActivity records:
- Single push, triggered by approval or an operator
- Operator bulk retry (explicit ids or every failed/retry shift, capped)
- Periodic scan per tenant with exponential backoff between attempts
- Dead-lettering after max_attempts failures

State machine (sync_status):

    (none) | failed | retry --claim--> pending
    pending --> synced | failed | retry | not_mapped | dead_letter

Only provider faults and unexpected errors advance sync_attempts.
not_mapped needs someone to add a mapping, and a rate limit or a missing
connection says nothing about the shift itself.

Each attempt first claims the shift with a conditional write, so two
triggers racing on one shift cannot both call QBO.

Usage:
    engine = SyncEngine(store, connections, client, resolver)

    await engine.approve_shift(shift_id, approved_by="user-1", push=True)
    batch = await engine.retry_shifts(tenant_id)
    batch = await engine.scan_tenant(tenant_id)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import SyncConfig
from .connection_manager import ConnectionManager, NotConnectedError, TokenRevokedError
from .mapping import MappingError, MappingResolver
from .models import ApprovalStatus, Shift, SyncStatus
from .qbo_client import ApiFaultError, QboClient, RateLimitedError
from .store import PayrollStore

logger = logging.getLogger(__name__)


# Configuration
MAX_ATTEMPTS = 10
MAX_BACKOFF_MINUTES = 30
SCAN_BATCH_SIZE = 20
BULK_RETRY_CAP = 50
IN_FLIGHT_LEASE_SECONDS = 600

RETRYABLE_STATUSES = (SyncStatus.FAILED, SyncStatus.RETRY)


class SyncEngineError(Exception):
    """Base exception for sync engine errors."""
    pass


class ShiftNotFoundError(SyncEngineError):
    """No shift with the given id."""
    pass


class ShiftNotEligibleError(SyncEngineError):
    """Shift is in a state that does not allow the operation."""
    pass


class ShiftLockedError(ShiftNotEligibleError):
    """Shift is locked to a closed pay period."""
    pass


class PushInProgressError(SyncEngineError):
    """Another attempt for this shift is in flight."""
    pass


class DeadLetterError(SyncEngineError):
    """Shift exhausted its attempts and needs a manual reset."""
    pass


class PushOutcome(str, Enum):
    """Per-shift result of a push attempt."""
    SYNCED = "synced"
    FAILED = "failed"
    NOT_MAPPED = "not_mapped"
    DEAD_LETTER = "dead_letter"
    RATE_LIMITED = "rate_limited"
    IN_FLIGHT = "in_flight"
    SKIPPED = "skipped"


@dataclass
class PushResult:
    """Result of one push attempt."""
    shift_id: str
    outcome: PushOutcome
    error: Optional[str] = None
    external_id: Optional[str] = None
    # Exception behind a non-success outcome, re-raised by single pushes
    exception: Optional[Exception] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"shift_id": self.shift_id, "outcome": self.outcome.value}
        if self.error:
            data["error"] = self.error
        if self.external_id:
            data["external_id"] = self.external_id
        return data


@dataclass
class BatchResult:
    """Result of a bulk retry or periodic scan."""
    tenant_id: str
    results: List[PushResult] = field(default_factory=list)
    halted: Optional[str] = None

    def count(self, outcome: PushOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def summary(self) -> Dict[str, int]:
        summary = {"total": len(self.results)}
        for outcome in PushOutcome:
            summary[outcome.value] = self.count(outcome)
        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "summary": self.summary(),
            "results": [r.to_dict() for r in self.results],
            "halted": self.halted,
        }


def backoff_minutes(attempts: int, cap: int = MAX_BACKOFF_MINUTES) -> int:
    """Delay before the next attempt: 2**attempts minutes, capped."""
    return min(cap, 2 ** attempts)


def _error_text(e: BaseException) -> str:
    return str(e) or type(e).__name__


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """
    Orchestrates TimeActivity pushes for shifts.

    Batches run sequentially; a rate limit or a lost connection stops the
    batch, everything else is recorded per shift and the batch continues.
    """

    def __init__(
        self,
        store: PayrollStore,
        connections: ConnectionManager,
        client: QboClient,
        resolver: MappingResolver,
        max_attempts: int = MAX_ATTEMPTS,
        max_backoff_minutes: int = MAX_BACKOFF_MINUTES,
        scan_batch_size: int = SCAN_BATCH_SIZE,
        bulk_retry_cap: int = BULK_RETRY_CAP,
        in_flight_lease_seconds: int = IN_FLIGHT_LEASE_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the sync engine.

        Args:
            store: Shift persistence
            connections: Provides live access tokens
            client: QBO API client
            resolver: Builds TimeActivity payloads
            max_attempts: Failures before dead-lettering
            max_backoff_minutes: Cap on the retry delay
            scan_batch_size: Shifts per tenant per periodic scan
            bulk_retry_cap: Shifts per operator bulk retry
            in_flight_lease_seconds: Age after which a pending claim is stale
            clock: Returns the current UTC time
        """
        self.store = store
        self.connections = connections
        self.client = client
        self.resolver = resolver
        self.max_attempts = max_attempts
        self.max_backoff_minutes = max_backoff_minutes
        self.scan_batch_size = scan_batch_size
        self.bulk_retry_cap = bulk_retry_cap
        self.lease = timedelta(seconds=in_flight_lease_seconds)
        self._now = clock or _utcnow

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        store: PayrollStore,
        connections: ConnectionManager,
        client: QboClient,
    ) -> "SyncEngine":
        return cls(
            store=store,
            connections=connections,
            client=client,
            resolver=MappingResolver(store, config.payroll_zone),
            max_attempts=config.max_attempts,
            max_backoff_minutes=config.max_backoff_minutes,
            scan_batch_size=config.scan_batch_size,
            bulk_retry_cap=config.bulk_retry_cap,
            in_flight_lease_seconds=config.in_flight_lease_seconds,
        )

    # ========================================================================
    # Scheduling helpers
    # ========================================================================

    def next_attempt_at(self, shift: Shift) -> Optional[datetime]:
        """When the shift becomes due again, or None if it is due now."""
        if shift.last_sync_attempt is None:
            return None
        delay = backoff_minutes(shift.sync_attempts, self.max_backoff_minutes)
        return shift.last_sync_attempt + timedelta(minutes=delay)

    def is_due(self, shift: Shift, now: Optional[datetime] = None) -> bool:
        due_at = self.next_attempt_at(shift)
        return due_at is None or (now or self._now()) >= due_at

    async def _get(self, shift_id: str) -> Shift:
        shift = await self.store.get_shift(shift_id)
        if shift is None:
            raise ShiftNotFoundError(f"Shift {shift_id} not found")
        return shift

    # ========================================================================
    # Approval and manual intervention
    # ========================================================================

    async def approve_shift(
        self,
        shift_id: str,
        approved_by: Optional[str] = None,
        push: bool = False,
    ) -> Optional[PushResult]:
        """
        Approve a closed shift for payroll, optionally pushing it at once.

        Returns:
            PushResult when push is requested, else None

        Raises:
            ShiftNotFoundError, ShiftLockedError, ShiftNotEligibleError
            Any exception push_shift raises when push is requested
        """
        shift = await self._get(shift_id)
        if shift.approval_status == ApprovalStatus.LOCKED:
            raise ShiftLockedError(f"Shift {shift_id} is locked")
        if shift.is_open:
            raise ShiftNotEligibleError(f"Shift {shift_id} has no clock-out and cannot be approved")

        if not await self.store.set_approval(shift_id, ApprovalStatus.APPROVED, approved_by, self._now()):
            raise ShiftLockedError(f"Shift {shift_id} is locked")

        logger.info(f"Approved shift {shift_id} by={approved_by}")

        if push:
            return await self.push_shift(shift_id)
        return None

    async def lock_shift(self, shift_id: str, locked_by: Optional[str] = None):
        """
        Lock an approved shift to its pay period. Locking is permanent.

        Raises:
            ShiftNotFoundError, ShiftNotEligibleError
        """
        shift = await self._get(shift_id)
        if shift.approval_status == ApprovalStatus.LOCKED:
            return
        if shift.approval_status != ApprovalStatus.APPROVED:
            raise ShiftNotEligibleError(f"Shift {shift_id} must be approved before it is locked")

        await self.store.set_approval(shift_id, ApprovalStatus.LOCKED, locked_by, self._now())
        logger.info(f"Locked shift {shift_id} by={locked_by}")

    async def reset_dead_letter(self, shift_id: str):
        """
        Return a dead-lettered shift to failed with zero attempts.

        Raises:
            ShiftNotFoundError, ShiftNotEligibleError
        """
        shift = await self._get(shift_id)
        if shift.sync_status != SyncStatus.DEAD_LETTER:
            raise ShiftNotEligibleError(f"Shift {shift_id} is not dead-lettered")

        await self.store.reset_dead_letter(shift_id)
        logger.info(f"Reset dead-lettered shift {shift_id}")

    async def sync_status_summary(self, tenant_id: str) -> Dict[str, int]:
        """Shift counts per sync status for a tenant, every status present."""
        counts = await self.store.sync_status_counts(tenant_id)
        summary = {status.value: counts.get(status.value, 0) for status in SyncStatus}
        summary["unsynced"] = counts.get("none", 0)
        return summary

    # ========================================================================
    # Pushing
    # ========================================================================

    async def push_shift(self, shift_id: str) -> PushResult:
        """
        Push one shift now. The outcome is recorded before any error is raised.

        Returns:
            PushResult with outcome synced

        Raises:
            ShiftNotFoundError: Unknown shift
            ShiftLockedError: Shift is locked
            ShiftNotEligibleError: Shift is not approved
            DeadLetterError: Shift is dead-lettered
            PushInProgressError: Another attempt holds the claim
            MappingError, RateLimitedError, NotConnectedError,
            TokenRevokedError, ApiFaultError: As recorded on the shift
        """
        shift = await self._get(shift_id)
        if shift.approval_status == ApprovalStatus.LOCKED:
            raise ShiftLockedError(f"Shift {shift_id} is locked")
        if shift.approval_status != ApprovalStatus.APPROVED:
            raise ShiftNotEligibleError(f"Shift {shift_id} is not approved")
        if shift.sync_status == SyncStatus.DEAD_LETTER:
            raise DeadLetterError(
                f"Shift {shift_id} exhausted {shift.sync_attempts} attempts; reset it first"
            )

        result = await self._attempt(shift_id)
        if result.exception is not None:
            raise result.exception
        return result

    async def _attempt(self, shift_id: str) -> PushResult:
        """
        Claim, push and record one shift.

        Every classified outcome is returned, never raised, except a lost
        claim which raises PushInProgressError.
        """
        now = self._now()
        if not await self.store.claim_shift(shift_id, now, now - self.lease):
            raise PushInProgressError(f"Shift {shift_id} already has a push in flight")

        # Re-read under the claim for the latest external id / SyncToken
        shift = await self._get(shift_id)

        try:
            payload = await self.resolver.build_payload(shift)
            conn = await self.connections.get_live_connection(shift.tenant_id)
            if shift.has_external_record:
                record = await self.client.update_time_activity(
                    conn, shift.external_id, shift.sync_token, payload
                )
            else:
                record = await self.client.create_time_activity(conn, payload)

        except MappingError as e:
            await self.store.mark_sync_status(shift_id, SyncStatus.NOT_MAPPED, _error_text(e))
            logger.warning(f"Shift {shift_id} not mapped field={e.field}")
            return PushResult(shift_id, PushOutcome.NOT_MAPPED, _error_text(e), exception=e)

        except RateLimitedError as e:
            await self.store.mark_sync_status(shift_id, SyncStatus.RETRY, _error_text(e))
            return PushResult(shift_id, PushOutcome.RATE_LIMITED, _error_text(e), exception=e)

        except (NotConnectedError, TokenRevokedError) as e:
            # Tenant-level failure; attempts stay put until the tenant reconnects
            await self.store.mark_sync_status(shift_id, SyncStatus.FAILED, _error_text(e))
            logger.error(f"Shift {shift_id} cannot sync: {e}")
            return PushResult(shift_id, PushOutcome.FAILED, _error_text(e), exception=e)

        except Exception as e:
            attempts = shift.sync_attempts + 1
            status = SyncStatus.DEAD_LETTER if attempts >= self.max_attempts else SyncStatus.FAILED
            await self.store.mark_sync_status(shift_id, status, _error_text(e), attempts=attempts)

            if isinstance(e, ApiFaultError):
                logger.warning(f"Shift {shift_id} failed (attempt {attempts}): {e}")
            else:
                logger.exception(f"Shift {shift_id} failed unexpectedly (attempt {attempts})")

            if status == SyncStatus.DEAD_LETTER:
                logger.error(
                    f"Shift {shift_id} moved to dead_letter after {attempts} attempts. "
                    "Manual intervention required."
                )
                return PushResult(shift_id, PushOutcome.DEAD_LETTER, _error_text(e), exception=e)
            return PushResult(shift_id, PushOutcome.FAILED, _error_text(e), exception=e)

        await self.store.mark_synced(shift_id, record.id, record.sync_token, self._now())
        logger.info(f"Shift {shift_id} synced -> TimeActivity {record.id}")
        return PushResult(shift_id, PushOutcome.SYNCED, external_id=record.id)

    async def _run_batch(self, tenant_id: str, shifts: Sequence[Shift], batch: BatchResult) -> BatchResult:
        for shift in shifts:
            if shift.sync_attempts >= self.max_attempts:
                await self.store.mark_sync_status(shift.id, SyncStatus.DEAD_LETTER, shift.sync_error)
                batch.results.append(PushResult(shift.id, PushOutcome.DEAD_LETTER, shift.sync_error))
                continue

            try:
                result = await self._attempt(shift.id)
            except PushInProgressError as e:
                batch.results.append(PushResult(shift.id, PushOutcome.IN_FLIGHT, _error_text(e)))
                continue

            batch.results.append(result)

            if result.outcome == PushOutcome.RATE_LIMITED:
                batch.halted = "rate_limited"
                logger.warning(f"Rate limited; stopping batch tenant={tenant_id}")
                break
            if isinstance(result.exception, NotConnectedError):
                batch.halted = "not_connected"
                break
            if isinstance(result.exception, TokenRevokedError):
                batch.halted = "token_revoked"
                break

        summary = batch.summary()
        logger.info(
            f"Batch complete tenant={tenant_id} total={summary['total']} "
            f"synced={summary['synced']} failed={summary['failed']} "
            f"dead_letter={summary['dead_letter']} halted={batch.halted}"
        )
        return batch

    async def retry_shifts(
        self,
        tenant_id: str,
        shift_ids: Optional[Sequence[str]] = None,
    ) -> BatchResult:
        """
        Operator bulk retry. Ignores backoff.

        Args:
            tenant_id: Tenant whose shifts are retried
            shift_ids: Explicit shifts, or None for every approved
                failed/retry shift

        Returns:
            BatchResult with per-shift outcomes
        """
        batch = BatchResult(tenant_id=tenant_id)

        if shift_ids:
            selected: List[Shift] = []
            for shift_id in list(dict.fromkeys(shift_ids))[: self.bulk_retry_cap]:
                shift = await self.store.get_shift(shift_id)
                if shift is None or shift.tenant_id != tenant_id:
                    batch.results.append(PushResult(shift_id, PushOutcome.SKIPPED, "Shift not found"))
                elif shift.approval_status != ApprovalStatus.APPROVED:
                    batch.results.append(PushResult(
                        shift_id, PushOutcome.SKIPPED, f"Shift is {shift.approval_status.value}"
                    ))
                else:
                    selected.append(shift)
        else:
            selected = await self.store.list_shifts(
                tenant_id=tenant_id,
                sync_statuses=RETRYABLE_STATUSES,
                approval_status=ApprovalStatus.APPROVED,
                limit=self.bulk_retry_cap,
            )

        logger.info(f"Bulk retry tenant={tenant_id} shifts={len(selected)}")
        return await self._run_batch(tenant_id, selected, batch)

    async def scan_tenant(self, tenant_id: str) -> BatchResult:
        """
        Periodic retry pass for one tenant.

        Dead-letters shifts at the attempt ceiling, then pushes up to
        scan_batch_size approved failed/retry shifts whose backoff has
        elapsed, plus pending shifts whose claim has gone stale.
        """
        batch = BatchResult(tenant_id=tenant_id)
        now = self._now()

        for shift_id in await self.store.dead_letter_exhausted(tenant_id, self.max_attempts):
            logger.warning(f"Shift {shift_id} marked dead_letter at scan")
            batch.results.append(PushResult(shift_id, PushOutcome.DEAD_LETTER))

        candidates = await self.store.list_shifts(
            tenant_id=tenant_id,
            sync_statuses=RETRYABLE_STATUSES,
            approval_status=ApprovalStatus.APPROVED,
            max_attempts=self.max_attempts,
        )
        due = [s for s in candidates if self.is_due(s, now)]

        stale = await self.store.list_shifts(
            tenant_id=tenant_id,
            sync_statuses=[SyncStatus.PENDING],
            approval_status=ApprovalStatus.APPROVED,
            max_attempts=self.max_attempts,
        )
        due.extend(
            s for s in stale
            if s.last_sync_attempt is not None and s.last_sync_attempt <= now - self.lease
        )

        return await self._run_batch(tenant_id, due[: self.scan_batch_size], batch)
