"""
Tests for the payroll sync engine: push outcomes, retry accounting,
backoff, dead-lettering and batch behavior.
"""

import json
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from payroll_sync.connection_manager import NotConnectedError, TokenRevokedError
from payroll_sync.mapping import MappingError
from payroll_sync.models import ApprovalStatus, ConnectionStatus, SyncStatus
from payroll_sync.qbo_client import ApiFaultError, RateLimitedError
from payroll_sync.sync_engine import (
    BatchResult,
    DeadLetterError,
    PushInProgressError,
    PushOutcome,
    PushResult,
    ShiftLockedError,
    ShiftNotEligibleError,
    ShiftNotFoundError,
    backoff_minutes,
)

from helpers import TENANT, fault


@pytest_asyncio.fixture
async def ready(connect, map_worker):
    """Tenant connected and worker w1 mapped."""
    await connect()
    await map_worker()


class TestBackoff:

    @pytest.mark.parametrize("attempts,expected", [
        (0, 1), (1, 2), (2, 4), (3, 8), (4, 16), (5, 30), (9, 30), (20, 30),
    ])
    def test_backoff_minutes(self, attempts, expected):
        assert backoff_minutes(attempts) == expected

    def test_custom_cap(self):
        assert backoff_minutes(6, cap=60) == 60
        assert backoff_minutes(5, cap=60) == 32

    @pytest.mark.asyncio
    async def test_is_due(self, engine, make_shift, clock):
        shift = await make_shift(
            sync_status=SyncStatus.FAILED,
            sync_attempts=3,
            last_sync_attempt=clock.now - timedelta(minutes=7),
        )

        assert engine.next_attempt_at(shift) == clock.now + timedelta(minutes=1)
        assert not engine.is_due(shift)
        assert engine.is_due(shift, clock.now + timedelta(minutes=1))

    @pytest.mark.asyncio
    async def test_never_attempted_is_due(self, engine, make_shift):
        shift = await make_shift()
        assert engine.next_attempt_at(shift) is None
        assert engine.is_due(shift)


class TestPushShift:

    @pytest.mark.asyncio
    async def test_push_creates_time_activity(self, engine, store, make_shift, ready, fake_intuit, clock):
        await make_shift()

        result = await engine.push_shift("shift-p1-p2")

        assert result.outcome == PushOutcome.SYNCED
        assert result.external_id == "101"
        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.SYNCED
        assert shift.external_id == "101"
        assert shift.sync_token == "0"
        assert shift.synced_at == clock.now
        assert shift.sync_attempts == 0

        request = fake_intuit.requests_to("/timeactivity")[0]
        assert request.headers["Authorization"] == "Bearer stored-access"
        assert json.loads(request.content)["EmployeeRef"]["value"] == "55"

    @pytest.mark.asyncio
    async def test_second_push_updates(self, engine, store, make_shift, ready, fake_intuit):
        """A shift with an external id and SyncToken is updated, never duplicated."""
        await make_shift()
        await engine.push_shift("shift-p1-p2")

        result = await engine.push_shift("shift-p1-p2")

        assert result.outcome == PushOutcome.SYNCED
        bodies = [json.loads(r.content) for r in fake_intuit.requests_to("/timeactivity")]
        assert "Id" not in bodies[0]
        assert bodies[1]["Id"] == "101"
        assert bodies[1]["SyncToken"] == "0"
        assert (await store.get_shift("shift-p1-p2")).sync_token == "1"

    @pytest.mark.asyncio
    async def test_unmapped_does_not_count_attempt(self, engine, store, make_shift, connect, fake_intuit):
        await connect()
        await make_shift(sync_attempts=2)

        with pytest.raises(MappingError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.NOT_MAPPED
        assert shift.sync_attempts == 2
        assert "no QuickBooks employee/vendor mapping" in shift.sync_error
        assert fake_intuit.requests_to("/timeactivity") == []

    @pytest.mark.asyncio
    async def test_fault_counts_attempt(self, engine, store, make_shift, ready, fake_intuit):
        await make_shift(sync_attempts=3)
        fake_intuit.activity_responses.append(fault(400, detail="Invalid Reference Id"))

        with pytest.raises(ApiFaultError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.FAILED
        assert shift.sync_attempts == 4
        assert "Invalid Reference Id" in shift.sync_error

    @pytest.mark.asyncio
    async def test_tenth_failure_dead_letters(self, engine, store, make_shift, ready, fake_intuit):
        await make_shift(sync_status=SyncStatus.FAILED, sync_attempts=9)
        fake_intuit.activity_responses.append(fault(500))

        with pytest.raises(ApiFaultError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.DEAD_LETTER
        assert shift.sync_attempts == 10

    @pytest.mark.asyncio
    async def test_rate_limit_marks_retry(self, engine, store, make_shift, ready, fake_intuit):
        await make_shift(sync_attempts=1)
        fake_intuit.activity_responses.append(httpx.Response(429))

        with pytest.raises(RateLimitedError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.RETRY
        assert shift.sync_attempts == 1

    @pytest.mark.asyncio
    async def test_not_connected(self, engine, store, make_shift, map_worker):
        await map_worker()
        await make_shift()

        with pytest.raises(NotConnectedError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.FAILED
        assert shift.sync_attempts == 0

    @pytest.mark.asyncio
    async def test_revoked_refresh(self, engine, store, make_shift, map_worker, connect, fake_intuit):
        await map_worker()
        await connect(expires_in=60)
        await make_shift()
        fake_intuit.token_responses.append(httpx.Response(401))

        with pytest.raises(TokenRevokedError):
            await engine.push_shift("shift-p1-p2")

        assert (await store.get_connection(TENANT)).status == ConnectionStatus.REVOKED
        assert (await store.get_shift("shift-p1-p2")).sync_status == SyncStatus.FAILED

    @pytest.mark.asyncio
    async def test_success_after_failures_resets_attempts(self, engine, store, make_shift, ready):
        await make_shift(sync_status=SyncStatus.FAILED, sync_attempts=6, sync_error="earlier")

        await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_attempts == 0
        assert shift.sync_error is None

    @pytest.mark.asyncio
    async def test_unexpected_error_counts_attempt(self, engine, store, make_shift, ready, fake_intuit):
        await make_shift()
        fake_intuit.activity_responses.append(httpx.Response(200, text="not json"))

        with pytest.raises(ValueError):
            await engine.push_shift("shift-p1-p2")

        shift = await store.get_shift("shift-p1-p2")
        assert shift.sync_status == SyncStatus.FAILED
        assert shift.sync_attempts == 1

    @pytest.mark.asyncio
    async def test_in_flight_claim_blocks(self, engine, store, make_shift, ready, clock, fake_intuit):
        await make_shift(sync_status=SyncStatus.PENDING, last_sync_attempt=clock.now - timedelta(seconds=30))

        with pytest.raises(PushInProgressError):
            await engine.push_shift("shift-p1-p2")

        assert fake_intuit.requests_to("/timeactivity") == []

    @pytest.mark.asyncio
    async def test_stale_claim_taken_over(self, engine, make_shift, ready, clock):
        await make_shift(sync_status=SyncStatus.PENDING, last_sync_attempt=clock.now - timedelta(minutes=11))

        result = await engine.push_shift("shift-p1-p2")

        assert result.outcome == PushOutcome.SYNCED

    @pytest.mark.asyncio
    async def test_unknown_shift(self, engine):
        with pytest.raises(ShiftNotFoundError):
            await engine.push_shift("missing")

    @pytest.mark.asyncio
    async def test_unapproved_shift(self, engine, make_shift):
        await make_shift(approval=ApprovalStatus.PENDING)
        with pytest.raises(ShiftNotEligibleError):
            await engine.push_shift("shift-p1-p2")

    @pytest.mark.asyncio
    async def test_locked_shift(self, engine, make_shift):
        await make_shift(approval=ApprovalStatus.LOCKED)
        with pytest.raises(ShiftLockedError):
            await engine.push_shift("shift-p1-p2")

    @pytest.mark.asyncio
    async def test_dead_letter_needs_reset(self, engine, make_shift, ready):
        await make_shift(sync_status=SyncStatus.DEAD_LETTER, sync_attempts=10)

        with pytest.raises(DeadLetterError):
            await engine.push_shift("shift-p1-p2")

        await engine.reset_dead_letter("shift-p1-p2")
        result = await engine.push_shift("shift-p1-p2")
        assert result.outcome == PushOutcome.SYNCED


class TestApproval:

    @pytest.mark.asyncio
    async def test_approve_without_push(self, engine, store, make_shift, clock):
        await make_shift(approval=ApprovalStatus.PENDING)

        assert await engine.approve_shift("shift-p1-p2", approved_by="sup-1") is None

        shift = await store.get_shift("shift-p1-p2")
        assert shift.approval_status == ApprovalStatus.APPROVED
        assert shift.approved_by == "sup-1"
        assert shift.approved_at == clock.now
        assert shift.sync_status is None

    @pytest.mark.asyncio
    async def test_approve_and_push(self, engine, store, make_shift, ready):
        await make_shift(approval=ApprovalStatus.PENDING)

        result = await engine.approve_shift("shift-p1-p2", approved_by="sup-1", push=True)

        assert result.outcome == PushOutcome.SYNCED
        assert (await store.get_shift("shift-p1-p2")).sync_status == SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_approval_stands_when_push_fails(self, engine, store, make_shift, connect):
        await connect()
        await make_shift(approval=ApprovalStatus.PENDING)

        with pytest.raises(MappingError):
            await engine.approve_shift("shift-p1-p2", push=True)

        shift = await store.get_shift("shift-p1-p2")
        assert shift.approval_status == ApprovalStatus.APPROVED
        assert shift.sync_status == SyncStatus.NOT_MAPPED

    @pytest.mark.asyncio
    async def test_open_shift_cannot_be_approved(self, engine, make_shift):
        await make_shift(approval=ApprovalStatus.PENDING, minutes=None)
        with pytest.raises(ShiftNotEligibleError):
            await engine.approve_shift("shift-p1-p2")

    @pytest.mark.asyncio
    async def test_locked_shift_cannot_be_reapproved(self, engine, make_shift):
        await make_shift(approval=ApprovalStatus.LOCKED)
        with pytest.raises(ShiftLockedError):
            await engine.approve_shift("shift-p1-p2")

    @pytest.mark.asyncio
    async def test_lock(self, engine, store, make_shift):
        await make_shift()

        await engine.lock_shift("shift-p1-p2", locked_by="payroll")
        await engine.lock_shift("shift-p1-p2")

        assert (await store.get_shift("shift-p1-p2")).approval_status == ApprovalStatus.LOCKED

    @pytest.mark.asyncio
    async def test_lock_requires_approval(self, engine, make_shift):
        await make_shift(approval=ApprovalStatus.PENDING)
        with pytest.raises(ShiftNotEligibleError):
            await engine.lock_shift("shift-p1-p2")

    @pytest.mark.asyncio
    async def test_reset_requires_dead_letter(self, engine, make_shift):
        await make_shift(sync_status=SyncStatus.FAILED)
        with pytest.raises(ShiftNotEligibleError):
            await engine.reset_dead_letter("shift-p1-p2")


class TestScan:

    @pytest.mark.asyncio
    async def test_scan_pushes_due_shifts(self, engine, store, make_shift, ready, clock):
        await make_shift("due", sync_status=SyncStatus.FAILED, sync_attempts=2,
                         last_sync_attempt=clock.now - timedelta(minutes=5))
        await make_shift("waiting", sync_status=SyncStatus.RETRY, sync_attempts=4,
                         last_sync_attempt=clock.now - timedelta(minutes=10))
        await make_shift("unapproved", approval=ApprovalStatus.PENDING, sync_status=SyncStatus.FAILED)
        await make_shift("synced", sync_status=SyncStatus.SYNCED)

        batch = await engine.scan_tenant(TENANT)

        assert [r.shift_id for r in batch.results] == ["due"]
        assert batch.results[0].outcome == PushOutcome.SYNCED
        assert (await store.get_shift("waiting")).sync_status == SyncStatus.RETRY

    @pytest.mark.asyncio
    async def test_scan_dead_letters_exhausted(self, engine, store, make_shift, ready, fake_intuit, clock):
        """attempts=10 moves to dead_letter even if backoff has not elapsed."""
        await make_shift("exhausted", sync_status=SyncStatus.FAILED, sync_attempts=10,
                         last_sync_attempt=clock.now)

        first = await engine.scan_tenant(TENANT)
        clock.advance(hours=2)
        second = await engine.scan_tenant(TENANT)

        assert [(r.shift_id, r.outcome) for r in first.results] == [("exhausted", PushOutcome.DEAD_LETTER)]
        assert second.results == []
        assert (await store.get_shift("exhausted")).sync_status == SyncStatus.DEAD_LETTER
        assert fake_intuit.requests_to("/timeactivity") == []

    @pytest.mark.asyncio
    async def test_scan_batch_limit(self, engine, make_shift, ready):
        for i in range(25):
            await make_shift(f"s{i:02d}", sync_status=SyncStatus.FAILED)

        batch = await engine.scan_tenant(TENANT)

        assert len(batch.results) == 20
        assert batch.count(PushOutcome.SYNCED) == 20

    @pytest.mark.asyncio
    async def test_rate_limit_halts_batch(self, engine, store, make_shift, ready, fake_intuit):
        for shift_id in ("a", "b", "c"):
            await make_shift(shift_id, sync_status=SyncStatus.FAILED)
        fake_intuit.activity_responses.extend([
            httpx.Response(200, json={"TimeActivity": {"Id": "900", "SyncToken": "0"}}),
            httpx.Response(429),
        ])

        batch = await engine.scan_tenant(TENANT)

        assert [(r.shift_id, r.outcome) for r in batch.results] == [
            ("a", PushOutcome.SYNCED),
            ("b", PushOutcome.RATE_LIMITED),
        ]
        assert batch.halted == "rate_limited"
        assert (await store.get_shift("c")).sync_status == SyncStatus.FAILED
        assert (await store.get_shift("b")).sync_status == SyncStatus.RETRY

    @pytest.mark.asyncio
    async def test_fault_does_not_halt_batch(self, engine, make_shift, ready, fake_intuit):
        await make_shift("a", sync_status=SyncStatus.FAILED)
        await make_shift("b", sync_status=SyncStatus.FAILED)
        fake_intuit.activity_responses.append(fault(400))

        batch = await engine.scan_tenant(TENANT)

        assert [r.outcome for r in batch.results] == [PushOutcome.FAILED, PushOutcome.SYNCED]
        assert batch.halted is None

    @pytest.mark.asyncio
    async def test_revoked_connection_halts_batch(self, engine, store, make_shift, ready):
        await make_shift("a", sync_status=SyncStatus.FAILED)
        await make_shift("b", sync_status=SyncStatus.FAILED)
        await store.set_connection_status(TENANT, ConnectionStatus.REVOKED)

        batch = await engine.scan_tenant(TENANT)

        assert len(batch.results) == 1
        assert batch.halted == "token_revoked"

    @pytest.mark.asyncio
    async def test_not_mapped_continues_batch(self, engine, make_shift, connect, map_worker):
        await connect()
        await map_worker("w2")
        await make_shift("a", worker_id="w1", sync_status=SyncStatus.FAILED)
        await make_shift("b", worker_id="w2", sync_status=SyncStatus.FAILED)

        batch = await engine.scan_tenant(TENANT)

        assert [r.outcome for r in batch.results] == [PushOutcome.NOT_MAPPED, PushOutcome.SYNCED]

    @pytest.mark.asyncio
    async def test_stale_pending_recovered(self, engine, make_shift, ready, clock):
        await make_shift("stale", sync_status=SyncStatus.PENDING,
                         last_sync_attempt=clock.now - timedelta(minutes=15))
        await make_shift("fresh", sync_status=SyncStatus.PENDING,
                         last_sync_attempt=clock.now - timedelta(minutes=1))

        batch = await engine.scan_tenant(TENANT)

        assert [(r.shift_id, r.outcome) for r in batch.results] == [("stale", PushOutcome.SYNCED)]

    @pytest.mark.asyncio
    async def test_scan_other_tenant_untouched(self, engine, make_shift, ready):
        await make_shift("mine", sync_status=SyncStatus.FAILED)
        await make_shift("theirs", tenant_id="tenant-2", sync_status=SyncStatus.FAILED)

        batch = await engine.scan_tenant(TENANT)

        assert [r.shift_id for r in batch.results] == ["mine"]


class TestRetryShifts:

    @pytest.mark.asyncio
    async def test_retry_all_ignores_backoff(self, engine, make_shift, ready, clock):
        await make_shift("a", sync_status=SyncStatus.FAILED, sync_attempts=4, last_sync_attempt=clock.now)
        await make_shift("b", sync_status=SyncStatus.RETRY)
        await make_shift("c", sync_status=SyncStatus.SYNCED)

        batch = await engine.retry_shifts(TENANT)

        assert sorted(r.shift_id for r in batch.results) == ["a", "b"]
        assert batch.summary()["synced"] == 2

    @pytest.mark.asyncio
    async def test_retry_explicit_ids(self, engine, make_shift, ready):
        await make_shift("a", sync_status=SyncStatus.NOT_MAPPED)
        await make_shift("b", approval=ApprovalStatus.PENDING)
        await make_shift("c", tenant_id="tenant-2")

        batch = await engine.retry_shifts(TENANT, shift_ids=["a", "b", "c", "missing", "a"])

        outcomes = {r.shift_id: r.outcome for r in batch.results}
        assert outcomes == {
            "a": PushOutcome.SYNCED,
            "b": PushOutcome.SKIPPED,
            "c": PushOutcome.SKIPPED,
            "missing": PushOutcome.SKIPPED,
        }
        assert len(batch.results) == 4

    @pytest.mark.asyncio
    async def test_retry_cap(self, engine, make_shift, ready):
        engine.bulk_retry_cap = 3
        for i in range(5):
            await make_shift(f"s{i}", sync_status=SyncStatus.FAILED)

        batch = await engine.retry_shifts(TENANT)

        assert len(batch.results) == 3

    @pytest.mark.asyncio
    async def test_retry_reports_in_flight(self, engine, make_shift, ready, clock):
        await make_shift("busy", sync_status=SyncStatus.PENDING, last_sync_attempt=clock.now)

        batch = await engine.retry_shifts(TENANT, shift_ids=["busy"])

        assert batch.results[0].outcome == PushOutcome.IN_FLIGHT

    @pytest.mark.asyncio
    async def test_retry_at_ceiling_dead_letters(self, engine, store, make_shift, ready, fake_intuit):
        await make_shift("a", sync_status=SyncStatus.FAILED, sync_attempts=10)

        batch = await engine.retry_shifts(TENANT)

        assert batch.results[0].outcome == PushOutcome.DEAD_LETTER
        assert (await store.get_shift("a")).sync_status == SyncStatus.DEAD_LETTER
        assert fake_intuit.requests_to("/timeactivity") == []


class TestSummaries:

    @pytest.mark.asyncio
    async def test_sync_status_summary(self, engine, store, make_shift):
        await make_shift("a")
        await make_shift("b", sync_status=SyncStatus.SYNCED)
        await make_shift("c", sync_status=SyncStatus.DEAD_LETTER)

        summary = await engine.sync_status_summary(TENANT)

        assert summary["unsynced"] == 1
        assert summary["synced"] == 1
        assert summary["dead_letter"] == 1
        assert summary["failed"] == 0
        assert set(summary) == {s.value for s in SyncStatus} | {"unsynced"}

    def test_batch_result_dict(self):
        batch = BatchResult(TENANT, [
            PushResult("a", PushOutcome.SYNCED, external_id="1"),
            PushResult("b", PushOutcome.FAILED, "boom"),
        ], halted=None)

        data = batch.to_dict()

        assert data["summary"]["total"] == 2
        assert data["summary"]["synced"] == 1
        assert data["results"][1] == {"shift_id": "b", "outcome": "failed", "error": "boom"}
