"""
Shared fixtures: temporary SQLite store, fake Intuit endpoints behind
httpx.MockTransport, a controllable clock and a wired sync engine.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
import pytest

from payroll_sync.connection_manager import ConnectionManager
from payroll_sync.credential_vault import CredentialVault
from payroll_sync.mapping import MappingResolver
from payroll_sync.models import (
    ApprovalStatus,
    EmployeeMapping,
    EntityType,
    Shift,
)
from payroll_sync.oauth_state import OAuthStateSigner
from payroll_sync.qbo_client import QboClient
from payroll_sync.store import PayrollStore
from payroll_sync.sync_engine import SyncEngine

from helpers import (
    REALM,
    TENANT,
    TEST_KEY,
    TEST_STATE_SECRET,
    FakeClock,
    FakeIntuit,
    set_shift_fields,
)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_intuit():
    return FakeIntuit()


@pytest.fixture
def http_client(fake_intuit):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_intuit.handler))


@pytest.fixture
def store(tmp_path):
    return PayrollStore(tmp_path / "payroll.db")


@pytest.fixture
def vault():
    return CredentialVault(TEST_KEY)


@pytest.fixture
def signer():
    return OAuthStateSigner(TEST_STATE_SECRET)


@pytest.fixture
def connections(store, vault, signer, http_client, clock):
    return ConnectionManager(
        store=store,
        vault=vault,
        state_signer=signer,
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="https://payroll.example.com/api/payroll/oauth/callback",
        http_client=http_client,
        clock=clock,
    )


@pytest.fixture
def qbo_client(http_client):
    return QboClient(http_client=http_client)


@pytest.fixture
def resolver(store):
    return MappingResolver(store, ZoneInfo("America/New_York"))


@pytest.fixture
def engine(store, connections, qbo_client, resolver, clock):
    return SyncEngine(store, connections, qbo_client, resolver, clock=clock)


@pytest.fixture
def connect(connections):
    """Returns a coroutine function that stores an active connection."""
    async def _connect(tenant_id: str = TENANT, expires_in: int = 3600):
        return await connections.save_connection(
            tenant_id=tenant_id,
            realm_id=REALM,
            access_token="stored-access",
            refresh_token="stored-refresh",
            expires_in_seconds=expires_in,
            connected_by="admin-1",
        )
    return _connect


@pytest.fixture
def map_worker(store):
    """Returns a coroutine function that maps a worker to a QBO payee."""
    async def _map(
        worker_id: str = "w1",
        tenant_id: str = TENANT,
        entity_id: str = "55",
        entity_type: EntityType = EntityType.EMPLOYEE,
        display_name: str = "Dana Reyes",
    ):
        await store.save_employee_mapping(EmployeeMapping(
            tenant_id=tenant_id,
            worker_id=worker_id,
            entity_id=entity_id,
            entity_type=entity_type,
            display_name=display_name,
        ))
    return _map


@pytest.fixture
def make_shift(store):
    """Returns a coroutine function that inserts a closed shift."""
    async def _make(
        shift_id: str = "shift-p1-p2",
        tenant_id: str = TENANT,
        worker_id: str = "w1",
        approval: ApprovalStatus = ApprovalStatus.APPROVED,
        in_at: Optional[datetime] = None,
        minutes: Optional[int] = 90,
        worksite_id: Optional[str] = "site-1",
        program_id: Optional[str] = None,
        **sync_fields,
    ) -> Shift:
        in_at = in_at or datetime(2024, 3, 4, 13, 0, tzinfo=timezone.utc)
        out_at = in_at + timedelta(minutes=minutes) if minutes is not None else None
        await store.upsert_shifts([Shift(
            id=shift_id,
            work_session_id="ws-1",
            worker_id=worker_id,
            in_at=in_at,
            out_at=out_at,
            duration_minutes=minutes,
            tenant_id=tenant_id,
            worksite_id=worksite_id,
            program_id=program_id,
            approval_status=approval,
        )])
        if sync_fields:
            set_shift_fields(store, shift_id, **sync_fields)
        return await store.get_shift(shift_id)
    return _make
