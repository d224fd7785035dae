"""
Data models for payroll sync.

Punches are raw clock events, Shifts are derived from them and carry the
sync metadata written back by the sync engine. Connections and mappings
describe how a tenant reaches the accounting system.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PunchType(str, Enum):
    """Direction of a clock event."""
    IN = "IN"
    OUT = "OUT"


class PunchSource(str, Enum):
    """Where a punch originated."""
    MOBILE = "mobile"
    WEB = "web"
    SYSTEM = "system"


class ApprovalStatus(str, Enum):
    """Approval gate for a shift. LOCKED is permanent."""
    PENDING = "pending"
    APPROVED = "approved"
    LOCKED = "locked"


class SyncStatus(str, Enum):
    """Accounting sync state of a shift."""
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    RETRY = "retry"
    NOT_MAPPED = "not_mapped"
    DEAD_LETTER = "dead_letter"


class ConnectionStatus(str, Enum):
    """Lifecycle state of a tenant's OAuth connection."""
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    DISCONNECTED = "disconnected"


class QboEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class EntityType(str, Enum):
    """External payee kind a worker is mapped to."""
    EMPLOYEE = "Employee"
    VENDOR = "Vendor"


class WorkSessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class Punch:
    """A single clock-in or clock-out event. Never mutated once created."""
    id: str
    work_session_id: str
    worker_id: str
    type: PunchType
    timestamp: datetime
    source: PunchSource = PunchSource.MOBILE
    lat: Optional[float] = None
    lng: Optional[float] = None
    reason: Optional[str] = None
    # Set on synthetic OUT punches written by forced closure
    closes_punch_id: Optional[str] = None


@dataclass
class Shift:
    """One continuous work interval paired from punches, plus sync state."""
    id: str
    work_session_id: str
    worker_id: str
    in_at: datetime
    out_at: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    forced_out: bool = False

    tenant_id: Optional[str] = None
    worksite_id: Optional[str] = None
    program_id: Optional[str] = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None

    external_id: Optional[str] = None
    sync_token: Optional[str] = None
    sync_status: Optional[SyncStatus] = None
    sync_error: Optional[str] = None
    sync_attempts: int = 0
    last_sync_attempt: Optional[datetime] = None
    synced_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.out_at is None

    @property
    def has_external_record(self) -> bool:
        """True when a prior push left an id + SyncToken (next push is an UPDATE)."""
        return bool(self.external_id and self.sync_token)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "work_session_id": self.work_session_id,
            "worker_id": self.worker_id,
            "in_at": self.in_at.isoformat(),
            "out_at": self.out_at.isoformat() if self.out_at else None,
            "duration_minutes": self.duration_minutes,
            "forced_out": self.forced_out,
            "tenant_id": self.tenant_id,
            "worksite_id": self.worksite_id,
            "program_id": self.program_id,
            "approval_status": self.approval_status.value,
            "external_id": self.external_id,
            "sync_status": self.sync_status.value if self.sync_status else None,
            "sync_error": self.sync_error,
            "sync_attempts": self.sync_attempts,
            "last_sync_attempt": self.last_sync_attempt.isoformat() if self.last_sync_attempt else None,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }


@dataclass
class WorkSession:
    """A single day's open-to-close activity at one worksite."""
    id: str
    tenant_id: str
    worksite_id: str
    date: str  # YYYY-MM-DD local date
    status: WorkSessionStatus = WorkSessionStatus.OPEN
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    ended_by: Optional[str] = None
    program_id: Optional[str] = None


@dataclass
class Connection:
    """A tenant's stored OAuth connection. Tokens are ciphertext."""
    tenant_id: str
    realm_id: str
    encrypted_access_token: str
    encrypted_refresh_token: str
    token_expiry: datetime
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    environment: QboEnvironment = QboEnvironment.SANDBOX
    connected_at: Optional[datetime] = None
    connected_by: Optional[str] = None


@dataclass
class LiveConnection:
    """A connection with a usable plaintext access token."""
    tenant_id: str
    realm_id: str
    access_token: str = field(repr=False)
    environment: QboEnvironment = QboEnvironment.SANDBOX


@dataclass(frozen=True)
class EmployeeMapping:
    """Worker -> QBO Employee or 1099 Vendor."""
    tenant_id: str
    worker_id: str
    entity_id: str
    entity_type: EntityType
    display_name: Optional[str] = None


@dataclass(frozen=True)
class CustomerMapping:
    """Worksite -> QBO Customer (job)."""
    tenant_id: str
    worksite_id: str
    customer_id: str
    display_name: Optional[str] = None


@dataclass(frozen=True)
class ClassMapping:
    """Program -> QBO Class."""
    tenant_id: str
    program_id: str
    class_id: str
    display_name: Optional[str] = None


@dataclass
class CachedEntity:
    """A row of the external roster cached for the mapping UI."""
    tenant_id: str
    entity_id: str
    entity_kind: str  # Employee, Vendor, Customer, Class
    display_name: str
    fully_qualified_name: Optional[str] = None
    active: bool = True
    cached_at: Optional[datetime] = None
