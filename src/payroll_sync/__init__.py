"""
QuickBooks Online payroll sync.

Derives shifts from time-clock punches and pushes approved shifts to
QuickBooks as TimeActivity records, with encrypted token storage, OAuth
lifecycle management and a retry/dead-letter queue.
"""

__version__ = "0.1.0"

from .config import SyncConfig, load_config
from .models import (
    ApprovalStatus,
    ConnectionStatus,
    EntityType,
    Punch,
    PunchSource,
    PunchType,
    Shift,
    SyncStatus,
    WorkSession,
)
from .shifts import derive_shifts, derive_shifts_with_forced_closure

__all__ = [
    "SyncConfig",
    "load_config",
    "ApprovalStatus",
    "ConnectionStatus",
    "EntityType",
    "Punch",
    "PunchSource",
    "PunchType",
    "Shift",
    "SyncStatus",
    "WorkSession",
    "derive_shifts",
    "derive_shifts_with_forced_closure",
]
