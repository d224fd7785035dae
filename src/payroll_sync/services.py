"""
Service wiring shared by the HTTP app and the worker.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import SyncConfig
from .connection_manager import ConnectionManager
from .qbo_client import QboClient
from .roster import RosterSync
from .sessions import WorkSessionService
from .store import PayrollStore
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


@dataclass
class PayrollServices:
    store: PayrollStore
    connections: ConnectionManager
    client: QboClient
    engine: SyncEngine
    sessions: WorkSessionService
    roster: RosterSync


def build_services(
    config: SyncConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PayrollServices:
    """
    Build every service from configuration.

    Args:
        config: Validated configuration
        http_client: Shared client for Intuit calls; one is created per
            request when omitted
    """
    store = PayrollStore(config.db_path)
    connections = ConnectionManager.from_config(config, store, http_client=http_client)
    client = QboClient(http_client=http_client, timeout=config.http_timeout_seconds)

    services = PayrollServices(
        store=store,
        connections=connections,
        client=client,
        engine=SyncEngine.from_config(config, store, connections, client),
        sessions=WorkSessionService(store),
        roster=RosterSync(store, connections, client),
    )

    logger.info(f"Payroll services ready environment={config.environment} db={config.db_path}")
    return services
