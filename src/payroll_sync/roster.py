"""
Roster sync: caches the QBO Employee, Vendor, Customer and Class lists.

The cache feeds the mapping screens; it is not the mapping itself, and
pushes never read it. Refresh when an admin opens the mapping screen or
the QBO roster changes, not on every push.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from .connection_manager import ConnectionManager
from .models import CachedEntity
from .qbo_client import QboClient, QboEntity
from .store import PayrollStore

logger = logging.getLogger(__name__)


ROSTER_GROUPS = {
    "employees": ("Employee", "Vendor"),
    "customers": ("Customer",),
    "classes": ("Class",),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RosterSync:
    """Pulls QBO lists into the local entity cache."""

    def __init__(
        self,
        store: PayrollStore,
        connections: ConnectionManager,
        client: QboClient,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.connections = connections
        self.client = client
        self._now = clock or _utcnow

    async def refresh(self, tenant_id: str, groups: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """
        Refresh cached QBO lists for a tenant.

        Args:
            tenant_id: Tenant to refresh
            groups: Any of "employees", "customers", "classes"; all when None

        Returns:
            Rows cached per entity kind

        Raises:
            ValueError: Unknown group name
            NotConnectedError, TokenRevokedError, RateLimitedError,
            ApiFaultError: Propagated from the connection or API
        """
        selected = list(groups) if groups else list(ROSTER_GROUPS)
        unknown = [g for g in selected if g not in ROSTER_GROUPS]
        if unknown:
            raise ValueError(f"Unknown roster group(s): {', '.join(unknown)}")

        conn = await self.connections.get_live_connection(tenant_id)
        fetchers = {
            "Employee": self.client.list_employees,
            "Vendor": self.client.list_vendors,
            "Customer": self.client.list_customers,
            "Class": self.client.list_classes,
        }

        counts: Dict[str, int] = {}
        for group in selected:
            for kind in ROSTER_GROUPS[group]:
                entities = await fetchers[kind](conn)
                counts[kind] = await self.store.replace_entity_cache(
                    tenant_id, kind, self._to_cache(tenant_id, entities)
                )

        logger.info(f"Roster refreshed tenant={tenant_id} counts={counts}")
        return counts

    def _to_cache(self, tenant_id: str, entities: List[QboEntity]) -> List[CachedEntity]:
        cached_at = self._now()
        return [
            CachedEntity(
                tenant_id=tenant_id,
                entity_id=e.id,
                entity_kind=e.kind,
                display_name=e.display_name,
                fully_qualified_name=e.fully_qualified_name,
                active=e.active,
                cached_at=cached_at,
            )
            for e in entities
        ]
