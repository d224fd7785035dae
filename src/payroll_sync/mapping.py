"""
Shift -> TimeActivity mapping.

Resolution order:
1. Worker -> Employee/Vendor (mandatory; missing raises MappingError so
   the shift is parked as not_mapped until someone assigns it)
2. Worksite -> Customer (optional; TimeActivity is created without a job)
3. Program -> Class (optional)

Times are rendered in the payroll time zone, and the transaction date is
the payroll-zone date of the shift start.
"""

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from .models import EntityType, Shift
from .qbo_client import QboRef, TimeActivityPayload, validation_message
from .shifts import duration_minutes
from .store import PayrollStore

logger = logging.getLogger(__name__)


DEFAULT_PAYROLL_TIMEZONE = "America/New_York"


class MappingError(Exception):
    """A shift cannot be expressed as a TimeActivity without human action."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field


def format_offset_time(value: datetime, zone: ZoneInfo) -> str:
    """Render as YYYY-MM-DDTHH:MM:SS+HH:MM in the given zone."""
    return value.astimezone(zone).isoformat(timespec="seconds")


class MappingResolver:
    """Builds TimeActivity payloads from shifts and the tenant's mappings."""

    def __init__(self, store: PayrollStore, payroll_zone: Optional[ZoneInfo] = None):
        self.store = store
        self.payroll_zone = payroll_zone or ZoneInfo(DEFAULT_PAYROLL_TIMEZONE)

    async def build_payload(self, shift: Shift) -> TimeActivityPayload:
        """
        Resolve mappings for a shift and build its TimeActivity payload.

        Args:
            shift: A closed shift with tenant and worksite populated

        Returns:
            Validated TimeActivityPayload

        Raises:
            MappingError: Shift is open, or the worker has no mapping
        """
        if shift.out_at is None:
            raise MappingError(
                "shift",
                f"Shift {shift.id} has no clock-out and cannot be sent to QuickBooks."
            )
        if not shift.tenant_id:
            raise MappingError("shift", f"Shift {shift.id} is not attached to a tenant.")

        employee = await self.store.get_employee_mapping(shift.tenant_id, shift.worker_id)
        if employee is None:
            raise MappingError(
                "employee",
                f"Worker {shift.worker_id} has no QuickBooks employee/vendor mapping. "
                "Assign a mapping before approving this shift."
            )

        payee = QboRef(value=employee.entity_id, name=employee.display_name)

        customer_ref = None
        if shift.worksite_id:
            customer = await self.store.get_customer_mapping(shift.tenant_id, shift.worksite_id)
            if customer is not None:
                customer_ref = QboRef(value=customer.customer_id, name=customer.display_name)
            else:
                logger.debug(f"No customer mapping worksite={shift.worksite_id} shift={shift.id}")

        class_ref = None
        if shift.program_id:
            klass = await self.store.get_class_mapping(shift.tenant_id, shift.program_id)
            if klass is not None:
                class_ref = QboRef(value=klass.class_id, name=klass.display_name)

        total = shift.duration_minutes
        if total is None:
            total = duration_minutes(shift.in_at, shift.out_at)
        hours, minutes = divmod(total, 60)

        description = f"Shift synced from time clock (shift: {shift.id})"
        if shift.forced_out:
            description += " - auto clock-out at end of day"

        try:
            return TimeActivityPayload(
                txn_date=shift.in_at.astimezone(self.payroll_zone).date(),
                name_of=employee.entity_type,
                employee_ref=payee if employee.entity_type == EntityType.EMPLOYEE else None,
                vendor_ref=payee if employee.entity_type == EntityType.VENDOR else None,
                customer_ref=customer_ref,
                class_ref=class_ref,
                start_time=format_offset_time(shift.in_at, self.payroll_zone),
                end_time=format_offset_time(shift.out_at, self.payroll_zone),
                hours=hours,
                minutes=minutes,
                description=description,
            )
        except ValidationError as e:
            raise MappingError("payload", f"Shift {shift.id} payload invalid: {validation_message(e)}") from e
