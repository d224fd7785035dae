"""
Typed QuickBooks Online REST client.

Stateless: every call takes a LiveConnection (realm, bearer token,
environment) from the ConnectionManager. The client never retries; a 429
raises RateLimitedError so the sync engine decides what to do with it.

Handles:
- Base URL selection (sandbox vs production)
- Bearer token injection
- QBO query dialect with STARTPOSITION/MAXRESULTS paging
- Employee, 1099 Vendor, Customer and Class lists
- TimeActivity create, full update and delete
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import EntityType, LiveConnection, QboEnvironment

logger = logging.getLogger(__name__)


BASE_URLS = {
    QboEnvironment.SANDBOX: "https://sandbox-quickbooks.api.intuit.com",
    QboEnvironment.PRODUCTION: "https://quickbooks.api.intuit.com",
}

HTTP_TIMEOUT_SECONDS = 30
QUERY_PAGE_SIZE = 1000  # QBO hard limit per page
QUERY_MAX_ROWS = 1000

_OFFSET_TIME = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:\d{2}$")


class QboClientError(Exception):
    """Base exception for QBO API errors."""
    pass


class RateLimitedError(QboClientError):
    """QBO answered 429. Never retried inside the client."""

    def __init__(self, path: str = ""):
        super().__init__("QBO API rate limit exceeded (429). Request queued for retry.")
        self.path = path


class ApiFaultError(QboClientError):
    """QBO returned a non-2xx response other than 429."""

    def __init__(self, status_code: int, fault: Any, path: str):
        detail = _fault_detail(fault)
        message = f"QBO API error {status_code} at {path}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.fault = fault
        self.path = path


class QboNetworkError(QboClientError):
    """Request never got an HTTP response."""
    pass


def _fault_detail(fault: Any) -> Optional[str]:
    """Pull the first Fault.Error message/detail out of a QBO error body."""
    if not isinstance(fault, dict):
        return None
    errors = (fault.get("Fault") or {}).get("Error") or []
    if not errors or not isinstance(errors[0], dict):
        return None
    first = errors[0]
    return first.get("Detail") or first.get("Message")


# ============================================================================
# Wire Models
# ============================================================================

class QboRef(BaseModel):
    """Reference to another QBO entity."""
    value: str = Field(..., min_length=1, description="QBO entity Id")
    name: Optional[str] = Field(default=None, description="Display name")


class TimeActivityPayload(BaseModel):
    """
    TimeActivity request body.

    Field names follow Python conventions; aliases are the QBO wire names.
    Exactly one of EmployeeRef/VendorRef is set, matching NameOf.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    txn_date: date = Field(..., alias="TxnDate", description="Payroll date of the shift start")
    name_of: EntityType = Field(..., alias="NameOf")
    employee_ref: Optional[QboRef] = Field(default=None, alias="EmployeeRef")
    vendor_ref: Optional[QboRef] = Field(default=None, alias="VendorRef")
    customer_ref: Optional[QboRef] = Field(default=None, alias="CustomerRef")
    class_ref: Optional[QboRef] = Field(default=None, alias="ClassRef")
    billable_status: Literal["Billable", "NotBillable", "HasBeenBilled"] = Field(
        default="NotBillable",
        alias="BillableStatus"
    )
    taxable: bool = Field(default=False, alias="Taxable")
    start_time: str = Field(..., alias="StartTime", description="YYYY-MM-DDTHH:MM:SS+HH:MM")
    end_time: str = Field(..., alias="EndTime", description="YYYY-MM-DDTHH:MM:SS+HH:MM")
    hours: int = Field(..., ge=0, alias="Hours")
    minutes: int = Field(..., ge=0, le=59, alias="Minutes")
    description: Optional[str] = Field(default=None, max_length=4000, alias="Description")

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_offset_time(cls, v):
        if not _OFFSET_TIME.match(v):
            raise ValueError('time must be formatted YYYY-MM-DDTHH:MM:SS+HH:MM')
        return v

    @model_validator(mode='after')
    def validate_payee_ref(self):
        if self.name_of == EntityType.EMPLOYEE:
            if self.employee_ref is None or self.vendor_ref is not None:
                raise ValueError('NameOf Employee requires EmployeeRef and no VendorRef')
        else:
            if self.vendor_ref is None or self.employee_ref is not None:
                raise ValueError('NameOf Vendor requires VendorRef and no EmployeeRef')
        return self

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass
class TimeActivityResult:
    """Identity of a TimeActivity as returned by QBO."""
    id: str
    sync_token: str

    @classmethod
    def from_response(cls, data: Any) -> "TimeActivityResult":
        activity = data.get("TimeActivity") if isinstance(data, dict) else None
        if not isinstance(activity, dict) or "Id" not in activity or "SyncToken" not in activity:
            raise ValueError("Response has no TimeActivity Id/SyncToken")
        return cls(id=str(activity["Id"]), sync_token=str(activity["SyncToken"]))


@dataclass
class QboEntity:
    """One row of an Employee/Vendor/Customer/Class listing."""
    id: str
    kind: str
    display_name: str
    active: bool = True
    fully_qualified_name: Optional[str] = None


# ============================================================================
# Client
# ============================================================================

class QboClient:
    """
    QBO accounting API client.

    Pass an httpx.AsyncClient to share a connection pool (or a mock
    transport in tests); otherwise a client is created per call.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        self._http_client = http_client
        self.timeout = timeout

    @staticmethod
    def company_url(conn: LiveConnection, path: str) -> str:
        return f"{BASE_URLS[conn.environment]}/v3/company/{conn.realm_id}{path}"

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def request(
        self,
        conn: LiveConnection,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Make an authenticated request under the connection's company.

        Args:
            conn: Live connection from the ConnectionManager
            method: HTTP method
            path: Path below /v3/company/{realmId}
            params: Query parameters
            json: JSON body

        Returns:
            Parsed JSON body, or None for 204/empty responses

        Raises:
            RateLimitedError: QBO returned 429
            ApiFaultError: Any other non-2xx status
            QboNetworkError: Transport failure
        """
        headers = {
            "Authorization": f"Bearer {conn.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

        try:
            response = await self._send(
                method,
                self.company_url(conn, path),
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.RequestError as e:
            raise QboNetworkError(f"Network error calling QBO {path}: {e}") from e

        if response.status_code == 429:
            logger.warning(f"QBO rate limit hit realm={conn.realm_id} path={path}")
            raise RateLimitedError(path)

        if not response.is_success:
            try:
                fault = response.json() if response.content else None
            except ValueError:
                fault = None
            raise ApiFaultError(response.status_code, fault, path)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def query(
        self,
        conn: LiveConnection,
        statement: str,
        max_rows: int = QUERY_MAX_ROWS,
        page_size: int = QUERY_PAGE_SIZE,
    ) -> List[Dict[str, Any]]:
        """
        Run a QBO query, following pages until exhausted or max_rows.

        Args:
            statement: Query without STARTPOSITION/MAXRESULTS clauses

        Returns:
            Raw entity rows
        """
        rows: List[Dict[str, Any]] = []
        start = 1

        while len(rows) < max_rows:
            limit = min(page_size, max_rows - len(rows))
            paged = f"{statement} STARTPOSITION {start} MAXRESULTS {limit}"
            data = await self.request(conn, "GET", "/query", params={"query": paged}) or {}

            page = _query_rows(data.get("QueryResponse") or {})
            rows.extend(page)

            if len(page) < limit:
                break
            start += len(page)

        if len(rows) >= max_rows:
            logger.warning(f"QBO query reached max rows ({max_rows}) realm={conn.realm_id}")

        return rows[:max_rows]

    # ------------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------------

    async def list_employees(self, conn: LiveConnection) -> List[QboEntity]:
        rows = await self.query(conn, "SELECT Id, DisplayName, Active FROM Employee")
        return [_entity(row, "Employee") for row in rows]

    async def list_vendors(self, conn: LiveConnection) -> List[QboEntity]:
        """1099 contractors only."""
        rows = await self.query(
            conn, "SELECT Id, DisplayName, Active FROM Vendor WHERE Vendor1099 = true"
        )
        return [_entity(row, "Vendor") for row in rows]

    async def list_customers(self, conn: LiveConnection) -> List[QboEntity]:
        rows = await self.query(
            conn, "SELECT Id, DisplayName, FullyQualifiedName, Active FROM Customer"
        )
        return [_entity(row, "Customer") for row in rows]

    async def list_classes(self, conn: LiveConnection) -> List[QboEntity]:
        rows = await self.query(
            conn, "SELECT Id, Name, FullyQualifiedName, Active FROM Class"
        )
        return [_entity(row, "Class") for row in rows]

    # ------------------------------------------------------------------------
    # TimeActivity
    # ------------------------------------------------------------------------

    async def create_time_activity(
        self,
        conn: LiveConnection,
        payload: TimeActivityPayload,
    ) -> TimeActivityResult:
        data = await self.request(conn, "POST", "/timeactivity", json=payload.to_wire())
        return self._result(data, "/timeactivity")

    async def update_time_activity(
        self,
        conn: LiveConnection,
        activity_id: str,
        sync_token: str,
        payload: TimeActivityPayload,
    ) -> TimeActivityResult:
        """Full-replace update; QBO rejects a stale SyncToken with a fault."""
        body = {**payload.to_wire(), "Id": activity_id, "SyncToken": sync_token, "sparse": False}
        data = await self.request(conn, "POST", "/timeactivity", json=body)
        return self._result(data, "/timeactivity")

    async def delete_time_activity(
        self,
        conn: LiveConnection,
        activity_id: str,
        sync_token: str,
    ):
        await self.request(
            conn,
            "POST",
            "/timeactivity",
            params={"operation": "delete"},
            json={"Id": activity_id, "SyncToken": sync_token},
        )
        logger.info(f"Deleted TimeActivity {activity_id} realm={conn.realm_id}")

    @staticmethod
    def _result(data: Optional[Dict[str, Any]], path: str) -> TimeActivityResult:
        try:
            return TimeActivityResult.from_response(data)
        except ValueError as e:
            raise ApiFaultError(200, data, path) from e


def _query_rows(query_response: Dict[str, Any]) -> List[Dict[str, Any]]:
    # QueryResponse also carries startPosition/maxResults/totalCount
    for value in query_response.values():
        if isinstance(value, list):
            return value
    return []


def _entity(row: Dict[str, Any], kind: str) -> QboEntity:
    return QboEntity(
        id=str(row["Id"]),
        kind=kind,
        display_name=row.get("DisplayName") or row.get("Name") or "",
        active=bool(row.get("Active", True)),
        fully_qualified_name=row.get("FullyQualifiedName"),
    )


def validation_message(error: ValidationError) -> str:
    """One-line summary of a pydantic error for sync_error fields."""
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "payload"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)
