"""
Payroll Sync API Router.

REST endpoints for the payroll sync core:
- Shift approval, push, bulk retry, dead-letter reset and pay-period lock
- End-of-day work session closure
- QuickBooks OAuth start/callback and disconnect
- Roster refresh and tenant sync status

Error mapping:
- 404 unknown shift, session or connection
- 409 push already in flight
- 422 mapping missing or shift not eligible
- 424 tenant connection missing, revoked, not refreshable or unreadable
- 429 QuickBooks rate limit
- 502 QuickBooks fault or token exchange failure
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator

from .config import SyncConfig, load_config
from .connection_manager import (
    NotConnectedError,
    QboConnectionError,
    TokenExchangeError,
    TokenRefreshError,
    TokenRevokedError,
)
from .credential_vault import CredentialVaultError
from .mapping import MappingError
from .oauth_state import OAuthStateError
from .qbo_client import ApiFaultError, QboClientError, QboNetworkError, RateLimitedError
from .services import PayrollServices, build_services
from .sessions import WorkSessionClosedError, WorkSessionError, WorkSessionNotFoundError
from .sync_engine import (
    DeadLetterError,
    PushInProgressError,
    ShiftNotEligibleError,
    ShiftNotFoundError,
    SyncEngineError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ApproveRequest(BaseModel):
    """Approve a shift, optionally pushing it right away."""
    approved_by: Optional[str] = Field(None, description="User approving the shift")
    push: bool = Field(True, description="Push to QuickBooks immediately after approval")


class LockRequest(BaseModel):
    locked_by: Optional[str] = Field(None, description="User closing the pay period")


class RetryRequest(BaseModel):
    """Bulk retry; omit shift_ids to retry every approved failed/retry shift."""
    shift_ids: Optional[List[str]] = Field(None, description="Explicit shifts to retry")


class EndSessionRequest(BaseModel):
    ended_by: Optional[str] = Field(None, description="Supervisor ending the day")
    end_timestamp: Optional[datetime] = Field(None, description="Closing instant (defaults to now)")

    @field_validator('end_timestamp')
    @classmethod
    def assume_utc(cls, v):
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class RosterRefreshRequest(BaseModel):
    groups: Optional[List[str]] = Field(None, description="employees, customers and/or classes")


class OAuthStartResponse(BaseModel):
    tenant_id: str
    auth_url: str


# =============================================================================
# ROUTER SETUP
# =============================================================================

router = APIRouter(
    prefix="/api/payroll",
    tags=["payroll"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_services(request: Request) -> PayrollServices:
    """Services built by create_app()."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Payroll services not configured")
    return services


def _http_error(e: Exception) -> HTTPException:
    """Translate a service exception into an HTTP error."""
    if isinstance(e, (ShiftNotFoundError, WorkSessionNotFoundError)):
        status = 404
    elif isinstance(e, PushInProgressError):
        status = 409
    elif isinstance(e, (MappingError, ShiftNotEligibleError, DeadLetterError, WorkSessionClosedError, ValueError)):
        status = 422
    elif isinstance(e, (NotConnectedError, TokenRevokedError, TokenRefreshError, CredentialVaultError)):
        status = 424
    elif isinstance(e, RateLimitedError):
        status = 429
    elif isinstance(e, (ApiFaultError, QboNetworkError, TokenExchangeError)):
        status = 502
    elif isinstance(e, OAuthStateError):
        status = 400
    else:
        status = 500
    return HTTPException(status_code=status, detail=str(e) or type(e).__name__)


SERVICE_ERRORS = (
    SyncEngineError,
    WorkSessionError,
    MappingError,
    QboClientError,
    QboConnectionError,
    OAuthStateError,
    CredentialVaultError,
    ValueError,
)


# =============================================================================
# SHIFTS
# =============================================================================

@router.post("/shifts/{shift_id}/approve")
async def approve_shift(
    shift_id: str,
    body: ApproveRequest,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Approve a shift for payroll.

    The approval stands even when the immediate push fails; the push
    outcome is reported next to it.
    """
    try:
        await services.engine.approve_shift(shift_id, approved_by=body.approved_by)
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e

    push_result = None
    if body.push:
        try:
            push_result = (await services.engine.push_shift(shift_id)).to_dict()
        except SERVICE_ERRORS as e:
            stored = await services.store.get_shift(shift_id)
            push_result = {
                "shift_id": shift_id,
                "outcome": stored.sync_status.value if stored and stored.sync_status else None,
                "error": str(e) or type(e).__name__,
                "status_code": _http_error(e).status_code,
            }

    shift = await services.store.get_shift(shift_id)
    return {"shift": shift.to_dict(), "push": push_result}


@router.post("/shifts/{shift_id}/push")
async def push_shift(
    shift_id: str,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """Push an approved shift now (CREATE, or UPDATE when already synced)."""
    try:
        result = await services.engine.push_shift(shift_id)
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e
    return result.to_dict()


@router.post("/shifts/{shift_id}/reset")
async def reset_dead_letter(
    shift_id: str,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        await services.engine.reset_dead_letter(shift_id)
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e
    shift = await services.store.get_shift(shift_id)
    return shift.to_dict()


@router.post("/shifts/{shift_id}/lock")
async def lock_shift(
    shift_id: str,
    body: LockRequest,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        await services.engine.lock_shift(shift_id, locked_by=body.locked_by)
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e
    shift = await services.store.get_shift(shift_id)
    return shift.to_dict()


@router.post("/tenants/{tenant_id}/retry")
async def retry_shifts(
    tenant_id: str,
    body: RetryRequest,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """Operator bulk retry; shifts are pushed one at a time."""
    batch = await services.engine.retry_shifts(tenant_id, shift_ids=body.shift_ids)
    return batch.to_dict()


# =============================================================================
# WORK SESSIONS
# =============================================================================

@router.post("/sessions/{session_id}/end")
async def end_session(
    session_id: str,
    body: EndSessionRequest,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """End the day: auto clock-out anyone still in and persist shifts."""
    try:
        result = await services.sessions.end_session(
            session_id,
            ended_by=body.ended_by,
            end_timestamp=body.end_timestamp,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e
    return result.to_dict()


# =============================================================================
# OAUTH
# =============================================================================

@router.get("/oauth/start", response_model=OAuthStartResponse)
async def oauth_start(
    tenant_id: str = Query(..., min_length=1),
    services: PayrollServices = Depends(get_services),
):
    """Return the Intuit consent URL; the client navigates to it."""
    try:
        auth_url = services.connections.authorization_url(tenant_id)
    except ValueError as e:
        raise _http_error(e) from e
    return OAuthStartResponse(tenant_id=tenant_id, auth_url=auth_url)


@router.get("/oauth/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    realmId: Optional[str] = None,
    error: Optional[str] = None,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """Intuit redirect target: verify state, exchange code, store connection."""
    if error or not code or not state or not realmId:
        logger.warning(f"OAuth callback rejected reason={error or 'missing_params'}")
        raise HTTPException(status_code=400, detail=error or "missing_params")

    try:
        tenant_id = await services.connections.complete_authorization(code, state, realmId)
    except SERVICE_ERRORS as e:
        logger.warning(f"OAuth callback failed: {type(e).__name__}")
        raise _http_error(e) from e

    return {"tenant_id": tenant_id, "realm_id": realmId, "status": "connected"}


@router.post("/tenants/{tenant_id}/disconnect")
async def disconnect(
    tenant_id: str,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        await services.connections.revoke_connection(tenant_id)
    except NotConnectedError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {"tenant_id": tenant_id, "status": "disconnected"}


# =============================================================================
# ROSTER AND STATUS
# =============================================================================

@router.post("/tenants/{tenant_id}/roster/refresh")
async def refresh_roster(
    tenant_id: str,
    body: RosterRefreshRequest,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    try:
        counts = await services.roster.refresh(tenant_id, groups=body.groups)
    except SERVICE_ERRORS as e:
        raise _http_error(e) from e
    return {"tenant_id": tenant_id, "cached": counts}


@router.get("/tenants/{tenant_id}/status")
async def tenant_status(
    tenant_id: str,
    services: PayrollServices = Depends(get_services),
) -> Dict[str, Any]:
    """Connection state and shift counts per sync status."""
    connection = await services.store.get_connection(tenant_id)
    connection_info = None
    if connection is not None:
        connection_info = {
            "realm_id": connection.realm_id,
            "status": connection.status.value,
            "environment": connection.environment.value,
            "token_expiry": connection.token_expiry.isoformat(),
            "connected_at": connection.connected_at.isoformat() if connection.connected_at else None,
        }

    return {
        "tenant_id": tenant_id,
        "connection": connection_info,
        "sync": await services.engine.sync_status_summary(tenant_id),
    }


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    config: Optional[SyncConfig] = None,
    services: Optional[PayrollServices] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        config: Configuration; loaded from the environment when omitted
        services: Pre-built services (tests); built from config when omitted
    """
    if services is None:
        services = build_services(config or load_config())

    app = FastAPI(title="Payroll Sync", version="0.1.0")
    app.state.services = services
    app.include_router(router)

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    return app
