"""
Per-tenant OAuth connection lifecycle for QuickBooks Online.

Responsibilities:
- Build the Intuit consent URL with a signed state parameter
- Exchange the authorization code and persist encrypted tokens
- Hand out a live access token, refreshing it when it is within the
  refresh margin of expiry
- Mark connections revoked when Intuit rejects the refresh token
- Disconnect a tenant, revoking the refresh token at Intuit best-effort

Refreshes for one tenant are serialized inside this process. Two
processes refreshing the same tenant at once can still race; the loser's
refresh token is invalidated by Intuit and its next refresh marks the
connection revoked.

Usage:
    manager = ConnectionManager.from_config(config, store)

    url = manager.authorization_url("tenant-123")
    tenant_id = await manager.complete_authorization(code, state, realm_id)
    live = await manager.get_live_connection(tenant_id)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from .config import SyncConfig
from .credential_vault import CredentialVault, CredentialVaultError
from .models import Connection, ConnectionStatus, LiveConnection, QboEnvironment
from .oauth_state import OAuthStateSigner
from .store import PayrollStore

logger = logging.getLogger(__name__)


# Intuit endpoints
AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
SCOPES = ["com.intuit.quickbooks.accounting"]

# Configuration
TOKEN_REFRESH_BUFFER_SECONDS = 300  # Refresh 5 minutes before expiry
HTTP_TIMEOUT_SECONDS = 30
DEFAULT_EXPIRES_IN = 3600


class QboConnectionError(Exception):
    """Base exception for connection lifecycle errors."""
    pass


class NotConnectedError(QboConnectionError):
    """Tenant has no stored connection."""

    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant {tenant_id} has no QuickBooks connection")
        self.tenant_id = tenant_id


class TokenRevokedError(QboConnectionError):
    """Connection was revoked or disconnected; the tenant must reconnect."""

    def __init__(self, tenant_id: str):
        super().__init__(
            f"QuickBooks connection for tenant {tenant_id} has been revoked. "
            "Reconnect via OAuth."
        )
        self.tenant_id = tenant_id


class TokenRefreshError(QboConnectionError):
    """Failed to refresh access token."""
    pass


class TokenExchangeError(QboConnectionError):
    """Failed to exchange authorization code for tokens."""
    pass


@dataclass
class TokenResponse:
    """Intuit token endpoint response."""
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    @classmethod
    def from_json(cls, data: Dict[str, Any], fallback_refresh_token: Optional[str] = None) -> "TokenResponse":
        refresh_token = data.get("refresh_token") or fallback_refresh_token
        if not data.get("access_token") or not refresh_token:
            raise ValueError("Token response is missing access_token or refresh_token")
        return cls(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            expires_in=int(data.get("expires_in", DEFAULT_EXPIRES_IN)),
            token_type=data.get("token_type", "bearer"),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionManager:
    """
    Loads, refreshes and persists tenant connections.

    Tokens are encrypted with the credential vault before they reach the
    store and are only decrypted on the way out to a caller.
    """

    def __init__(
        self,
        store: PayrollStore,
        vault: CredentialVault,
        state_signer: OAuthStateSigner,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        environment: QboEnvironment = QboEnvironment.SANDBOX,
        refresh_margin_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            store: Persistence for connection rows
            vault: Encrypts tokens at rest
            state_signer: Signs and verifies OAuth state
            client_id: Intuit app client ID
            client_secret: Intuit app client secret
            redirect_uri: Registered OAuth redirect URI
            environment: Environment recorded for new connections
            refresh_margin_seconds: Refresh tokens expiring within this window
            http_timeout: Timeout for token endpoint calls
            http_client: Shared client (tests inject one with a mock transport)
            clock: Returns the current UTC time
        """
        self.store = store
        self.vault = vault
        self.state_signer = state_signer
        self.client_id = client_id
        self._client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.environment = environment
        self.refresh_margin = timedelta(seconds=refresh_margin_seconds)
        self.http_timeout = http_timeout
        self._http_client = http_client
        self._now = clock or _utcnow
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        store: PayrollStore,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ConnectionManager":
        return cls(
            store=store,
            vault=CredentialVault(config.encryption_key_bytes),
            state_signer=OAuthStateSigner(
                config.oauth_state_secret,
                max_age_seconds=config.state_max_age_seconds,
            ),
            client_id=config.client_id,
            client_secret=config.client_secret,
            redirect_uri=config.redirect_uri,
            environment=QboEnvironment(config.environment),
            refresh_margin_seconds=config.refresh_margin_seconds,
            http_timeout=config.http_timeout_seconds,
            http_client=http_client,
        )

    # ========================================================================
    # HTTP helpers
    # ========================================================================

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        kwargs.setdefault("auth", (self.client_id, self._client_secret))
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}

        if self._http_client is not None:
            return await self._http_client.post(url, headers=headers, timeout=self.http_timeout, **kwargs)

        async with httpx.AsyncClient(timeout=self.http_timeout) as client:
            return await client.post(url, headers=headers, **kwargs)

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        lock = self._refresh_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._refresh_locks[tenant_id] = lock
        return lock

    def _is_fresh(self, connection: Connection) -> bool:
        return connection.token_expiry - self._now() > self.refresh_margin

    # ========================================================================
    # Authorization flow
    # ========================================================================

    def authorization_url(self, tenant_id: str) -> str:
        """
        Build the Intuit consent URL for a tenant.

        Args:
            tenant_id: Tenant starting the connection

        Returns:
            URL to redirect the browser to
        """
        params = {
            "client_id": self.client_id,
            "scope": " ".join(SCOPES),
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": self.state_signer.sign(tenant_id),
        }

        logger.info(f"Generated QBO auth URL tenant={tenant_id}")
        return f"{AUTH_URL}?{urlencode(params)}"

    async def complete_authorization(
        self,
        code: str,
        state: str,
        realm_id: str,
        connected_by: Optional[str] = None,
    ) -> str:
        """
        Handle the OAuth callback.

        Args:
            code: Authorization code from the callback
            state: Signed state from the callback
            realm_id: QBO company ID from the callback
            connected_by: User attributed with the connection

        Returns:
            Tenant ID the connection was saved for

        Raises:
            OAuthStateError: State is malformed, forged or expired
            TokenExchangeError: Intuit rejected the code or was unreachable
        """
        tenant_id = self.state_signer.verify(state)

        try:
            response = await self._post(
                TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
            )
        except httpx.RequestError as e:
            raise TokenExchangeError(f"Network error during token exchange: {e}") from e

        if response.status_code != 200:
            logger.warning(f"Token exchange failed tenant={tenant_id} status={response.status_code}")
            raise TokenExchangeError(f"Token exchange failed ({response.status_code}): {response.text}")

        try:
            tokens = TokenResponse.from_json(response.json())
        except ValueError as e:
            raise TokenExchangeError(f"Invalid token response: {e}") from e

        await self.save_connection(
            tenant_id=tenant_id,
            realm_id=realm_id,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in_seconds=tokens.expires_in,
            connected_by=connected_by,
        )

        logger.info(f"OAuth token exchange successful tenant={tenant_id} realm={realm_id}")
        return tenant_id

    # ========================================================================
    # Connection lifecycle
    # ========================================================================

    async def save_connection(
        self,
        tenant_id: str,
        realm_id: str,
        access_token: str,
        refresh_token: str,
        expires_in_seconds: int,
        connected_by: Optional[str] = None,
        environment: Optional[QboEnvironment] = None,
    ) -> Connection:
        """Create or fully overwrite the tenant's connection, status active."""
        now = self._now()
        connection = Connection(
            tenant_id=tenant_id,
            realm_id=realm_id,
            encrypted_access_token=self.vault.encrypt(access_token),
            encrypted_refresh_token=self.vault.encrypt(refresh_token),
            token_expiry=now + timedelta(seconds=expires_in_seconds),
            status=ConnectionStatus.ACTIVE,
            environment=environment or self.environment,
            connected_at=now,
            connected_by=connected_by,
        )
        await self.store.save_connection(connection)
        return connection

    async def get_live_connection(self, tenant_id: str) -> LiveConnection:
        """
        Return a connection with an access token valid beyond the margin.

        Raises:
            NotConnectedError: No connection stored
            TokenRevokedError: Connection revoked/disconnected, or Intuit
                rejected the refresh token
            TokenRefreshError: Refresh failed for another reason
        """
        connection = await self._load_usable(tenant_id)
        if self._is_fresh(connection):
            return self._live(connection, self.vault.decrypt(connection.encrypted_access_token))

        async with self._lock_for(tenant_id):
            # Another task may have refreshed while we waited
            connection = await self._load_usable(tenant_id)
            if self._is_fresh(connection):
                return self._live(connection, self.vault.decrypt(connection.encrypted_access_token))

            refresh_token = self.vault.decrypt(connection.encrypted_refresh_token)
            tokens = await self._refresh(tenant_id, refresh_token)

            await self.store.update_connection_tokens(
                tenant_id=tenant_id,
                encrypted_access_token=self.vault.encrypt(tokens.access_token),
                encrypted_refresh_token=self.vault.encrypt(tokens.refresh_token),
                token_expiry=self._now() + timedelta(seconds=tokens.expires_in),
            )

            logger.info(f"Token refresh successful tenant={tenant_id}")
            return self._live(connection, tokens.access_token)

    async def revoke_connection(self, tenant_id: str):
        """
        Disconnect a tenant. The row is kept with status disconnected.

        Remote revocation of the refresh token is attempted first; its
        failure is logged and does not block the disconnect.

        Raises:
            NotConnectedError: No connection stored
        """
        connection = await self.store.get_connection(tenant_id)
        if connection is None:
            raise NotConnectedError(tenant_id)

        try:
            refresh_token = self.vault.decrypt(connection.encrypted_refresh_token)
            response = await self._post(
                REVOKE_URL,
                json={"token": refresh_token},
                headers={"Content-Type": "application/json"},
            )
            if response.status_code != 200:
                logger.warning(
                    f"Remote token revocation returned {response.status_code} tenant={tenant_id}"
                )
        except (httpx.HTTPError, CredentialVaultError) as e:
            logger.warning(f"Remote token revocation failed tenant={tenant_id}: {type(e).__name__}: {e}")

        await self.store.set_connection_status(tenant_id, ConnectionStatus.DISCONNECTED)
        logger.info(f"QBO connection disconnected tenant={tenant_id}")

    async def _load_usable(self, tenant_id: str) -> Connection:
        connection = await self.store.get_connection(tenant_id)
        if connection is None:
            raise NotConnectedError(tenant_id)
        if connection.status in (ConnectionStatus.REVOKED, ConnectionStatus.DISCONNECTED):
            raise TokenRevokedError(tenant_id)
        return connection

    @staticmethod
    def _live(connection: Connection, access_token: str) -> LiveConnection:
        return LiveConnection(
            tenant_id=connection.tenant_id,
            realm_id=connection.realm_id,
            access_token=access_token,
            environment=connection.environment,
        )

    async def _refresh(self, tenant_id: str, refresh_token: str) -> TokenResponse:
        try:
            response = await self._post(
                TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
            )
        except httpx.RequestError as e:
            raise TokenRefreshError(f"Network error during refresh: {e}") from e

        if response.status_code in (400, 401):
            # Intuit answers 400/401 when the refresh token is revoked or expired
            await self.store.set_connection_status(tenant_id, ConnectionStatus.REVOKED)
            logger.error(f"Refresh token rejected tenant={tenant_id} status={response.status_code}")
            raise TokenRevokedError(tenant_id)

        if response.status_code != 200:
            raise TokenRefreshError(
                f"Token refresh failed ({response.status_code}): {response.text}"
            )

        try:
            return TokenResponse.from_json(response.json(), fallback_refresh_token=refresh_token)
        except ValueError as e:
            raise TokenRefreshError(f"Invalid token response: {e}") from e
