"""
Stateless signed OAuth state tokens.

The state parameter binds an authorization redirect to the tenant that
started it, without server-side storage:

    base64url("<tenant_id>|<issued_ms>|<nonce>") + "." + hmac[:32]

where hmac is HMAC-SHA256 over the raw payload, hex encoded. Tokens are
rejected after STATE_MAX_AGE_SECONDS.

Usage:
    signer = OAuthStateSigner(config.oauth_state_secret)

    state = signer.sign("tenant-123")
    tenant_id = signer.verify(state)
"""

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


# Configuration
STATE_MAX_AGE_SECONDS = 900  # 15 minutes
MIN_SECRET_LENGTH = 32
SIGNATURE_HEX_CHARS = 32
NONCE_BYTES = 8  # 16 hex chars


class OAuthStateError(Exception):
    """Base exception for OAuth state errors."""
    pass


class StateMalformedError(OAuthStateError):
    """State token cannot be parsed."""
    pass


class StateSignatureError(OAuthStateError):
    """State token signature does not match."""
    pass


class StateExpiredError(OAuthStateError):
    """State token is older than the allowed window."""
    pass


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


class OAuthStateSigner:
    """Signs and verifies tenant-bound OAuth state tokens."""

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = STATE_MAX_AGE_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            secret: HMAC secret, at least 32 characters
            max_age_seconds: Reject tokens older than this
            clock: Returns current time in seconds (injectable for tests)

        Raises:
            ValueError: If the secret is too short
        """
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ValueError(f"OAuth state secret must be at least {MIN_SECRET_LENGTH} characters")
        self._secret = secret.encode("utf-8")
        self.max_age_seconds = max_age_seconds
        self._clock = clock or time.time

    def _mac(self, payload: str) -> str:
        digest = hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()
        return digest[:SIGNATURE_HEX_CHARS]

    def sign(self, tenant_id: str) -> str:
        """
        Create a state token for a tenant.

        Args:
            tenant_id: Tenant starting the authorization flow

        Returns:
            Opaque, URL-safe state string
        """
        if not tenant_id or "|" in tenant_id:
            raise ValueError("tenant_id must be non-empty and must not contain '|'")

        issued_ms = int(self._clock() * 1000)
        nonce = secrets.token_hex(NONCE_BYTES)
        payload = f"{tenant_id}|{issued_ms}|{nonce}"

        return f"{_b64url_encode(payload.encode('utf-8'))}.{self._mac(payload)}"

    def verify(self, state: str) -> str:
        """
        Verify a state token and return the tenant it was issued for.

        Args:
            state: Value of the state query parameter

        Returns:
            Tenant ID

        Raises:
            StateMalformedError: Token cannot be parsed
            StateSignatureError: Signature mismatch
            StateExpiredError: Token is too old
        """
        if not state or "." not in state:
            raise StateMalformedError("State token is missing its signature")

        encoded, signature = state.rsplit(".", 1)

        try:
            payload = _b64url_decode(encoded).decode("utf-8")
        except (binascii.Error, ValueError) as e:
            raise StateMalformedError("State token payload is not valid base64url") from e

        expected = self._mac(payload).encode("ascii")
        if not hmac.compare_digest(expected, signature.encode("utf-8", "replace")):
            logger.warning("OAuth state signature mismatch")
            raise StateSignatureError("State token signature is invalid")

        parts = payload.split("|")
        if len(parts) != 3 or not parts[0]:
            raise StateMalformedError("State token payload has wrong shape")

        tenant_id, issued_raw, _nonce = parts
        try:
            issued_ms = int(issued_raw)
        except ValueError as e:
            raise StateMalformedError("State token timestamp is not an integer") from e

        age_seconds = self._clock() - issued_ms / 1000
        if age_seconds > self.max_age_seconds:
            logger.info(f"Rejected expired OAuth state tenant={tenant_id} age={int(age_seconds)}s")
            raise StateExpiredError("State token has expired")

        return tenant_id
