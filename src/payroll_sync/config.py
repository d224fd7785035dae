"""
Configuration management for the payroll sync service.

Loads settings from QBO_* environment variables (or a .env file).
Validates all required settings and provides typed access.
"""

from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncConfig(BaseSettings):
    """Payroll sync configuration loaded from environment."""

    # ========================================================================
    # Secrets
    # ========================================================================

    encryption_key: str = Field(
        ...,
        description="AES-256 key for tokens at rest, 64 hex characters"
    )
    oauth_state_secret: str = Field(
        ...,
        description="HMAC secret for OAuth state tokens (32+ characters)"
    )

    # ========================================================================
    # OAuth Client
    # ========================================================================

    client_id: str = Field(..., description="Intuit app client ID")
    client_secret: str = Field(..., description="Intuit app client secret")
    redirect_uri: str = Field(..., description="OAuth redirect URI registered with Intuit")
    environment: str = Field(
        default="sandbox",
        description="QBO environment for new connections: sandbox or production"
    )

    # ========================================================================
    # Payroll
    # ========================================================================

    payroll_timezone: str = Field(
        default="America/New_York",
        description="IANA time zone used to render TimeActivity start/end times"
    )

    # ========================================================================
    # Storage
    # ========================================================================

    db_path: Path = Field(
        default=Path("/var/lib/payroll-sync/payroll.db"),
        description="SQLite database path"
    )

    # ========================================================================
    # Retry Queue
    # ========================================================================

    scan_interval_seconds: int = Field(
        default=900,
        ge=60,
        le=86400,
        description="Run the periodic retry scan every N seconds"
    )
    scan_batch_size: int = Field(
        default=20,
        ge=1,
        le=100,
        description="Max shifts pushed per tenant per scan"
    )
    bulk_retry_cap: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Max shifts processed by one operator bulk retry"
    )
    max_attempts: int = Field(
        default=10,
        ge=1,
        description="Failed attempts before a shift is dead-lettered"
    )
    max_backoff_minutes: int = Field(
        default=30,
        ge=1,
        description="Upper bound on the exponential retry delay"
    )
    in_flight_lease_seconds: int = Field(
        default=600,
        ge=30,
        description="A pending claim older than this is considered abandoned"
    )

    # ========================================================================
    # Timing
    # ========================================================================

    refresh_margin_seconds: int = Field(
        default=300,
        ge=0,
        description="Refresh access tokens expiring within N seconds"
    )
    state_max_age_seconds: int = Field(
        default=900,
        ge=60,
        description="Reject OAuth state tokens older than N seconds"
    )
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=120,
        description="Timeout for every outbound HTTP call"
    )

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(
        default="INFO",
        description="Service log level"
    )

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator('encryption_key')
    @classmethod
    def validate_encryption_key(cls, v):
        try:
            raw = bytes.fromhex(v)
        except ValueError:
            raise ValueError('encryption_key must be hex encoded')
        if len(raw) != 32:
            raise ValueError('encryption_key must be 64 hex characters (32 bytes)')
        return v

    @field_validator('oauth_state_secret')
    @classmethod
    def validate_state_secret(cls, v):
        if len(v) < 32:
            raise ValueError('oauth_state_secret must be at least 32 characters')
        return v

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['sandbox', 'production']:
            raise ValueError('environment must be sandbox or production')
        return v

    @field_validator('payroll_timezone')
    @classmethod
    def validate_payroll_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f'Unknown time zone: {v}')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ['DEBUG', 'INFO', 'WARNING', 'ERROR']:
            raise ValueError('log_level must be DEBUG, INFO, WARNING, or ERROR')
        return v

    # ========================================================================
    # Parsed Properties
    # ========================================================================

    @property
    def encryption_key_bytes(self) -> bytes:
        return bytes.fromhex(self.encryption_key)

    @property
    def payroll_zone(self) -> ZoneInfo:
        return ZoneInfo(self.payroll_timezone)

    model_config = SettingsConfigDict(
        env_prefix='QBO_',
        env_file='.env',
        extra='ignore',
        validate_assignment=True,
    )


def load_config(env_file: Optional[Path] = None) -> SyncConfig:
    """
    Load configuration from environment variables.

    Args:
        env_file: Optional dotenv file overriding the default .env

    Returns:
        SyncConfig: Validated configuration

    Raises:
        pydantic.ValidationError: If required settings missing or invalid
    """
    if env_file is not None:
        return SyncConfig(_env_file=env_file)
    return SyncConfig()
