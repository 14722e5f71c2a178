"""Configuration management for Hook0."""

import logging
import warnings
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class RetrySettings(BaseModel):
    """Global retry policy for failed deliveries.

    Retryable failures are rescheduled with exponential backoff:
        delay = min(base_delay_seconds * 2**retry_count, max_delay_seconds) * jitter
    where jitter is drawn uniformly from [jitter_min, jitter_max] within [0.5, 1.0].

    Subscriptions carrying their own RetrySchedule override base delay and
    ceiling; the jitter bounds always apply.

    Attributes:
        base_delay_seconds: Delay before the first retry, before jitter.
        max_delay_seconds: Upper bound of the unjittered delay.
        max_retries: Number of retries after which a delivery gives up.
        jitter_min: Lower bound of the jitter factor.
        jitter_max: Upper bound of the jitter factor.
    """

    base_delay_seconds: float = Field(
        default=5.0,
        gt=0.0,
        description="Delay before the first retry (unjittered)",
    )
    max_delay_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Maximum unjittered delay between two retries",
    )
    max_retries: int = Field(
        default=8,
        ge=0,
        le=100,
        description="Retries allowed before a delivery is marked failed",
    )
    jitter_min: float = Field(default=0.5, ge=0.5, le=1.0, description="Minimum jitter factor")
    jitter_max: float = Field(default=1.0, ge=0.5, le=1.0, description="Maximum jitter factor")

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RetrySettings":
        """Reject inverted ranges."""
        if self.jitter_min > self.jitter_max:
            raise ValueError(
                f"jitter_min ({self.jitter_min}) must not exceed jitter_max ({self.jitter_max})"
            )
        if self.base_delay_seconds > self.max_delay_seconds:
            raise ValueError(
                f"base_delay_seconds ({self.base_delay_seconds}) must not exceed "
                f"max_delay_seconds ({self.max_delay_seconds})"
            )
        return self


class WorkerSettings(BaseModel):
    """Settings of an output worker process.

    Attributes:
        name: Worker identity, recorded on every attempt it picks and matched
            against subscriptions' dedicated workers.
        version: Worker version recorded on attempts (package version if unset).
        dedicated: If True, only claim attempts of subscriptions listing this
            worker; otherwise only claim attempts without dedicated workers.
        concurrency: Number of units (independent claim loops) in the pool.
        connect_timeout_seconds: Timeout for establishing the connection.
        timeout_seconds: Total timeout of one HTTP round-trip.
        claim_grace_seconds: Added to timeout_seconds to decide that a claim is stale.
        min_poll_seconds: Idle sleep of unit 0.
        max_poll_seconds: Idle sleep of units >= 3.
        disable_target_ip_check: Allow targets resolving to non-global addresses.
        signature_header_name: Name of the outbound signature header.
        signed_headers: Outbound headers covered by the signature.
        max_response_body_bytes: Response bodies are truncated to this size.
    """

    name: str = Field(default="default", min_length=1, description="Worker name")
    version: str | None = Field(default=None, description="Worker version")
    dedicated: bool = Field(
        default=False, description="Only serve subscriptions naming this worker"
    )
    concurrency: int = Field(default=1, ge=1, le=256, description="Units in the pool")
    connect_timeout_seconds: float = Field(default=5.0, gt=0.0)
    timeout_seconds: float = Field(default=15.0, gt=0.0)
    claim_grace_seconds: float = Field(default=30.0, ge=0.0)
    min_poll_seconds: float = Field(default=1.0, gt=0.0)
    max_poll_seconds: float = Field(default=10.0, gt=0.0)
    disable_target_ip_check: bool = Field(
        default=False,
        description=(
            "If set, targets resolving to loopback, private or otherwise non-global "
            "addresses are called instead of failing with E_INVALID_TARGET"
        ),
    )
    signature_header_name: str = Field(default="Hook0-Signature", min_length=1)
    signed_headers: list[str] = Field(
        default_factory=lambda: ["hook0-event-id", "hook0-event-type"],
        description="Outbound headers included in the v1 signature (empty = payload only)",
    )
    max_response_body_bytes: int = Field(default=65536, ge=0)

    @model_validator(mode="after")
    def _validate_polling(self) -> "WorkerSettings":
        """Validate polling bounds are ordered."""
        if self.min_poll_seconds > self.max_poll_seconds:
            raise ValueError(
                f"min_poll_seconds ({self.min_poll_seconds}) must not exceed "
                f"max_poll_seconds ({self.max_poll_seconds})"
            )
        return self

    @property
    def stale_claim_seconds(self) -> float:
        """Age after which a picked attempt is presumed abandoned."""
        return self.timeout_seconds + self.claim_grace_seconds


class Settings(BaseSettings):
    """Hook0 configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the HOOK0_ prefix. Nested settings use a double underscore:
        HOOK0_DATABASE_PATH=/var/lib/hook0/hook0.db
        HOOK0_WORKER__NAME=eu-west-1
        HOOK0_RETRY__MAX_RETRIES=5
    """

    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    database_path: str = Field(
        default="hook0.db",
        description="SQLite database file of the Attempt Store",
    )
    store_busy_timeout_ms: int = Field(
        default=5000,
        ge=0,
        description="How long a store operation waits for a locked database",
    )

    retry: RetrySettings = Field(default_factory=RetrySettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    signature_tolerance_seconds: int = Field(
        default=300,
        ge=1,
        description="Maximum accepted age of a signature timestamp when verifying",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Warn about settings that weaken target isolation in production."""
        if self.env == "production" and self.worker.disable_target_ip_check:
            warnings.warn(
                "Target IP check is disabled in production: webhooks may reach "
                "loopback or private addresses.",
                UserWarning,
                stacklevel=2,
            )
            logger.warning("Target IP check disabled in production - this is a security risk")
        return self

    model_config = {
        "env_prefix": "HOOK0_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }


# Global settings instance
settings = Settings()
