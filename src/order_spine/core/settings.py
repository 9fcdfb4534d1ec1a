"""Settings for order-spine.

``OrderSpineSettings`` gathers every knob the dispatcher, the simulated
strategy, the store, and the HTTP transport read at startup.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.
    Field names match the environment variables the service has always
    been deployed with (``MAX_CONCURRENT_ORDERS``, ``ORDER_RATE_LIMIT``,
    ``RETRY_MAX_ATTEMPTS`` ...), so no prefix is applied.

    - **Pydantic validation:** Type-checked at startup, not at first use
    - **Environment-driven:** Reads from env vars and a ``.env`` file
    - **Sensible defaults:** Works out of the box for development

Examples:
    >>> settings = OrderSpineSettings(max_concurrent_orders=5, retry_backoff_ms=100)
    >>> settings.retry_backoff_ms
    100

Tags:
    settings, configuration, pydantic, environment, order-spine

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrderSpineSettings(BaseSettings):
    """Effective configuration for one order-spine process.

    Order of precedence (highest → lowest):
        1. Explicit constructor arguments
        2. Environment variables (``MAX_CONCURRENT_ORDERS``, ...)
        3. ``.env`` file
        4. Defaults below
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Server ───────────────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0", description="Bind address")
    port: int = Field(default=3000, description="Bind port")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Expose exception detail in API errors")
    api_prefix: str = Field(default="/api", description="URL prefix for all endpoints")
    api_title: str = Field(default="Order Execution Engine", description="OpenAPI title")
    api_version: str = Field(default="1.0.0", description="OpenAPI version string")
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # ── Observability ────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool | None = Field(default=None, description="Force JSON logs (auto when unset)")

    # ── Storage ──────────────────────────────────────────────────────────
    store_backend: Literal["memory", "sqlite"] = Field(default="memory")
    database_path: str = Field(default="order_spine.db", description="SQLite file for the sqlite backend")

    # ── Order processing ─────────────────────────────────────────────────
    max_concurrent_orders: int = Field(default=10, ge=1, description="Admission ceiling")
    order_rate_limit: int = Field(default=100, ge=1, description="Admissions per rate window")
    order_rate_window_ms: int = Field(default=60_000, ge=1, description="Rate window length")
    order_rate_burst: int | None = Field(
        default=None,
        ge=1,
        description="Token bucket capacity (defaults to order_rate_limit)",
    )
    retry_max_attempts: int = Field(default=3, ge=1, description="Execution attempts per order")
    retry_backoff_ms: int = Field(default=1000, ge=0, description="Base backoff delay")
    execution_timeout_ms: int = Field(default=30_000, ge=1, description="Per-attempt deadline")
    shutdown_timeout_ms: int = Field(default=10_000, ge=0, description="Drain window on stop")

    # ── Simulated execution ──────────────────────────────────────────────
    mock_mode: bool = Field(default=True, description="Use the simulated DEX strategy")
    mock_delay_min_ms: int = Field(default=2000, ge=0)
    mock_delay_max_ms: int = Field(default=3000, ge=0)
    mock_failure_rate: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_ranges(self) -> OrderSpineSettings:
        if self.mock_delay_min_ms > self.mock_delay_max_ms:
            raise ValueError(
                f"mock_delay_min_ms ({self.mock_delay_min_ms}) must not exceed "
                f"mock_delay_max_ms ({self.mock_delay_max_ms})"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"
