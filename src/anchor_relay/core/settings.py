"""Application settings and configuration.

This module defines all configuration options for the anchor relay service.
Settings are loaded from environment variables with sensible defaults.
"""

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Anchor Relay", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")

    # Security and authentication
    secret_key: str = Field(default="change-me", alias="SECRET_KEY")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Database configuration
    database_url: str = Field(default="sqlite:///./anchor_relay.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # JWT authentication settings
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(
        default=60 * 24,
        alias="ACCESS_TOKEN_EXPIRE_MINUTES",
    )

    # Chains
    source_chain: str = Field(default="base", alias="SOURCE_CHAIN")
    required_confirmations_polygon: int = Field(
        default=12, ge=1, alias="REQUIRED_CONFIRMATIONS_POLYGON"
    )
    required_confirmations_arbitrum: int = Field(
        default=20, ge=1, alias="REQUIRED_CONFIRMATIONS_ARBITRUM"
    )
    required_confirmations_optimism: int = Field(
        default=10, ge=1, alias="REQUIRED_CONFIRMATIONS_OPTIMISM"
    )
    chain_rpc_polygon: str | None = Field(default=None, alias="CHAIN_RPC_POLYGON")
    chain_rpc_arbitrum: str | None = Field(default=None, alias="CHAIN_RPC_ARBITRUM")
    chain_rpc_optimism: str | None = Field(default=None, alias="CHAIN_RPC_OPTIMISM")
    relay_sender_address: str | None = Field(default=None, alias="RELAY_SENDER_ADDRESS")
    relay_contract_address: str | None = Field(default=None, alias="RELAY_CONTRACT_ADDRESS")
    chain_http_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAIN_HTTP_TIMEOUT_SECONDS",
    )

    # Chains without an RPC endpoint fall back to the in-process simulator
    chain_simulation_enabled: bool = Field(default=True, alias="CHAIN_SIMULATION_ENABLED")
    simulated_failing_chains: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        alias="SIMULATED_FAILING_CHAINS",
    )
    simulated_blocks_per_poll: int = Field(default=3, ge=1, alias="SIMULATED_BLOCKS_PER_POLL")

    # Relay retry policy
    relay_max_attempts: int = Field(default=3, ge=1, alias="RELAY_MAX_ATTEMPTS")
    relay_backoff_base_seconds: float = Field(
        default=2.0, ge=0.0, alias="RELAY_BACKOFF_BASE_SECONDS"
    )
    relay_backoff_factor: float = Field(default=2.0, ge=1.0, alias="RELAY_BACKOFF_FACTOR")
    relay_backoff_max_seconds: float = Field(
        default=60.0, ge=0.0, alias="RELAY_BACKOFF_MAX_SECONDS"
    )

    # Confirmation polling bounds
    monitor_poll_interval_seconds: float = Field(
        default=5.0, ge=0.0, alias="MONITOR_POLL_INTERVAL_SECONDS"
    )
    monitor_max_polls: int = Field(default=360, ge=1, alias="MONITOR_MAX_POLLS")
    monitor_max_duration_seconds: float = Field(
        default=1800.0, gt=0.0, alias="MONITOR_MAX_DURATION_SECONDS"
    )
    relay_recover_on_startup: bool = Field(default=True, alias="RELAY_RECOVER_ON_STARTUP")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(
        default=["*"],
        alias="CORS_ORIGINS",
    )
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(
        default=["*"],
        alias="CORS_ALLOW_HEADERS",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("simulated_failing_chains", mode="before")
    @classmethod
    def _split_chain_list(cls, value: object) -> object:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def required_confirmations(self) -> dict[str, int]:
        """Return the confirmation depth required on each target chain."""
        return {
            "polygon": self.required_confirmations_polygon,
            "arbitrum": self.required_confirmations_arbitrum,
            "optimism": self.required_confirmations_optimism,
        }

    @property
    def chain_rpc_urls(self) -> dict[str, str | None]:
        """Return the configured JSON-RPC endpoint for each target chain."""
        return {
            "polygon": self.chain_rpc_polygon,
            "arbitrum": self.chain_rpc_arbitrum,
            "optimism": self.chain_rpc_optimism,
        }


settings = Settings()
