"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        return get_credential(env_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, _ = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./account_sync.db"

    # Plaid credentials
    PLAID_CLIENT_ID: str = ""
    PLAID_SECRET: str = ""
    PLAID_ENVIRONMENT: str = "sandbox"

    # Coinbase (OAuth bearer tokens are stored per connection)
    COINBASE_API_BASE_URL: str = "https://api.coinbase.com"
    COINBASE_REVOKE_URL: str = "https://login.coinbase.com/oauth2/revoke"

    # Every upstream call is bounded by this timeout
    UPSTREAM_TIMEOUT_SECONDS: float = 30.0

    # Balance cache TTLs per activity class
    BALANCE_TTL_HIGH_HOURS: float = 2
    BALANCE_TTL_MEDIUM_HOURS: float = 4
    BALANCE_TTL_LOW_HOURS: float = 24
    LIABILITY_CACHE_TTL_HOURS: float = 24
    AUTO_REFRESH_THRESHOLD_HOURS: float = 6

    # Manual refresh budget
    MANUAL_REFRESH_LIMIT: int = 3
    MANUAL_REFRESH_WINDOW_HOURS: float = 24

    # Fraction of refresh cycles that also sync transactions
    TRANSACTION_SYNC_PROBABILITY: float = 0.3

    # Transaction sync cache TTLs per activity class
    TRANSACTION_TTL_HIGH_HOURS: float = 2
    TRANSACTION_TTL_MEDIUM_HOURS: float = 4
    TRANSACTION_TTL_LOW_HOURS: float = 12
    AUTO_SYNC_THRESHOLD_HOURS: float = 4
    FULL_SYNC_THRESHOLD_DAYS: int = 7
    TRANSACTION_PAGE_SIZE: int = 500
    INVESTMENT_HISTORY_MONTHS: int = 24
    INVESTMENT_PAGE_SIZE: int = 500

    # Credential backups
    BACKUP_DIR: str = "./backups"
    BACKUP_HOUR: int = 2
    BACKUP_RETENTION_DAYS: int = 30

    # Background scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULED_REFRESH_INTERVAL_MINUTES: float = 60

    # Single-user deployments key rate limits on this id
    DEFAULT_USER_ID: str = "default"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    @field_validator("TRANSACTION_SYNC_PROBABILITY")
    @classmethod
    def validate_probability(cls, v: float) -> float:
        """Reject sampling probabilities outside ``[0, 1]``."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"TRANSACTION_SYNC_PROBABILITY must be within [0, 1], got {v!r}")
        return v

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str | None = None


settings = Settings()
