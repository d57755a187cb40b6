"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the system keychain via ``keyring``.

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
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
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
    DATABASE_URL: str = "sqlite:///./banksync.db"

    # GoCardless Bank Account Data credentials
    GOCARDLESS_SECRET_ID: str = ""
    GOCARDLESS_SECRET_KEY: str = ""
    GOCARDLESS_BASE_URL: str = "https://bankaccountdata.gocardless.com/api/v2"
    GOCARDLESS_DEFAULT_COUNTRY: str = "IT"
    GOCARDLESS_ACCESS_VALID_FOR_DAYS: int = 90
    GOCARDLESS_MAX_HISTORICAL_DAYS: int = 90
    GOCARDLESS_SANDBOX: bool = False  # List the Sandbox Finance test bank

    # Authorization flow
    APP_ORIGIN: str = "http://localhost:5173"
    AUTHORIZATION_REDIRECT_URL: str = ""  # Empty: derived from the request URL
    AUTHORIZATION_POLL_INTERVAL_SECONDS: float = 1.0
    AUTHORIZATION_TIMEOUT_SECONDS: float = 900.0
    AUTHORIZATION_SESSION_TTL_SECONDS: float = 3600.0

    # Reconciliation and monitoring
    CONNECTION_WARNING_DAYS: int = 7
    DUPLICATE_DATE_TOLERANCE_DAYS: int = 1
    DEFAULT_IMPORT_DAYS: int = 7
    INSTITUTION_CACHE_TTL_SECONDS: int = 3600

    @field_validator("GOCARDLESS_DEFAULT_COUNTRY", mode="before")
    @classmethod
    def normalize_country(cls, v: str) -> str:
        """Country codes are ISO 3166 alpha-2, stored uppercase."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
