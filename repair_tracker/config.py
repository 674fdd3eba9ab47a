"""Centralized configuration loading for the repair order tracker."""

from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

from pydantic import Field, ValidationError, validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationError


class Settings(BaseSettings):
    """Environment-driven settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    ms_tenant_id: str = Field(
        ...,
        alias="MS_TENANT_ID",
        description="Azure AD tenant that owns the app registration.",
    )
    ms_client_id: str = Field(
        ...,
        alias="MS_CLIENT_ID",
        description="Application (client) ID used to call Microsoft Graph.",
    )
    ms_client_secret: str = Field(
        ...,
        alias="MS_CLIENT_SECRET",
        description="Client secret for the app registration.",
    )
    sharepoint_site_url: str = Field(
        ...,
        alias="SHAREPOINT_SITE_URL",
        description="Site hosting the workbooks, e.g. https://contoso.sharepoint.com/sites/Repairs.",
    )
    excel_file_name: str = Field(
        ...,
        alias="EXCEL_FILE_NAME",
        description="File name of the repair order workbook.",
    )
    excel_table_name: str = Field(
        ...,
        alias="EXCEL_TABLE_NAME",
        description="Table holding active repair orders.",
    )
    shop_file_name: str = Field(
        "ShopDirectory.xlsx",
        alias="SHOP_FILE_NAME",
        description="File name of the shop directory workbook.",
    )
    shop_table_name: str = Field(
        "ShopTable",
        alias="SHOP_TABLE_NAME",
        description="Table holding shop rows.",
    )
    acting_user: str = Field(
        "Repair Tracker",
        alias="ACTING_USER",
        description="Name recorded in status history entries.",
    )
    calendar_mailbox: Optional[str] = Field(
        None,
        alias="CALENDAR_MAILBOX",
        description="Mailbox that receives reminders; falls back to /me when unset.",
    )
    calendar_timezone: str = Field(
        "UTC",
        alias="CALENDAR_TIMEZONE",
        description="Time zone name sent with calendar events.",
    )
    max_retries: int = Field(3, alias="GRAPH_MAX_RETRIES", ge=1)
    retry_delay_seconds: float = Field(1.0, alias="GRAPH_RETRY_DELAY_SECONDS", ge=0)
    session_timeout_seconds: float = Field(
        30 * 60,
        alias="WORKBOOK_SESSION_TIMEOUT_SECONDS",
        gt=0,
    )
    persist_changes: bool = Field(True, alias="WORKBOOK_PERSIST_CHANGES")
    request_timeout_seconds: float = Field(30.0, alias="GRAPH_REQUEST_TIMEOUT_SECONDS", gt=0)
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    @validator("sharepoint_site_url")
    def check_site_url(cls, value: str) -> str:  # type: ignore[override]
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.hostname:
            raise ValueError(f"SHAREPOINT_SITE_URL must be an absolute URL, got {value!r}")
        return value.rstrip("/")

    @validator(
        "ms_tenant_id",
        "ms_client_id",
        "ms_client_secret",
        "excel_file_name",
        "excel_table_name",
    )
    def not_blank(cls, value: str) -> str:  # type: ignore[override]
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


def load_settings(**overrides) -> Settings:
    """Build settings, turning validation failures into a ConfigurationError."""

    try:
        return Settings(**overrides)  # type: ignore[call-arg]
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            name = ".".join(str(part) for part in error.get("loc", ()))
            problems.append(f"{name}: {error.get('msg')}")
        raise ConfigurationError(
            "Invalid or missing configuration: " + "; ".join(problems)
        ) from exc


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return load_settings()
