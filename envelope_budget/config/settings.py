"""
Configuration Management for Envelope Budget

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here, one settings
class per concern:
- SyncSettings          SYNC_*           reconciliation timing and id prefix
- ConnectivitySettings  CONNECTIVITY_*   the online/offline probe
- GoogleSheetsSettings  GOOGLE_SHEETS_*  the remote backend (only needed when selected)
- AppSettings           (no prefix)      backend choice, namespace, labels

The engine never reads the environment itself; it receives these objects.
"""

from functools import cached_property, lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


STORAGE_BACKENDS = ("memory", "google_sheets")


class SyncSettings(BaseSettings):
    """Optimistic-update reconciliation settings."""

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    confirm_timeout_seconds: float = Field(
        default=3.0,
        gt=0.0,
        le=60.0,
        description="How long a remote write may take before it is treated as offline"
    )
    temp_id_prefix: str = Field(
        default="temp-",
        min_length=1,
        description="Prefix for locally generated identifiers awaiting confirmation"
    )
    compensate_on_rollback: bool = Field(
        default=True,
        description="Undo remote writes of a command that was partially confirmed"
    )


class ConnectivitySettings(BaseSettings):
    """Connectivity probe configuration."""

    model_config = SettingsConfigDict(env_prefix="CONNECTIVITY_", extra="ignore")

    probe_url: str = Field(
        default="https://www.google.com/favicon.ico",
        description="Small resource fetched to verify actual connectivity"
    )
    probe_timeout_seconds: float = Field(
        default=3.0,
        gt=0.0,
        le=30.0,
        description="Probe timeout; a timeout counts as offline"
    )


class GoogleSheetsSettings(BaseSettings):
    """Remote document store backed by one spreadsheet."""

    model_config = SettingsConfigDict(env_prefix="GOOGLE_SHEETS_", extra="ignore")

    credentials_path: str = Field(
        ...,
        description="Service account credentials JSON"
    )
    spreadsheet_id: str = Field(..., min_length=1)

    # Worksheets are named "<prefix><namespace>.<collection>"
    worksheet_prefix: str = ""
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Worksheet receiving audit events"
    )

    @property
    def credentials_available(self) -> bool:
        return Path(self.credentials_path).is_file()


class AppSettings(BaseSettings):
    """Backend selection and the labels the engine writes on generated records."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    storage_backend: str = Field(
        default="memory",
        pattern="^(memory|google_sheets)$",
        description="Persistence collaborator to use"
    )
    user_namespace: str = Field(
        default="default",
        min_length=1,
        description="Opaque per-user namespace all documents are stored under"
    )

    funding_description: str = Field(
        default="Budgeted",
        min_length=1,
        description="Description of the Income transaction that funds an allocation"
    )
    contribution_description: str = Field(
        default="Piggybank Contribution",
        min_length=1,
        description="Description of automatic piggybank contributions"
    )

    # Amounts above this are accepted with a warning
    max_amount: Optional[float] = Field(default=10_000_000.0, gt=0)


class Settings(BaseSettings):
    """
    Root settings container.

    Each concern is read from the environment the first time it is used,
    so an unused backend never has to be configured.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @cached_property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @cached_property
    def connectivity(self) -> ConnectivitySettings:
        return ConnectivitySettings()

    @cached_property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @cached_property
    def app(self) -> AppSettings:
        return AppSettings()

    def required_sections(self) -> list[str]:
        """Sections the selected backend needs."""
        sections = ["app", "sync", "connectivity"]
        if self.app.storage_backend == "google_sheets":
            sections.append("google_sheets")
        return sections


@lru_cache()
def get_settings() -> Settings:
    """
    Process-wide settings, read once.

    Call get_settings.cache_clear() to reload after changing the environment.
    """
    return Settings()


def validate_all_settings(settings: Optional[Settings] = None) -> dict[str, bool]:
    """
    Check every section the selected backend needs.

    Returns {section: is_valid}, plus "<section>_error" entries describing
    what is wrong. Intended for startup checks.
    """
    settings = settings or get_settings()
    results: dict[str, bool] = {}

    try:
        sections = settings.required_sections()
    except ValueError as e:
        return {"app": False, "app_error": str(e)}

    for section in sections:
        try:
            loaded = getattr(settings, section)
        except ValueError as e:
            results[section] = False
            results[f"{section}_error"] = str(e)
            continue
        results[section] = True
        if isinstance(loaded, GoogleSheetsSettings) and not loaded.credentials_available:
            results[section] = False
            results[f"{section}_error"] = f"credentials file not found: {loaded.credentials_path}"

    return results
