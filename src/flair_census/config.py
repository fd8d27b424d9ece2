"""Configuration via environment variables and .env files.

Settings are loaded with this priority: CLI args > env vars > .env file > defaults.
The storage_path prefix determines the backend: s3://, gs://, or local filesystem.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from flair_census import __version__

DEFAULT_TIMEOUT_SECONDS = 30


class StorageBackendType(StrEnum):
    LOCAL = "local"
    S3 = "s3"
    GCS = "gcs"


class Settings(BaseSettings):
    """All configuration for flair-census.

    Storage:
        storage_path: Root path for scan state and reports.
            - Local: ./data or /abs/path
            - S3: s3://bucket-name/prefix
            - GCS: gs://bucket-name/prefix

    Listing API:
        api_base: Base URL of the flair listing API.
        access_token: OAuth bearer token with flair read access.
        user_agent: User-Agent sent with every request.
        request_timeout_seconds: Total timeout for one page request (default 10).

    Scan engine:
        execution_timeout_seconds: Hard per-invocation limit of the host (default 30).
            Unparsable or non-positive values fall back to 30.
        timeout_fraction: Share of the limit a chunk may use (default 0.9).
        quick_scan_ms: Deadline for answering synchronously (default 500).
        page_size: Members requested per page (default 1000).
        page_delay_ms: Pause between pages (default 250).
        strict_generation: Reject checkpoint writes from stale generations
            (default True). False keeps last-write-wins.
        app_version: Deployed version; a change resets stored scans.
        log_level: Logging verbosity (default INFO).
    """

    model_config = SettingsConfigDict(
        env_prefix="FLAIR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    storage_path: str = "./data"
    api_base: str = "https://oauth.reddit.com"
    access_token: str | None = None
    user_agent: str = f"flair-census/{__version__}"
    request_timeout_seconds: float = 10.0
    execution_timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    timeout_fraction: float = 0.9
    quick_scan_ms: int = 500
    page_size: int = 1000
    page_delay_ms: int = 250
    strict_generation: bool = True
    app_version: str = __version__
    log_level: str = "INFO"

    @field_validator("storage_path")
    @classmethod
    def validate_storage_path(cls, v: str) -> str:
        v = v.rstrip("/")
        if not v:
            raise ValueError("storage_path cannot be empty")
        return v

    @field_validator("execution_timeout_seconds", mode="before")
    @classmethod
    def validate_timeout(cls, v: object) -> int:
        try:
            seconds = int(str(v).strip())
        except (TypeError, ValueError):
            return DEFAULT_TIMEOUT_SECONDS
        return seconds if seconds > 0 else DEFAULT_TIMEOUT_SECONDS

    @field_validator("timeout_fraction")
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("timeout_fraction must be in (0, 1]")
        return v

    @property
    def quick_scan_seconds(self) -> float:
        return self.quick_scan_ms / 1000

    @property
    def page_delay_seconds(self) -> float:
        return self.page_delay_ms / 1000

    def community_path(self, community: str) -> str:
        return f"{self.storage_path}/{community.lower()}"

    def key_path(self, community: str, key: str) -> str:
        return f"{self.community_path(community)}/{key}.json"

    def report_path(self, community: str) -> str:
        return f"{self.community_path(community)}/reports/flair-groups.parquet"
