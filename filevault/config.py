"""Configuration management using pydantic-settings"""

import os
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_ALLOWED_MIMETYPES = (
    # Images
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    # Documents
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    # Text
    "text/plain",
    "text/csv",
    "text/html",
    "text/css",
    "text/javascript",
    "application/json",
    "application/xml",
    # Archives
    "application/zip",
    "application/x-rar-compressed",
    "application/x-7z-compressed",
    "application/gzip",
    "application/octet-stream",
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server Configuration
    port: int = 3030
    host: str = "0.0.0.0"

    # Application Configuration
    environment: str = Field(default="development", validation_alias="ENVIRONMENT")
    log_level: str = Field(default="info", description="Log level: debug, info, warning, error")

    # Database Configuration
    database_url: str = "sqlite:///./data/filevault.db"

    # Storage Configuration
    storage_path: str = Field(default="./uploads", description="Root directory holding one folder per upload")
    archive_path: str = Field(default="./data/archives", description="Directory where ZIP archives are written")
    public_base_url: str = Field(default="", description="Prefix for materialized file URLs (e.g. https://host/api/v1)")

    # Upload Validation
    max_file_size: int = Field(default=10 * 1024 * 1024, ge=1, description="Largest accepted upload in bytes")
    allowed_mimetypes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_MIMETYPES),
        description="Accepted content types, as a JSON list (empty = accept any)",
    )

    # Compression Configuration
    enable_file_compression: bool = True
    compression_quality: int = Field(default=85, ge=0, le=100)
    compression_threshold_size: int = Field(default=300000, description="Minimum size in bytes for non-image compression")
    compress_image_types: bool = True
    compress_pdf_types: bool = Field(default=False, description="Reserved, PDFs are never compressed")
    compress_text_types: bool = True
    compression_max_width: int = 1920
    compression_max_height: int = 1080
    compression_max_concurrent: int = Field(
        default=0,
        ge=0,
        description="Maximum concurrent background compressions (0 = unbounded)",
    )
    shutdown_drain_timeout: float = Field(default=10.0, description="Seconds to wait for in-flight compressions on shutdown")

    # Cleanup Configuration
    cleanup_enabled: bool = True
    cleanup_interval_minutes: int = Field(default=5, ge=1)
    expired_cleanup_enabled: bool = False
    expired_cleanup_hour: int = Field(default=3, ge=0, le=23)

    @model_validator(mode="before")
    @classmethod
    def map_node_env(cls, data: dict) -> dict:
        """Map NODE_ENV to ENVIRONMENT if ENVIRONMENT is not set"""
        if isinstance(data, dict):
            if "NODE_ENV" in data and "ENVIRONMENT" not in data:
                data["ENVIRONMENT"] = data["NODE_ENV"]
        return data

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        """Accept any casing for the log level"""
        if v is None or v == "":
            return "info"
        return str(v).strip().lower()

    @field_validator("public_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Store the URL prefix without a trailing slash"""
        if v is None:
            return ""
        return str(v).rstrip("/")

    @model_validator(mode="after")
    def set_environment_defaults(self) -> "Settings":
        """Set environment-specific defaults for log level"""
        if self.environment == "production" and not os.getenv("LOG_LEVEL"):
            self.log_level = "error"
        return self

    @property
    def storage_root(self) -> Path:
        """Storage root as a resolved path"""
        return Path(self.storage_path).resolve()

    @property
    def archive_root(self) -> Path:
        """Archive directory as a resolved path"""
        return Path(self.archive_path).resolve()

    def database_file(self) -> Optional[Path]:
        """Return the SQLite database file path, if the URL points at one"""
        url = self.database_url
        if url.startswith("sqlite:///") and ":memory:" not in url:
            return Path(url.replace("sqlite:///", "", 1))
        return None


# Global settings instance
settings = Settings()
