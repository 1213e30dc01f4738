# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_dataguard

"""Runtime settings, read from `DATAGUARD_`-prefixed environment variables or a `.env` file."""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ALLOWED_EXTENSIONS = [
    # images
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".svg",
    # documents
    ".pdf",
    ".doc",
    ".docx",
    ".xls",
    ".xlsx",
    ".txt",
    ".csv",
]


class Settings(BaseSettings):
    """
    Application settings for the DataGuard service.
    Uses environment variables with DATAGUARD_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="DATAGUARD_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Persistence
    database_path: str = "dataguard.db"
    audit_max_pending_writes: int = Field(default=10_000, gt=0)
    candidates_path: Optional[Path] = None

    # Duplicate detection
    scan_timeout_seconds: float = Field(default=30.0, gt=0)
    check_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    flag_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    blocking_strategy: Literal["none", "domain", "name_prefix", "domain_or_name_prefix"] = "none"

    # Rate limiting
    block_cache_refresh_seconds: float = 5.0
    rate_limit_max_keys: int = Field(default=100_000, gt=0)
    trust_forwarded_headers: bool = Field(
        default=True,
        description=(
            "Resolve the caller ip from X-Forwarded-For / X-Real-IP. Only safe behind a proxy that overwrites "
            "these headers; otherwise clients can rotate them to evade rate limits and blocks. Set to false "
            "when the service is reachable directly."
        ),
    )

    # Validation
    allowed_file_extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS))
    allowed_mime_types: Optional[List[str]] = None
    max_file_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    allow_local_urls: bool = False
    threat_input_max_chars: int = Field(default=500, gt=0)
    pattern_timeout_seconds: float = Field(default=0.1, gt=0)

    @field_validator("block_cache_refresh_seconds")
    @classmethod
    def check_refresh_window(cls, v: float) -> float:
        # A freshly blocked ip must be denied within this window
        if not 0 < v <= 5:
            raise ValueError("block_cache_refresh_seconds must be within (0, 5]")
        return v

    @field_validator("allowed_file_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]
