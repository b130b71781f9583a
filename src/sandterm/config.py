"""
Application configuration.

Values come from ``SANDTERM_*`` environment variables (optionally loaded from
a ``.env`` file in the working directory) and fall back to defaults.

Usage:
    from sandterm.config import CONFIG

    CONFIG.port
    CONFIG.reload()
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from sandterm.sandbox.profiles import PROFILES

PROJECT_DIR = Path.cwd()

ENV_PREFIX = "SANDTERM_"


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    """Runtime settings for the server, registry, reaper and sandboxes."""

    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=0, le=65535)

    # Sandbox
    image: str = "persistent_centos"
    shell: str = "/bin/bash"
    profile: str = "minimal"
    memory_mb: int = Field(default=512, gt=0)
    cpu_shares: int = Field(default=256, gt=0)
    pids_limit: int = Field(default=100, gt=0)
    cap_add: Optional[list[str]] = None
    max_sessions: int = Field(default=0, ge=0)

    # Sessions
    idle_timeout_minutes: int = Field(default=30, gt=0)
    sweep_interval_seconds: float = Field(default=60, gt=0)
    default_cols: int = Field(default=80, gt=0)
    default_rows: int = Field(default=24, gt=0)

    # Streaming
    max_frame_bytes: int = Field(default=1024, gt=0)

    # HTTP
    allowed_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("profile")
    @classmethod
    def _known_profile(cls, value: str) -> str:
        if value not in PROFILES:
            raise ValueError(
                f"Unknown security profile '{value}'. "
                f"Available: {', '.join(sorted(PROFILES))}"
            )
        return value

    @property
    def expires_in(self) -> str:
        """Human-readable idle expiry for control responses."""
        return f"{self.idle_timeout_minutes} minutes"

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """Build settings from the environment (and an optional .env file)."""
        load_dotenv(env_file or PROJECT_DIR / ".env")

        values: dict = {}
        for name, field in cls.model_fields.items():
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is None or raw == "":
                continue
            if name in ("cap_add", "allowed_origins"):
                values[name] = _split_list(raw)
            else:
                values[name] = raw
        return cls(**values)

    def reload(self) -> None:
        """Re-read the environment and update this instance in place."""
        fresh = type(self).from_env()
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))


CONFIG = Settings.from_env()
