"""Configuration settings for sdflasher.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "sdflasher" / "db.sqlite"
    return f"sqlite:///{db_path}"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SDFLASH_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SDFLASH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for flash history",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Copy loop
    chunk_size: int = Field(
        default=4 * MIB,
        ge=4096,
        description="Bytes per read/write cycle",
    )
    progress_interval: float = Field(
        default=0.5,
        gt=0,
        description="Minimum seconds between progress reports",
    )

    # Device discovery
    min_device_size: int = Field(
        default=64 * MIB,
        ge=0,
        description="Devices smaller than this are never listed",
    )
    sys_block_dir: str = Field(
        default="/sys/block",
        description="Kernel block-device namespace",
    )
    dev_dir: str = Field(
        default="/dev",
        description="Directory holding device nodes (e.g. /dev/block on Android)",
    )
    mounts_path: str = Field(
        default="/proc/mounts",
        description="Live mount table",
    )

    # Flash behaviour
    strict_unmount: bool = Field(
        default=False,
        description="Abort the flash when a mount point resists every unmount attempt",
    )
    verify_after_flash: bool = Field(
        default=True,
        description="Run the verification stage after writing",
    )

    # Privileged execution
    use_sudo: bool = Field(
        default=False,
        description="Run privileged commands through 'sudo -n'",
    )
    command_timeout: int = Field(
        default=30,
        ge=1,
        description="Timeout in seconds for a single privileged command",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["MIB", "Settings", "get_settings", "print_settings_json"]
