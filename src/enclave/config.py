"""Configuration management for Enclave."""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Anthropic Configuration
    anthropic_api_key: str | None = Field(default=None, description="Anthropic API Key")
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929", description="Claude model")
    anthropic_max_tokens: int = Field(default=8192, description="Max tokens per request")
    max_tool_rounds: int = Field(
        default=5, description="Follow-up model calls allowed after tool use within one turn"
    )

    # Isolation Configuration
    isolation_backend: str = Field(default="container", description="Isolation backend: container or vm")
    default_profile: str = Field(default="balanced", description="Isolation profile used when none is given")
    workspace_dir: Path = Field(
        default=Path.home() / ".enclave" / "sessions",
        description="Host directory holding per-session data mounts",
    )
    skills_dir: Path = Field(
        default=Path.home() / ".enclave" / "skills",
        description="Host directory mounted read-only as /mnt/skills",
    )
    container_image: str = Field(default="workspace:latest", description="Container image tag")
    docker_socket: str = Field(default="/var/run/docker.sock", description="Container engine socket path")
    docker_build_context: Path | None = Field(
        default=None, description="Build context used when the container image is missing"
    )
    small_write_threshold_bytes: int = Field(
        default=48 * 1024, description="Writes at or below this size go through exec instead of an archive"
    )

    # Timeouts
    exec_timeout_seconds: float = Field(default=30.0, description="Default per-command timeout")
    stop_timeout_seconds: float = Field(
        default=10.0, description="Seconds to wait for a graceful stop before forcing it"
    )
    vm_command_timeout_seconds: float = Field(default=60.0, description="Per-command timeout for the VM helper")
    vm_startup_timeout_seconds: float = Field(default=10.0, description="Timeout for the VM helper handshake")

    # VM Configuration
    vm_helper_path: Path | None = Field(default=None, description="Path to the VM helper executable")

    # Memory Configuration
    data_dir: Path = Field(default=Path.home() / ".enclave" / "data", description="Persisted memory directory")
    autosave_interval_seconds: float = Field(default=60.0, description="Memory autosave interval")
    user_profile_path: Path | None = Field(default=None, description="Optional user profile seed (JSON)")

    # External tool servers
    tool_servers_path: Path | None = Field(
        default=None, description="JSON file listing external tool servers per worker role"
    )

    # Shutdown Configuration
    shutdown_timeout: int = Field(
        default=30, description="Maximum seconds to wait for in-flight requests during shutdown"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: json or console")

    @field_validator("isolation_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Normalize and check the backend name."""
        v = v.strip().lower()
        if v not in ("container", "vm"):
            raise ValueError(f"Unknown isolation backend: {v}")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Only json and console renderers exist."""
        v = v.strip().lower()
        if v not in ("json", "console"):
            raise ValueError(f"Unknown log format: {v}")
        return v


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
