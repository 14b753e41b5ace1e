"""Unit tests for configuration management."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

import enclave.config as config_module
from enclave.config import Settings, get_settings


class TestSettings:
    """Tests for Settings model."""

    def test_settings_from_env(self) -> None:
        """Test loading settings from environment variables."""
        with patch.dict(
            os.environ,
            {
                "ANTHROPIC_API_KEY": "test_anthropic_key",
                "ANTHROPIC_MODEL": "claude-opus-4-5-20251101",
                "ISOLATION_BACKEND": "VM",
                "DEFAULT_PROFILE": "isolated",
                "EXEC_TIMEOUT_SECONDS": "12.5",
                "VM_HELPER_PATH": "/opt/helper/bin/vm-helper",
                "LOG_FORMAT": "json",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

            assert settings.anthropic_api_key == "test_anthropic_key"
            assert settings.anthropic_model == "claude-opus-4-5-20251101"
            assert settings.isolation_backend == "vm"
            assert settings.default_profile == "isolated"
            assert settings.exec_timeout_seconds == 12.5
            assert settings.vm_helper_path == Path("/opt/helper/bin/vm-helper")
            assert settings.log_format == "json"

    def test_settings_defaults(self) -> None:
        """Test default settings values."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.anthropic_api_key is None
            assert settings.anthropic_max_tokens == 8192
            assert settings.max_tool_rounds == 5
            assert settings.isolation_backend == "container"
            assert settings.default_profile == "balanced"
            assert settings.exec_timeout_seconds == 30.0
            assert settings.stop_timeout_seconds == 10.0
            assert settings.vm_command_timeout_seconds == 60.0
            assert settings.vm_startup_timeout_seconds == 10.0
            assert settings.small_write_threshold_bytes == 48 * 1024
            assert settings.autosave_interval_seconds == 60.0
            assert settings.vm_helper_path is None
            assert settings.log_level == "INFO"

    def test_unknown_backend_rejected(self) -> None:
        """Test that an unknown isolation backend fails validation."""
        with patch.dict(os.environ, {"ISOLATION_BACKEND": "chroot"}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_unknown_log_format_rejected(self) -> None:
        """Test that only json and console log formats are accepted."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_format="xml")

    def test_get_settings_singleton(self) -> None:
        """Test that get_settings returns the same instance."""
        config_module._settings = None
        try:
            with patch.dict(os.environ, {}, clear=True):
                first = get_settings()
                second = get_settings()
            assert first is second
        finally:
            config_module._settings = None
