"""Tests for the command line interface."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import anthropic
import httpx
import pytest
from click.testing import CliRunner
from rich.console import Console

from enclave.cli import main
from enclave.core.errors import BackendError, LifecycleError
from enclave.core.models import WorkerRole
from enclave.isolation.models import BackendKind, ExecuteResult, get_profile
from enclave.isolation.transfer import TransferResult
from enclave.memory.models import Message, TextContent
from enclave.utils.clock import utcnow


@pytest.fixture(autouse=True)
def wide_console():
    """Render tables without truncation."""
    with patch("enclave.cli.console", Console(width=200)):
        yield


@pytest.fixture
def mock_settings(settings):
    with patch("enclave.cli.get_settings", return_value=settings):
        yield settings


@pytest.fixture
def mock_controller():
    with patch("enclave.cli.SessionController") as MockController:
        controller = MockController.return_value
        controller.start = AsyncMock(
            return_value=SimpleNamespace(id="session-1", profile=get_profile("balanced"), backend=BackendKind.CONTAINER)
        )
        controller.runtime.execute = AsyncMock(return_value=ExecuteResult(stdout="Python 3.12.1\n"))
        controller.stop = AsyncMock(return_value=[])
        yield controller


@pytest.fixture
def mock_orchestrator():
    with patch("enclave.cli.Orchestrator") as MockOrchestrator:
        orchestrator = MockOrchestrator.return_value
        orchestrator.start = AsyncMock()
        orchestrator.shutdown = AsyncMock()
        orchestrator.send_message = AsyncMock(
            return_value=Message(role="assistant", content=[TextContent(text="Hi there")])
        )
        orchestrator.active_worker = WorkerRole.COMPANION
        yield orchestrator


class TestProfilesCommand:
    """Test the profiles listing."""

    def test_lists_profiles(self, mock_settings):
        """Test that every canonical profile is shown."""
        result = CliRunner().invoke(main, ["profiles"])

        assert result.exit_code == 0
        for name in ("open", "balanced", "restricted", "isolated"):
            assert name in result.output


class TestRunCommand:
    """Test one-shot command execution."""

    def test_run(self, mock_settings, mock_controller):
        """Test that output is printed and the session is stopped."""
        result = CliRunner().invoke(main, ["run", "python3 --version", "--profile", "balanced"])

        assert result.exit_code == 0
        assert "Session session-1 (balanced, container)" in result.output
        assert "Python 3.12.1" in result.output
        mock_controller.start.assert_awaited_once_with(profile="balanced", backend=None)
        mock_controller.runtime.execute.assert_awaited_once_with("python3 --version", timeout=None)
        mock_controller.stop.assert_awaited_once_with(save_files_to=None)

    def test_exit_code_propagates(self, mock_settings, mock_controller):
        """Test that the command's exit code becomes the CLI's."""
        mock_controller.runtime.execute.return_value = ExecuteResult(stderr="boom\n", exit_code=3)

        result = CliRunner().invoke(main, ["run", "false"])

        assert result.exit_code == 3
        assert "boom" in result.output

    def test_exported_files_reported(self, mock_settings, mock_controller, tmp_path):
        """Test that exported outputs are listed."""
        mock_controller.stop.return_value = [
            TransferResult(source="/mnt/outputs/a.csv", destination=str(tmp_path / "a.csv"), success=True),
            TransferResult(source="/mnt/outputs/b.csv", destination=str(tmp_path / "b.csv"), success=False, error="gone"),
        ]

        result = CliRunner().invoke(main, ["run", "ls", "--save-to", str(tmp_path)])

        assert "/mnt/outputs/a.csv ->" in result.output
        assert "/mnt/outputs/b.csv -> gone" in result.output
        mock_controller.stop.assert_awaited_once_with(save_files_to=tmp_path)

    def test_start_failure(self, mock_settings, mock_controller):
        """Test that a failed start exits with an error message."""
        mock_controller.start.side_effect = BackendError("image not found: workspace:latest")

        result = CliRunner().invoke(main, ["run", "ls"])

        assert result.exit_code == 1
        assert "Error: image not found" in result.output
        mock_controller.runtime.execute.assert_not_called()


class TestChatCommand:
    """Test the interactive chat loop."""

    def test_chat_without_session(self, mock_settings, mock_orchestrator, mock_controller):
        """Test one exchange and a clean exit."""
        result = CliRunner().invoke(main, ["chat", "--no-session"], input="hello\n\nexit\n")

        assert result.exit_code == 0
        assert "companion> Hi there" in result.output
        mock_orchestrator.send_message.assert_awaited_once_with("hello")
        mock_orchestrator.shutdown.assert_awaited_once()
        mock_controller.start.assert_not_called()

    def test_chat_with_session(self, mock_settings, mock_orchestrator, mock_controller):
        """Test that the session is attached and stopped on exit."""
        result = CliRunner().invoke(main, ["chat", "--backend", "vm"], input="quit\n")

        assert result.exit_code == 0
        mock_controller.start.assert_awaited_once_with(profile=None, backend="vm")
        mock_orchestrator.set_runtime.assert_called_once()
        mock_controller.stop.assert_awaited_once_with(save_files_to=None)
        mock_orchestrator.shutdown.assert_awaited_once()

    def test_chat_continues_after_turn_error(self, mock_settings, mock_orchestrator, mock_controller):
        """Test that a failed turn is reported and the loop keeps reading input."""
        mock_orchestrator.send_message.side_effect = [
            LifecycleError("No isolation session is running"),
            anthropic.APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")),
            Message(role="assistant", content=[TextContent(text="Back again")]),
        ]

        result = CliRunner().invoke(main, ["chat", "--no-session"], input="run ls\nhello\nstill there?\nexit\n")

        assert result.exit_code == 0
        assert "Error: No isolation session is running" in result.output
        assert "Error: Connection error." in result.output
        assert "companion> Back again" in result.output
        assert mock_orchestrator.send_message.await_count == 3
        mock_orchestrator.shutdown.assert_awaited_once()

    def test_chat_session_start_failure(self, mock_settings, mock_orchestrator, mock_controller):
        """Test that the orchestrator is shut down when the session cannot start."""
        mock_controller.start.side_effect = BackendError("docker unavailable")

        result = CliRunner().invoke(main, ["chat"], input="exit\n")

        assert result.exit_code == 1
        assert "Error: docker unavailable" in result.output
        mock_orchestrator.shutdown.assert_awaited_once()


class TestDeadlinesCommand:
    """Test the deadline listing."""

    def test_no_deadlines(self, mock_settings):
        """Test the empty message."""
        result = CliRunner().invoke(main, ["deadlines"])

        assert result.exit_code == 0
        assert "No deadlines found." in result.output

    def test_lists_active_deadlines(self, mock_settings, memory_store):
        """Test that saved deadlines are listed and done ones hidden by default."""
        memory_store.add_deadline("Thesis", utcnow() + timedelta(days=20))
        done = memory_store.add_deadline("Poster", utcnow() + timedelta(days=2))
        memory_store.update_deadline(done.id, status="done")
        memory_store.save()

        active = CliRunner().invoke(main, ["deadlines"])
        assert "Thesis" in active.output
        assert "Poster" not in active.output

        everything = CliRunner().invoke(main, ["deadlines", "--all"])
        assert "Poster" in everything.output


def test_help_lists_commands(mock_settings):
    result = CliRunner().invoke(main, ["--help"])
    assert result.exit_code == 0
    for command in ("chat", "deadlines", "profiles", "run"):
        assert command in result.output
