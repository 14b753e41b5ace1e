"""Backend-agnostic contract for isolated compute environments."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from enclave.core.errors import LifecycleError
from enclave.core.events import Handler, Observable, RuntimeEvent
from enclave.isolation.models import (
    BackendKind,
    ExecuteResult,
    FileInfo,
    IsolationProfile,
    IsolationStatus,
    ProfileUpdateResult,
)

OutputCallback = Callable[[str, str], None]
"""Receives (stream_type, text) where stream_type is "stdout" or "stderr"."""


def backend_stop_grace(stop_timeout: float) -> float:
    """Part of the session stop timeout a backend may spend on its own graceful stop.

    The rest is left for the forced stop that follows when the grace runs out.
    """
    return stop_timeout / 2


class IsolationRuntime(ABC):
    """Base class for isolation backends.

    Subclasses implement the ``_do_*`` hooks and the file/exec operations; this class
    owns the running flag, the observer list, and the lifecycle notifications.
    """

    kind: BackendKind

    def __init__(self, default_timeout: float = 30.0):
        """Initialize runtime.

        Args:
            default_timeout: Seconds allowed per execute() call when none is given
        """
        self.default_timeout = default_timeout
        self.session_id: str | None = None
        self.profile: IsolationProfile | None = None
        self._running = False
        self._stop_pending = False
        self._events = Observable(source=self.kind.value)
        self.logger = structlog.get_logger(self.__module__)

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register for lifecycle notifications."""
        return self._events.subscribe(handler)

    def is_running(self) -> bool:
        """In-memory check; never contacts the backend."""
        return self._running

    def _require_running(self) -> None:
        if not self._running:
            raise LifecycleError(f"{self.kind.value} runtime is not running")

    def _emit(self, event: RuntimeEvent, **data: Any) -> None:
        self._events.emit(event, session_id=self.session_id, **data)

    async def start(self, session_id: str, profile: IsolationProfile) -> None:
        """Start the environment for a session.

        Args:
            session_id: Session identifier
            profile: Isolation profile to apply

        Raises:
            LifecycleError: If this runtime is already running
        """
        if self._running:
            raise LifecycleError(f"{self.kind.value} runtime already running session {self.session_id}")

        self.session_id = session_id
        self.profile = profile
        self._stop_pending = False
        self._emit(RuntimeEvent.STARTING, profile=profile.name)
        self.logger.info("runtime_starting", session_id=session_id, profile=profile.name)

        try:
            await self._do_start(session_id, profile)
        except Exception as e:
            self.logger.error("runtime_start_failed", session_id=session_id, error=str(e))
            self._emit(RuntimeEvent.ERROR, error=str(e))
            raise

        self._running = True
        self._emit(RuntimeEvent.STARTED, profile=profile.name)
        self.logger.info("runtime_started", session_id=session_id)

    async def stop(self) -> None:
        """Stop the environment gracefully."""
        if not self._running:
            return

        self._emit(RuntimeEvent.STOPPING)
        self._stop_pending = True
        self.logger.info("runtime_stopping", session_id=self.session_id)
        try:
            await self._do_stop()
        except Exception as e:
            self.logger.error("runtime_stop_failed", session_id=self.session_id, error=str(e))
            self._emit(RuntimeEvent.ERROR, error=str(e))
            raise
        finally:
            self._running = False

        self._stop_pending = False
        self._emit(RuntimeEvent.STOPPED)
        self.logger.info("runtime_stopped", session_id=self.session_id)

    async def force_stop(self) -> None:
        """Tear the environment down without waiting for a graceful exit."""
        self.logger.warning("runtime_force_stopping", session_id=self.session_id)
        try:
            await self._do_force_stop()
        finally:
            # A graceful stop that failed or was cancelled still owes its STOPPED.
            owes_stopped = self._running or self._stop_pending
            self._running = False
            self._stop_pending = False
            if owes_stopped:
                self._emit(RuntimeEvent.STOPPED, forced=True)

    def _mark_stopped(self, reason: str) -> None:
        """Record that the backend went away on its own."""
        if self._running:
            self._running = False
            self.logger.warning("runtime_lost", session_id=self.session_id, reason=reason)
            self._emit(RuntimeEvent.STOPPED, reason=reason)

    @abstractmethod
    async def _do_start(self, session_id: str, profile: IsolationProfile) -> None:
        pass

    @abstractmethod
    async def _do_stop(self) -> None:
        pass

    @abstractmethod
    async def _do_force_stop(self) -> None:
        pass

    @abstractmethod
    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        """Run a shell command and collect its output.

        Args:
            command: Shell command line
            timeout: Seconds before CommandTimeoutError (defaults to default_timeout)
            cwd: Working directory inside the environment
            env: Extra environment variables

        Returns:
            ExecuteResult with stdout, stderr and exit code
        """
        pass

    @abstractmethod
    async def execute_stream(
        self,
        command: str,
        on_output: OutputCallback,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> int:
        """Run a command, streaming stdout and stderr to ``on_output``.

        Returns:
            Exit code
        """
        pass

    @abstractmethod
    async def list_files(self, path: str) -> list[FileInfo]:
        pass

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        pass

    @abstractmethod
    async def write_file(self, path: str, content: bytes | str) -> None:
        pass

    @abstractmethod
    async def copy_in(self, host_path: Path | str, env_path: str) -> None:
        pass

    @abstractmethod
    async def copy_out(self, env_path: str, host_path: Path | str) -> None:
        pass

    @abstractmethod
    async def get_status(self) -> IsolationStatus:
        pass

    async def update_profile(self, patch: dict[str, Any]) -> ProfileUpdateResult:
        """Apply a partial profile to the running environment.

        Fields the backend cannot change live are reported in ``requires_restart``.

        Args:
            patch: Partial profile (nested dicts allowed)

        Returns:
            ProfileUpdateResult describing what was applied
        """
        self._require_running()
        current = self.profile
        updated = current.merged(patch)
        changed = updated.changed_fields(current)
        if not changed:
            return ProfileUpdateResult(profile=current)

        result = await self._apply_profile(updated, changed)
        self.profile = updated
        self._emit(
            RuntimeEvent.PROFILE_UPDATED,
            applied=result.applied,
            requires_restart=result.requires_restart,
        )
        if result.requires_restart:
            self.logger.warning(
                "profile_fields_require_restart",
                session_id=self.session_id,
                fields=result.requires_restart,
            )
        return result

    @abstractmethod
    async def _apply_profile(self, profile: IsolationProfile, changed: list[str]) -> ProfileUpdateResult:
        pass

    @staticmethod
    def _to_bytes(content: bytes | str) -> bytes:
        return content.encode("utf-8") if isinstance(content, str) else content
