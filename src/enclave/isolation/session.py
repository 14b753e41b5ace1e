"""Session lifecycle: one profile, one runtime, one id.

Only one session may be live in a process at a time. Starting a second one fails
immediately instead of waiting for the first to end.
"""

import asyncio
import uuid
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from enclave.config import Settings, get_settings
from enclave.core.errors import EnclaveError, LifecycleError
from enclave.core.events import Notification, RuntimeEvent
from enclave.isolation.base import IsolationRuntime
from enclave.isolation.factory import create_runtime, parse_backend_kind
from enclave.isolation.models import BackendKind, IsolationProfile, SessionStatus, get_profile
from enclave.isolation.transfer import TransferResult, export_outputs
from enclave.utils.clock import utcnow

logger = structlog.get_logger(__name__)

_ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.STARTING: {SessionStatus.RUNNING},
    SessionStatus.RUNNING: {SessionStatus.STOPPING},
    SessionStatus.STOPPING: {SessionStatus.STOPPED},
    SessionStatus.STOPPED: set(),
    SessionStatus.ERROR: set(),
}

# The controller currently owning the process-wide live session, if any.
_live_controller: "SessionController | None" = None


class Session(BaseModel):
    """Snapshot of a session."""

    id: str = Field(..., description="Opaque session identifier")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    profile: IsolationProfile = Field(..., description="Profile the session was started with")
    backend: BackendKind = Field(..., description="Backend realizing the session")
    status: SessionStatus = Field(SessionStatus.STARTING, description="Lifecycle status")
    error: str | None = Field(None, description="Error that moved the session to error")


def live_session() -> Session | None:
    """Return the live session of this process, if any."""
    if _live_controller is None:
        return None
    return _live_controller.session


class SessionController:
    """Binds one isolation profile to one runtime under one session id."""

    def __init__(
        self,
        settings: Settings | None = None,
        runtime_factory: Callable[[BackendKind, Settings], IsolationRuntime] = create_runtime,
    ):
        """Initialize controller.

        Args:
            settings: Settings (uses global if None)
            runtime_factory: Builds the runtime for a backend kind
        """
        self.settings = settings or get_settings()
        self._runtime_factory = runtime_factory
        self.session: Session | None = None
        self.runtime: IsolationRuntime | None = None
        self._unsubscribe: Callable[[], None] | None = None

    def _transition(self, status: SessionStatus, error: str | None = None) -> None:
        current = self.session.status
        if status != SessionStatus.ERROR and status not in _ALLOWED_TRANSITIONS[current]:
            raise LifecycleError(f"Illegal session transition {current.value} -> {status.value}")
        self.session.status = status
        if error:
            self.session.error = error
        logger.info("session_status_changed", session_id=self.session.id, status=status.value)

    def _claim(self) -> None:
        global _live_controller
        if _live_controller is not None:
            active = _live_controller.session
            raise LifecycleError(f"Session {active.id if active else '?'} is already live in this process")
        _live_controller = self

    def _release(self) -> None:
        global _live_controller
        if _live_controller is self:
            _live_controller = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def start(
        self,
        profile: str | IsolationProfile | None = None,
        backend: str | BackendKind | None = None,
    ) -> Session:
        """Start a new session.

        Args:
            profile: Profile or tier name (defaults to settings.default_profile)
            backend: Backend kind (defaults to settings.isolation_backend)

        Returns:
            The running Session

        Raises:
            LifecycleError: If a session is already live in this process
        """
        self._claim()
        try:
            if not isinstance(profile, IsolationProfile):
                profile = get_profile(profile or self.settings.default_profile)
            kind = parse_backend_kind(backend or self.settings.isolation_backend)
            runtime = self._runtime_factory(kind, self.settings)
        except EnclaveError:
            self._release()
            raise

        self.runtime = runtime
        self.session = Session(id=uuid.uuid4().hex, profile=profile, backend=kind)
        self._unsubscribe = runtime.subscribe(self._on_runtime_event)
        logger.info("session_starting", session_id=self.session.id, profile=profile.name, backend=kind.value)

        try:
            await runtime.start(self.session.id, profile)
        except Exception as e:
            self._transition(SessionStatus.ERROR, error=str(e))
            self._release()
            raise

        self._transition(SessionStatus.RUNNING)
        return self.session

    def _on_runtime_event(self, notification: Notification) -> None:
        # A backend that dies on its own still walks the linear lifecycle.
        if notification.event != RuntimeEvent.STOPPED or self.session is None:
            return
        if self.session.status == SessionStatus.RUNNING:
            logger.warning("session_runtime_lost", session_id=self.session.id, **notification.data)
            self._transition(SessionStatus.STOPPING)
            self._transition(SessionStatus.STOPPED)
            self._release()

    async def stop(self, save_files_to: Path | str | None = None) -> list[TransferResult]:
        """Stop the session, optionally exporting output files first.

        The runtime gets ``stop_timeout_seconds`` to stop; after that, or if the graceful
        stop fails, it is force-stopped.

        Args:
            save_files_to: Host directory for files under the outputs directory

        Returns:
            Per-file export results (empty when nothing was exported)
        """
        if self.session is None:
            raise LifecycleError("No session has been started")
        if self.session.status in (SessionStatus.STOPPED, SessionStatus.ERROR):
            return []
        if self.session.status != SessionStatus.RUNNING:
            raise LifecycleError(f"Cannot stop a session that is {self.session.status.value}")

        self._transition(SessionStatus.STOPPING)
        results: list[TransferResult] = []
        runtime = self.runtime

        try:
            if save_files_to is not None and runtime.is_running():
                results = await export_outputs(runtime, save_files_to)

            try:
                await asyncio.wait_for(runtime.stop(), self.settings.stop_timeout_seconds)
            except TimeoutError:
                logger.warning("session_stop_timeout", session_id=self.session.id)
                await runtime.force_stop()
            except Exception as e:
                logger.warning("session_stop_failed", session_id=self.session.id, error=str(e))
                await runtime.force_stop()
        finally:
            self._transition(SessionStatus.STOPPED)
            self._release()
        return results

    def status(self) -> dict[str, Any]:
        """Describe the session without contacting the backend."""
        if self.session is None:
            return {"active": False}
        return {
            "active": self.session.status == SessionStatus.RUNNING,
            "session_id": self.session.id,
            "status": self.session.status.value,
            "profile": self.session.profile.name,
            "backend": self.session.backend.value,
            "created_at": self.session.created_at.isoformat(),
            "running": self.runtime.is_running() if self.runtime else False,
            "error": self.session.error,
        }
