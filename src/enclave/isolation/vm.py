"""VM backend: a full virtual machine driven through an out-of-process helper."""

import asyncio
import base64
import os
import uuid
from pathlib import Path
from typing import Any

from enclave.config import Settings
from enclave.core.errors import BackendError, CommandTimeoutError, OperationTimeoutError
from enclave.core.events import RuntimeEvent
from enclave.isolation.base import IsolationRuntime, OutputCallback, backend_stop_grace
from enclave.isolation.bridge import BACKEND_NAME, STREAM_LIMIT, BridgeConnection
from enclave.isolation.models import (
    BackendKind,
    ExecuteResult,
    FileInfo,
    IsolationProfile,
    IsolationStatus,
    ProfileUpdateResult,
)


class VMBackend(IsolationRuntime):
    """Isolation runtime that delegates to a privileged VM helper process.

    The helper is spawned on start, answers a ``ready`` handshake, and is shut down
    again on stop. All requests go through the instance's own BridgeConnection.
    """

    kind = BackendKind.VM

    def __init__(
        self,
        helper_path: Path | str,
        helper_args: list[str] | None = None,
        default_timeout: float = 30.0,
        command_timeout: float = 60.0,
        startup_timeout: float = 10.0,
        stop_timeout: float = 10.0,
    ):
        """Initialize VM backend.

        Args:
            helper_path: Helper executable
            helper_args: Extra arguments passed to the helper
            default_timeout: Default execute() timeout in seconds
            command_timeout: Upper bound for any single helper request
            startup_timeout: Upper bound for the ready handshake
            stop_timeout: Seconds to wait for the helper to exit on stop
        """
        super().__init__(default_timeout=default_timeout)
        self.helper_path = Path(helper_path)
        self.helper_args = list(helper_args or [])
        self.command_timeout = command_timeout
        self.startup_timeout = startup_timeout
        self.stop_timeout = stop_timeout
        self._connection: BridgeConnection | None = None
        self._shutting_down = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "VMBackend":
        if settings.vm_helper_path is None:
            raise BackendError(BACKEND_NAME, "vm_helper_path is not configured")
        return cls(
            helper_path=settings.vm_helper_path,
            default_timeout=settings.exec_timeout_seconds,
            command_timeout=settings.vm_command_timeout_seconds,
            startup_timeout=settings.vm_startup_timeout_seconds,
            stop_timeout=backend_stop_grace(settings.stop_timeout_seconds),
        )

    @staticmethod
    def is_available(helper_path: Path | str | None) -> bool:
        """Check whether the helper exists and is executable."""
        if helper_path is None:
            return False
        path = Path(helper_path)
        return path.is_file() and os.access(path, os.X_OK)

    @property
    def connection(self) -> BridgeConnection | None:
        return self._connection

    async def _spawn_helper(self) -> BridgeConnection:
        self.logger.info("spawning_vm_helper", helper=str(self.helper_path))
        try:
            process = await asyncio.create_subprocess_exec(
                str(self.helper_path),
                *self.helper_args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self.logger.error("vm_helper_spawn_failed", helper=str(self.helper_path), error=str(e))
            raise BackendError(BACKEND_NAME, f"Cannot start helper {self.helper_path}: {e}") from e

        connection = BridgeConnection(
            process,
            command_timeout=self.command_timeout,
            on_event=self._on_bridge_event,
            on_exit=self._on_helper_exit,
        )
        connection.start_reading()
        try:
            await connection.wait_ready(self.startup_timeout)
        except (BackendError, OperationTimeoutError) as e:
            self.logger.error("vm_helper_not_ready", error=str(e))
            await connection.kill()
            raise
        return connection

    def _on_bridge_event(self, event: str, data: Any) -> None:
        self._emit(RuntimeEvent.BACKEND_EVENT, name=event, payload=data)

    def _on_helper_exit(self, returncode: int | None) -> None:
        self._connection = None
        if not self._shutting_down:
            self._mark_stopped(f"helper exited with code {returncode}")

    async def _call(self, command: str, params: dict[str, Any] | None = None) -> Any:
        connection = self._connection
        if connection is None:
            raise BackendError(BACKEND_NAME, "Helper is not running")
        return await connection.send(command, params)

    async def _do_start(self, session_id: str, profile: IsolationProfile) -> None:
        self._shutting_down = False
        self._connection = await self._spawn_helper()
        try:
            await self._call("start", {"sessionId": session_id, "profile": profile.model_dump(mode="json")})
        except (BackendError, OperationTimeoutError):
            await self._shutdown_helper(kill=True)
            raise

    async def _shutdown_helper(self, kill: bool = False) -> None:
        connection = self._connection
        if connection is None:
            return
        self._shutting_down = True
        try:
            if kill:
                await connection.kill()
            else:
                await connection.close(self.stop_timeout)
        finally:
            self._connection = None

    async def _do_stop(self) -> None:
        self._shutting_down = True
        try:
            await self._call("stop")
        except (BackendError, OperationTimeoutError) as e:
            self.logger.warning("vm_stop_request_failed", session_id=self.session_id, error=str(e))
        finally:
            await self._shutdown_helper()

    async def _do_force_stop(self) -> None:
        self._shutting_down = True
        connection = self._connection
        if connection is not None and not connection.closed:
            try:
                await asyncio.wait_for(connection.send("force_stop"), 2.0)
            except (BackendError, OperationTimeoutError, TimeoutError) as e:
                self.logger.warning("vm_force_stop_request_failed", error=str(e))
        await self._shutdown_helper(kill=True)

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        self._require_running()
        timeout = timeout if timeout is not None else self.default_timeout
        params = {"command": command, "cwd": cwd, "env": env or {}, "timeout": timeout}

        try:
            result = await asyncio.wait_for(self._call("exec", params), timeout)
        except OperationTimeoutError:
            raise
        except TimeoutError:
            self.logger.warning("exec_timeout", session_id=self.session_id, timeout=timeout)
            raise CommandTimeoutError(f"Command timed out after {timeout}s: {command}", timeout) from None

        result = result or {}
        return ExecuteResult(
            stdout=result.get("stdout", ""),
            stderr=result.get("stderr", ""),
            exit_code=result.get("exitCode", 0),
        )

    async def execute_stream(
        self,
        command: str,
        on_output: OutputCallback,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> int:
        self._require_running()
        connection = self._connection
        stream_id = uuid.uuid4().hex
        sink = connection.register_stream(stream_id, on_output)
        try:
            result = await self._call(
                "exec_stream", {"command": command, "streamId": stream_id, "cwd": cwd, "env": env or {}}
            )
        finally:
            connection.unregister_stream(stream_id)

        if isinstance(result, dict) and result.get("exitCode") is not None:
            return int(result["exitCode"])
        return sink.exit_code if sink.exit_code is not None else 0

    async def list_files(self, path: str) -> list[FileInfo]:
        self._require_running()
        entries = await self._call("list_files", {"path": path}) or []
        return [
            FileInfo(
                name=entry["name"],
                path=entry.get("path", f"{path.rstrip('/')}/{entry['name']}"),
                size=entry.get("size", 0),
                is_directory=entry.get("isDirectory", False),
                modified=entry.get("modified"),
            )
            for entry in entries
        ]

    async def read_file(self, path: str) -> bytes:
        self._require_running()
        result = await self._call("read_file", {"path": path}) or {}
        return base64.b64decode(result.get("content", ""))

    async def write_file(self, path: str, content: bytes | str) -> None:
        self._require_running()
        encoded = base64.b64encode(self._to_bytes(content)).decode("ascii")
        await self._call("write_file", {"path": path, "content": encoded})

    async def copy_in(self, host_path: Path | str, env_path: str) -> None:
        self._require_running()
        await self._call("copy_in", {"hostPath": str(Path(host_path).resolve()), "vmPath": env_path})

    async def copy_out(self, env_path: str, host_path: Path | str) -> None:
        self._require_running()
        await self._call("copy_out", {"vmPath": env_path, "hostPath": str(Path(host_path).resolve())})

    async def get_status(self) -> IsolationStatus:
        self._require_running()
        result = await self._call("status") or {}
        return IsolationStatus(
            running=result.get("running", True),
            cpu_percent=result.get("cpuPercent", 0.0),
            memory_percent=result.get("memoryPercent", 0.0),
            uptime_seconds=result.get("uptimeSeconds", 0.0),
        )

    async def _apply_profile(self, profile: IsolationProfile, changed: list[str]) -> ProfileUpdateResult:
        result = await self._call("update_profile", {"profile": profile.model_dump(mode="json"), "changed": changed})
        restart = list((result or {}).get("requiresRestart", []))
        applied = [name for name in changed if name not in restart]
        return ProfileUpdateResult(profile=profile, applied=applied, requires_restart=restart)
