"""Container backend: one engine container per session."""

import asyncio
import base64
import codecs
import io
import posixpath
import shlex
import tarfile
import time
from contextlib import aclosing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from enclave.config import Settings
from enclave.core.errors import BackendError, CommandTimeoutError, NotFoundError
from enclave.isolation.base import IsolationRuntime, OutputCallback, backend_stop_grace
from enclave.isolation.docker_api import BACKEND_NAME, DockerEngineClient
from enclave.isolation.models import (
    BackendKind,
    ExecuteResult,
    FileInfo,
    IsolationProfile,
    IsolationStatus,
    ProfileUpdateResult,
)

RETAINED_CAPABILITIES = ["CHOWN", "DAC_OVERRIDE", "FOWNER", "SETGID", "SETUID"]

# Profile fields the engine can change on a running container, mapped to the update key.
LIVE_UPDATABLE = {
    "resources.cpu_cores": "NanoCpus",
    "resources.memory_gb": "Memory",
}


def _memory_bytes(gigabytes: float) -> int:
    return int(gigabytes * 1024**3)


def _nano_cpus(cores: float) -> int:
    return int(cores * 1e9)


def build_archive(name: str, data: bytes) -> bytes:
    """Pack a single file into an in-memory tar archive."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mtime = int(time.time())
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def extract_file(archive: bytes, path: str) -> bytes:
    """Return the content of the single regular file in ``archive``.

    Raises:
        BackendError: If the archive holds a directory or something else
    """
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        for member in tar:
            if member.isfile():
                handle = tar.extractfile(member)
                return handle.read() if handle else b""
            if member.isdir():
                raise BackendError(BACKEND_NAME, f"{path} is a directory")
    raise BackendError(BACKEND_NAME, f"{path} is not a regular file")


def _extract_to_host(archive: bytes, host_path: Path) -> None:
    """Write an archive fetched from the container to ``host_path``.

    A single file lands at ``host_path``; a directory tree is re-rooted under it.
    """
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        members = tar.getmembers()
        if len(members) == 1 and members[0].isfile():
            handle = tar.extractfile(members[0])
            host_path.parent.mkdir(parents=True, exist_ok=True)
            host_path.write_bytes(handle.read() if handle else b"")
            return

        host_path.mkdir(parents=True, exist_ok=True)
        root = members[0].name.split("/", 1)[0] if members else ""
        selected = []
        for member in members:
            relative = member.name[len(root):].lstrip("/")
            if not relative:
                continue
            member.name = relative
            selected.append(member)
        tar.extractall(host_path, members=selected, filter="data")


def _archive_host_path(host_path: Path, arcname: str) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        tar.add(str(host_path), arcname=arcname)
    return buffer.getvalue()


class ContainerBackend(IsolationRuntime):
    """Isolation runtime backed by a container engine."""

    kind = BackendKind.CONTAINER

    def __init__(
        self,
        engine: DockerEngineClient | None = None,
        image: str = "workspace:latest",
        workspace_dir: Path | str = Path.home() / ".enclave" / "sessions",
        skills_dir: Path | str = Path.home() / ".enclave" / "skills",
        build_context: Path | str | None = None,
        default_timeout: float = 30.0,
        stop_grace_seconds: int = 10,
        small_write_threshold: int = 48 * 1024,
    ):
        """Initialize container backend.

        Args:
            engine: Engine API client (defaults to the local socket)
            image: Image tag used for session containers
            workspace_dir: Host directory for per-session data mounts
            skills_dir: Host directory mounted read-only at /mnt/skills
            build_context: Directory to build ``image`` from when it is missing
            default_timeout: Default execute() timeout in seconds
            stop_grace_seconds: Grace period given to the container on stop
            small_write_threshold: Largest write sent through exec instead of an archive
        """
        super().__init__(default_timeout=default_timeout)
        self.engine = engine or DockerEngineClient()
        self.image = image
        self.workspace_dir = Path(workspace_dir)
        self.skills_dir = Path(skills_dir)
        self.build_context = Path(build_context) if build_context else None
        self.stop_grace_seconds = stop_grace_seconds
        self.small_write_threshold = small_write_threshold
        self.container_id: str | None = None
        self.started_at: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContainerBackend":
        return cls(
            engine=DockerEngineClient(socket_path=settings.docker_socket),
            image=settings.container_image,
            workspace_dir=settings.workspace_dir,
            skills_dir=settings.skills_dir,
            build_context=settings.docker_build_context,
            default_timeout=settings.exec_timeout_seconds,
            stop_grace_seconds=int(backend_stop_grace(settings.stop_timeout_seconds)),
            small_write_threshold=settings.small_write_threshold_bytes,
        )

    def container_name(self, session_id: str) -> str:
        return f"workspace-{session_id}"

    def session_dir(self, session_id: str) -> Path:
        return self.workspace_dir / session_id

    def build_container_config(self, session_id: str, profile: IsolationProfile) -> dict[str, Any]:
        """Translate a profile into the engine's container-create body."""
        return {
            "Image": self.image,
            "Hostname": "workspace",
            "Tty": True,
            "OpenStdin": True,
            "Env": [f"SESSION_ID={session_id}", f"ISOLATION_PROFILE={profile.name}"],
            "Labels": {"workspace": "true", "session": session_id, "profile": profile.name},
            "HostConfig": {
                "Binds": [
                    f"{self.skills_dir}:/mnt/skills:ro",
                    f"{self.session_dir(session_id)}:/mnt/user-data:rw",
                ],
                "Memory": _memory_bytes(profile.resources.memory_gb),
                "NanoCpus": _nano_cpus(profile.resources.cpu_cores),
                "NetworkMode": "bridge" if profile.network.enabled else "none",
                "SecurityOpt": ["no-new-privileges"],
                "CapDrop": ["ALL"],
                "CapAdd": list(RETAINED_CAPABILITIES),
            },
        }

    async def ensure_image(self) -> None:
        """Build the session image if no image with its tag exists."""
        if await self.engine.image_exists(self.image):
            return

        if self.build_context is None:
            raise BackendError(BACKEND_NAME, f"Image {self.image} not found and no build context configured")

        self.logger.info("building_image", image=self.image, context=str(self.build_context))
        process = await asyncio.create_subprocess_exec(
            "docker",
            "build",
            "-t",
            self.image,
            str(self.build_context),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        if process.returncode != 0:
            tail = output.decode("utf-8", errors="replace")[-2000:]
            self.logger.error("image_build_failed", image=self.image, returncode=process.returncode)
            raise BackendError(BACKEND_NAME, f"Image build failed (exit {process.returncode}): {tail}")
        self.logger.info("image_built", image=self.image)

    async def _do_start(self, session_id: str, profile: IsolationProfile) -> None:
        await self.ensure_image()
        self.session_dir(session_id).mkdir(parents=True, exist_ok=True)
        self.skills_dir.mkdir(parents=True, exist_ok=True)

        config = self.build_container_config(session_id, profile)
        container_id = await self.engine.create_container(self.container_name(session_id), config)
        try:
            await self.engine.start_container(container_id)
        except BackendError:
            await self.engine.remove_container(container_id, force=True)
            raise

        self.container_id = container_id
        self.started_at = datetime.now(timezone.utc)

    async def _do_stop(self) -> None:
        if self.container_id is None:
            return
        # The id is kept on failure so force_stop can still remove the container.
        await self.engine.stop_container(self.container_id, grace_seconds=self.stop_grace_seconds)
        await self.engine.remove_container(self.container_id, force=True)
        self.container_id = None
        self.started_at = None

    async def _do_force_stop(self) -> None:
        if self.container_id is None:
            return
        try:
            await self.engine.kill_container(self.container_id)
        except (BackendError, NotFoundError) as e:
            self.logger.warning("container_kill_failed", container_id=self.container_id[:12], error=str(e))
        try:
            await self.engine.remove_container(self.container_id, force=True)
        except NotFoundError:
            pass
        finally:
            self.container_id = None
            self.started_at = None

    async def _run(
        self,
        cmd: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExecuteResult:
        exec_id = await self.engine.exec_create(self.container_id, cmd, workdir=cwd, env=env)
        buffers = {"stdout": bytearray(), "stderr": bytearray()}
        decoders = {
            name: codecs.getincrementaldecoder("utf-8")(errors="replace") for name in buffers
        }

        async with aclosing(self.engine.exec_start(exec_id)) as frames:
            async for stream, payload in frames:
                if stream not in buffers:
                    continue
                buffers[stream].extend(payload)
                if on_output is not None:
                    text = decoders[stream].decode(payload)
                    if text:
                        on_output(stream, text)

        info = await self.engine.exec_inspect(exec_id)
        exit_code = info.get("ExitCode")
        return ExecuteResult(
            stdout=buffers["stdout"].decode("utf-8", errors="replace"),
            stderr=buffers["stderr"].decode("utf-8", errors="replace"),
            exit_code=exit_code if exit_code is not None else -1,
        )

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ExecuteResult:
        self._require_running()
        timeout = timeout if timeout is not None else self.default_timeout
        self.logger.debug("exec", session_id=self.session_id, command=command[:200])

        try:
            return await asyncio.wait_for(self._run(["bash", "-c", command], cwd=cwd, env=env), timeout)
        except TimeoutError:
            self.logger.warning("exec_timeout", session_id=self.session_id, timeout=timeout)
            raise CommandTimeoutError(f"Command timed out after {timeout}s: {command}", timeout) from None

    async def execute_stream(
        self,
        command: str,
        on_output: OutputCallback,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> int:
        self._require_running()
        result = await self._run(["bash", "-c", command], cwd=cwd, env=env, on_output=on_output)
        return result.exit_code

    async def list_files(self, path: str) -> list[FileInfo]:
        self._require_running()
        command = f"find {shlex.quote(path)} -mindepth 1 -maxdepth 1 -printf '%y\\t%s\\t%T@\\t%f\\n'"
        result = await self.execute(command)
        if result.exit_code != 0:
            if "No such file" in result.stderr:
                raise NotFoundError("path", path)
            raise BackendError(BACKEND_NAME, f"Listing {path} failed: {result.stderr.strip()}")

        files = []
        for line in result.stdout.splitlines():
            parts = line.split("\t", 3)
            if len(parts) != 4:
                continue
            kind, size, mtime, name = parts
            files.append(
                FileInfo(
                    name=name,
                    path=posixpath.join(path, name),
                    size=int(size),
                    is_directory=kind == "d",
                    modified=datetime.fromtimestamp(float(mtime), tz=timezone.utc),
                )
            )
        files.sort(key=lambda f: (not f.is_directory, f.name))
        return files

    async def read_file(self, path: str) -> bytes:
        self._require_running()
        archive = await self.engine.get_archive(self.container_id, path)
        return extract_file(archive, path)

    async def write_file(self, path: str, content: bytes | str) -> None:
        self._require_running()
        data = self._to_bytes(content)
        directory = posixpath.dirname(path) or "/"

        if len(data) <= self.small_write_threshold:
            encoded = base64.b64encode(data).decode("ascii")
            command = (
                f"mkdir -p {shlex.quote(directory)} && "
                f"printf '%s' {shlex.quote(encoded)} | base64 -d > {shlex.quote(path)}"
            )
            result = await self.execute(command)
            if result.exit_code != 0:
                raise BackendError(BACKEND_NAME, f"Writing {path} failed: {result.stderr.strip()}")
            return

        result = await self.execute(f"mkdir -p {shlex.quote(directory)}")
        if result.exit_code != 0:
            raise BackendError(BACKEND_NAME, f"Creating {directory} failed: {result.stderr.strip()}")
        await self.engine.put_archive(self.container_id, directory, build_archive(posixpath.basename(path), data))

    async def copy_in(self, host_path: Path | str, env_path: str) -> None:
        self._require_running()
        host_path = Path(host_path)
        if not host_path.exists():
            raise NotFoundError("host path", str(host_path))

        directory = posixpath.dirname(env_path) or "/"
        archive = await asyncio.to_thread(_archive_host_path, host_path, posixpath.basename(env_path))
        result = await self.execute(f"mkdir -p {shlex.quote(directory)}")
        if result.exit_code != 0:
            raise BackendError(BACKEND_NAME, f"Creating {directory} failed: {result.stderr.strip()}")
        await self.engine.put_archive(self.container_id, directory, archive)
        self.logger.info("copied_in", host_path=str(host_path), env_path=env_path)

    async def copy_out(self, env_path: str, host_path: Path | str) -> None:
        self._require_running()
        archive = await self.engine.get_archive(self.container_id, env_path)
        await asyncio.to_thread(_extract_to_host, archive, Path(host_path))
        self.logger.info("copied_out", env_path=env_path, host_path=str(host_path))

    async def get_status(self) -> IsolationStatus:
        self._require_running()
        inspect = await self.engine.inspect_container(self.container_id)
        stats = await self.engine.container_stats(self.container_id)

        cpu = stats.get("cpu_stats", {})
        precpu = stats.get("precpu_stats", {})
        cpu_delta = cpu.get("cpu_usage", {}).get("total_usage", 0) - precpu.get("cpu_usage", {}).get(
            "total_usage", 0
        )
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        cpu_percent = (cpu_delta / system_delta) * 100 if system_delta > 0 and cpu_delta > 0 else 0.0

        memory = stats.get("memory_stats", {})
        limit = memory.get("limit") or 0
        memory_percent = (memory.get("usage", 0) / limit) * 100 if limit else 0.0

        uptime = 0.0
        if self.started_at is not None:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()

        return IsolationStatus(
            running=bool(inspect.get("State", {}).get("Running", False)),
            cpu_percent=round(cpu_percent, 2),
            memory_percent=round(memory_percent, 2),
            uptime_seconds=uptime,
        )

    async def _apply_profile(self, profile: IsolationProfile, changed: list[str]) -> ProfileUpdateResult:
        live = [name for name in changed if name in LIVE_UPDATABLE]
        restart = [name for name in changed if name not in LIVE_UPDATABLE]

        if live:
            body: dict[str, Any] = {}
            if "resources.cpu_cores" in live:
                body["NanoCpus"] = _nano_cpus(profile.resources.cpu_cores)
            if "resources.memory_gb" in live:
                body["Memory"] = _memory_bytes(profile.resources.memory_gb)
            await self.engine.update_container(self.container_id, body)
            self.logger.info("container_resources_updated", session_id=self.session_id, **body)

        return ProfileUpdateResult(profile=profile, applied=live, requires_restart=restart)
