"""Tests for the container backend against a mocked engine API."""

import asyncio
import io
import json
import tarfile

import httpx
import pytest

from enclave.core.errors import BackendError, CommandTimeoutError, LifecycleError, NotFoundError
from enclave.core.events import RuntimeEvent
from enclave.isolation.container import ContainerBackend, build_archive, extract_file
from enclave.isolation.docker_api import DockerEngineClient
from enclave.isolation.framing import encode_frame
from enclave.isolation.models import get_profile

CONTAINER_ID = "c0ffee" * 8


class FakeEngine:
    """Routes engine API requests and records them.

    ``exec_outputs`` maps a command substring to (stdout, stderr, exit code, delay).
    """

    def __init__(self, image_present: bool = True):
        self.image_present = image_present
        self.requests: list[httpx.Request] = []
        self.created_config: dict | None = None
        self.exec_commands: dict[str, list[str]] = {}
        self.exec_outputs: dict[str, tuple[bytes, bytes, int, float]] = {}
        self.archives: dict[str, bytes] = {}
        self.updates: list[dict] = []
        self.removed = False
        self.start_status = 204

    def _output_for(self, exec_id: str) -> tuple[bytes, bytes, int, float]:
        script = self.exec_commands[exec_id][-1]
        for needle, output in self.exec_outputs.items():
            if needle in script:
                return output
        return b"", b"", 0, 0.0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if path.startswith("/images/"):
            return httpx.Response(200 if self.image_present else 404, json={"message": "no such image"})
        if path == "/containers/create":
            self.created_config = json.loads(request.content)
            return httpx.Response(201, json={"Id": CONTAINER_ID})
        if path == f"/containers/{CONTAINER_ID}/start":
            return httpx.Response(self.start_status, json={"message": "cannot start"})
        if path == f"/containers/{CONTAINER_ID}/stop":
            return httpx.Response(204)
        if path == f"/containers/{CONTAINER_ID}/kill":
            return httpx.Response(204)
        if path == f"/containers/{CONTAINER_ID}" and method == "DELETE":
            self.removed = True
            return httpx.Response(204)
        if path == f"/containers/{CONTAINER_ID}/exec":
            exec_id = f"exec{len(self.exec_commands)}"
            self.exec_commands[exec_id] = json.loads(request.content)["Cmd"]
            return httpx.Response(201, json={"Id": exec_id})
        if path.startswith("/exec/") and path.endswith("/start"):
            exec_id = path.split("/")[2]
            stdout, stderr, _, delay = self._output_for(exec_id)
            if delay:
                await asyncio.sleep(delay)
            body = b""
            if stdout:
                body += encode_frame(1, stdout)
            if stderr:
                body += encode_frame(2, stderr)
            return httpx.Response(200, content=body)
        if path.startswith("/exec/") and path.endswith("/json"):
            exec_id = path.split("/")[2]
            return httpx.Response(200, json={"ExitCode": self._output_for(exec_id)[2]})
        if path == f"/containers/{CONTAINER_ID}/archive" and method == "GET":
            wanted = request.url.params["path"]
            if wanted not in self.archives:
                return httpx.Response(404, json={"message": "no such path"})
            return httpx.Response(200, content=self.archives[wanted])
        if path == f"/containers/{CONTAINER_ID}/archive" and method == "PUT":
            self.archives[request.url.params["path"]] = request.content
            return httpx.Response(200)
        if path == f"/containers/{CONTAINER_ID}/json":
            return httpx.Response(200, json={"State": {"Running": True}})
        if path == f"/containers/{CONTAINER_ID}/stats":
            return httpx.Response(
                200,
                json={
                    "cpu_stats": {"cpu_usage": {"total_usage": 300}, "system_cpu_usage": 2000},
                    "precpu_stats": {"cpu_usage": {"total_usage": 100}, "system_cpu_usage": 1000},
                    "memory_stats": {"usage": 256, "limit": 1024},
                },
            )
        if path == f"/containers/{CONTAINER_ID}/update":
            self.updates.append(json.loads(request.content))
            return httpx.Response(200, json={"Warnings": []})
        return httpx.Response(500, json={"message": f"unexpected {method} {path}"})


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def backend(engine, tmp_path):
    client = DockerEngineClient(transport=httpx.MockTransport(engine))
    return ContainerBackend(
        engine=client,
        workspace_dir=tmp_path / "sessions",
        skills_dir=tmp_path / "skills",
        default_timeout=5,
        small_write_threshold=64,
    )


class TestContainerConfig:
    """Test translation of profiles into container-create bodies."""

    def test_balanced_profile(self, backend, tmp_path):
        """Test resource, mount and security settings."""
        config = backend.build_container_config("abc", get_profile("balanced"))
        host = config["HostConfig"]

        assert config["Image"] == "workspace:latest"
        assert host["Memory"] == 8 * 1024**3
        assert host["NanoCpus"] == 4_000_000_000
        assert host["NetworkMode"] == "bridge"
        assert host["CapDrop"] == ["ALL"]
        assert "no-new-privileges" in host["SecurityOpt"]
        assert f"{tmp_path / 'skills'}:/mnt/skills:ro" in host["Binds"]
        assert f"{tmp_path / 'sessions' / 'abc'}:/mnt/user-data:rw" in host["Binds"]
        assert "SESSION_ID=abc" in config["Env"]

    def test_isolated_profile_has_no_network(self, backend):
        """Test that a disabled network maps to network mode none."""
        config = backend.build_container_config("abc", get_profile("isolated"))
        assert config["HostConfig"]["NetworkMode"] == "none"


class TestContainerLifecycle:
    """Test start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, backend, engine, tmp_path):
        """Test a full lifecycle with events."""
        events = []
        backend.subscribe(lambda n: events.append(n.event))

        await backend.start("abc", get_profile("balanced"))
        assert backend.is_running()
        assert backend.container_id == CONTAINER_ID
        assert (tmp_path / "sessions" / "abc").is_dir()
        assert engine.created_config["Labels"]["session"] == "abc"

        await backend.stop()
        assert not backend.is_running()
        assert engine.removed
        assert events == [RuntimeEvent.STARTING, RuntimeEvent.STARTED, RuntimeEvent.STOPPING, RuntimeEvent.STOPPED]

    @pytest.mark.asyncio
    async def test_start_twice_fails(self, backend):
        """Test that a running backend cannot be started again."""
        await backend.start("abc", get_profile("balanced"))
        with pytest.raises(LifecycleError):
            await backend.start("def", get_profile("balanced"))
        await backend.stop()

    @pytest.mark.asyncio
    async def test_missing_image_without_build_context(self, engine, backend):
        """Test that a missing image fails the start."""
        engine.image_present = False
        with pytest.raises(BackendError):
            await backend.start("abc", get_profile("balanced"))
        assert not backend.is_running()

    @pytest.mark.asyncio
    async def test_failed_start_removes_container(self, engine, backend):
        """Test cleanup when the engine refuses to start the container."""
        engine.start_status = 500
        with pytest.raises(BackendError):
            await backend.start("abc", get_profile("balanced"))
        assert engine.removed
        assert not backend.is_running()

    @pytest.mark.asyncio
    async def test_force_stop(self, backend, engine):
        """Test that force_stop kills and removes the container."""
        await backend.start("abc", get_profile("balanced"))
        await backend.force_stop()

        paths = [request.url.path for request in engine.requests]
        assert f"/containers/{CONTAINER_ID}/kill" in paths
        assert engine.removed
        assert not backend.is_running()
        assert backend.container_id is None


class TestContainerExec:
    """Test command execution."""

    @pytest.mark.asyncio
    async def test_execute_collects_output(self, backend, engine):
        """Test stdout, stderr and exit code."""
        engine.exec_outputs["echo hi"] = (b"hi\n", b"warn\n", 3, 0.0)
        await backend.start("abc", get_profile("balanced"))

        result = await backend.execute("echo hi")

        assert result.stdout == "hi\n"
        assert result.stderr == "warn\n"
        assert result.exit_code == 3
        assert not result.ok
        assert engine.exec_commands["exec0"] == ["bash", "-c", "echo hi"]
        await backend.stop()

    @pytest.mark.asyncio
    async def test_execute_timeout(self, backend, engine):
        """Test that a slow command raises CommandTimeoutError."""
        engine.exec_outputs["sleep"] = (b"", b"", 0, 5.0)
        await backend.start("abc", get_profile("balanced"))

        with pytest.raises(CommandTimeoutError) as exc_info:
            await backend.execute("sleep 5", timeout=0.2)
        assert exc_info.value.timeout == 0.2
        await backend.stop()

    @pytest.mark.asyncio
    async def test_execute_requires_running(self, backend):
        """Test that executing before start is a lifecycle error."""
        with pytest.raises(LifecycleError):
            await backend.execute("echo hi")

    @pytest.mark.asyncio
    async def test_execute_stream(self, backend, engine):
        """Test that output is delivered to the callback by stream."""
        engine.exec_outputs["build"] = (b"step 1\nstep 2\n", b"oops\n", 0, 0.0)
        await backend.start("abc", get_profile("balanced"))

        chunks = []
        exit_code = await backend.execute_stream("make build", lambda stream, text: chunks.append((stream, text)))

        assert exit_code == 0
        assert ("stdout", "step 1\nstep 2\n") in chunks
        assert ("stderr", "oops\n") in chunks
        await backend.stop()


class TestContainerFiles:
    """Test file operations."""

    @pytest.mark.asyncio
    async def test_small_write_uses_exec(self, backend, engine):
        """Test that small files are written through a base64 exec."""
        await backend.start("abc", get_profile("balanced"))
        await backend.write_file("/mnt/user-data/a.txt", "hello")

        script = engine.exec_commands["exec0"][-1]
        assert "base64 -d" in script
        assert "aGVsbG8=" in script
        assert not engine.archives
        await backend.stop()

    @pytest.mark.asyncio
    async def test_large_write_uses_archive(self, backend, engine):
        """Test that large files are uploaded as a tar archive."""
        await backend.start("abc", get_profile("balanced"))
        data = b"x" * 1000
        await backend.write_file("/mnt/user-data/big.bin", data)

        archive = engine.archives["/mnt/user-data"]
        assert extract_file(archive, "big.bin") == data
        await backend.stop()

    @pytest.mark.asyncio
    async def test_read_file(self, backend, engine):
        """Test reading a file through the archive endpoint."""
        engine.archives["/etc/motd"] = build_archive("motd", b"welcome")
        await backend.start("abc", get_profile("balanced"))

        assert await backend.read_file("/etc/motd") == b"welcome"
        await backend.stop()

    @pytest.mark.asyncio
    async def test_read_missing_file(self, backend):
        """Test that a missing path raises NotFoundError."""
        await backend.start("abc", get_profile("balanced"))
        with pytest.raises(NotFoundError):
            await backend.read_file("/nope")
        await backend.stop()

    @pytest.mark.asyncio
    async def test_read_directory_fails(self, backend, engine):
        """Test that reading a directory is rejected."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            info = tarfile.TarInfo("dir")
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        engine.archives["/dir"] = buffer.getvalue()
        await backend.start("abc", get_profile("balanced"))

        with pytest.raises(BackendError):
            await backend.read_file("/dir")
        await backend.stop()

    @pytest.mark.asyncio
    async def test_list_files(self, backend, engine):
        """Test parsing of find output, directories first."""
        engine.exec_outputs["find"] = (
            b"f\t12\t1700000000.5\tnotes.txt\nd\t4096\t1700000000.0\tdata\n",
            b"",
            0,
            0.0,
        )
        await backend.start("abc", get_profile("balanced"))

        files = await backend.list_files("/mnt/user-data")

        assert [f.name for f in files] == ["data", "notes.txt"]
        assert files[0].is_directory
        assert files[1].size == 12
        assert files[1].path == "/mnt/user-data/notes.txt"
        await backend.stop()

    @pytest.mark.asyncio
    async def test_list_missing_directory(self, backend, engine):
        """Test that a missing directory raises NotFoundError."""
        engine.exec_outputs["find"] = (b"", b"find: '/x': No such file or directory\n", 1, 0.0)
        await backend.start("abc", get_profile("balanced"))
        with pytest.raises(NotFoundError):
            await backend.list_files("/x")
        await backend.stop()

    @pytest.mark.asyncio
    async def test_copy_out_single_file(self, backend, engine, tmp_path):
        """Test copying a file from the container to the host."""
        engine.archives["/mnt/user-data/outputs/report.txt"] = build_archive("report.txt", b"done")
        await backend.start("abc", get_profile("balanced"))

        target = tmp_path / "export" / "report.txt"
        await backend.copy_out("/mnt/user-data/outputs/report.txt", target)

        assert target.read_bytes() == b"done"
        await backend.stop()


class TestContainerStatus:
    """Test status and live profile updates."""

    @pytest.mark.asyncio
    async def test_get_status(self, backend):
        """Test CPU and memory percentages from the stats sample."""
        await backend.start("abc", get_profile("balanced"))
        status = await backend.get_status()

        assert status.running is True
        assert status.cpu_percent == 20.0
        assert status.memory_percent == 25.0
        assert status.uptime_seconds >= 0
        await backend.stop()

    @pytest.mark.asyncio
    async def test_update_profile(self, backend, engine):
        """Test that resources apply live and network changes need a restart."""
        await backend.start("abc", get_profile("balanced"))
        events = []
        backend.subscribe(lambda n: events.append(n))

        result = await backend.update_profile({"resources": {"memory_gb": 16}, "network": {"enabled": False}})

        assert result.applied == ["resources.memory_gb"]
        assert result.requires_restart == ["network.enabled"]
        assert engine.updates == [{"Memory": 16 * 1024**3}]
        assert backend.profile.resources.memory_gb == 16
        assert events[-1].event == RuntimeEvent.PROFILE_UPDATED
        await backend.stop()

    @pytest.mark.asyncio
    async def test_update_profile_without_changes(self, backend, engine):
        """Test that an empty diff does not call the engine."""
        await backend.start("abc", get_profile("balanced"))
        result = await backend.update_profile({"gpu": False})

        assert result.applied == []
        assert engine.updates == []
        await backend.stop()
