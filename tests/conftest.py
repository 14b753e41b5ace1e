"""Pytest configuration and shared fixtures."""

import asyncio
import posixpath
import shlex
from pathlib import Path

import pytest
import pytest_asyncio

from enclave.config import Settings
from enclave.core.errors import CommandTimeoutError, NotFoundError
from enclave.isolation import session as session_module
from enclave.isolation.base import IsolationRuntime
from enclave.isolation.models import (
    BackendKind,
    ExecuteResult,
    FileInfo,
    IsolationProfile,
    IsolationStatus,
    ProfileUpdateResult,
    get_profile,
)
from enclave.memory.store import MemoryStore
from enclave.utils.shutdown import reset_shutdown_handler


class FakeRuntime(IsolationRuntime):
    """In-memory runtime with a dict filesystem.

    Understands ``echo``, ``sleep`` and ``exit`` commands; every command is recorded.
    """

    kind = BackendKind.CONTAINER

    def __init__(self, default_timeout: float = 30.0):
        super().__init__(default_timeout=default_timeout)
        self.files: dict[str, bytes] = {}
        self.commands: list[str] = []

    async def _do_start(self, session_id: str, profile: IsolationProfile) -> None:
        pass

    async def _do_stop(self) -> None:
        pass

    async def _do_force_stop(self) -> None:
        pass

    async def _run(self, command: str) -> ExecuteResult:
        self.commands.append(command)
        words = shlex.split(command) if command.strip() else [""]
        if words[0] == "echo":
            return ExecuteResult(stdout=" ".join(words[1:]) + "\n")
        if words[0] == "sleep":
            await asyncio.sleep(float(words[1]))
            return ExecuteResult()
        if words[0] == "exit":
            return ExecuteResult(stderr="failed\n", exit_code=int(words[1]))
        return ExecuteResult()

    async def execute(self, command, timeout=None, cwd=None, env=None):
        self._require_running()
        timeout = timeout if timeout is not None else self.default_timeout
        try:
            return await asyncio.wait_for(self._run(command), timeout)
        except TimeoutError:
            raise CommandTimeoutError(f"Command timed out after {timeout}s: {command}", timeout) from None

    async def execute_stream(self, command, on_output, cwd=None, env=None):
        result = await self.execute(command, cwd=cwd, env=env)
        if result.stdout:
            on_output("stdout", result.stdout)
        if result.stderr:
            on_output("stderr", result.stderr)
        return result.exit_code

    async def list_files(self, path):
        self._require_running()
        prefix = path.rstrip("/") + "/"
        entries: dict[str, FileInfo] = {}
        for file_path, data in self.files.items():
            if not file_path.startswith(prefix):
                continue
            name, _, rest = file_path[len(prefix):].partition("/")
            entries[name] = FileInfo(
                name=name,
                path=posixpath.join(path, name),
                size=0 if rest else len(data),
                is_directory=bool(rest),
            )
        if not entries:
            raise NotFoundError("path", path)
        return sorted(entries.values(), key=lambda f: (not f.is_directory, f.name))

    async def read_file(self, path):
        self._require_running()
        if path not in self.files:
            raise NotFoundError("path", path)
        return self.files[path]

    async def write_file(self, path, content):
        self._require_running()
        self.files[path] = self._to_bytes(content)

    async def copy_in(self, host_path, env_path):
        self._require_running()
        self.files[env_path] = Path(host_path).read_bytes()

    async def copy_out(self, env_path, host_path):
        self._require_running()
        if env_path not in self.files:
            raise NotFoundError("path", env_path)
        Path(host_path).parent.mkdir(parents=True, exist_ok=True)
        Path(host_path).write_bytes(self.files[env_path])

    async def get_status(self):
        self._require_running()
        return IsolationStatus(running=True)

    async def _apply_profile(self, profile, changed):
        return ProfileUpdateResult(profile=profile, applied=changed)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(
        _env_file=None,
        anthropic_api_key="test_key",
        data_dir=tmp_path / "data",
        workspace_dir=tmp_path / "sessions",
        skills_dir=tmp_path / "skills",
        autosave_interval_seconds=3600,
        stop_timeout_seconds=2,
    )


@pytest.fixture
def memory_store(settings: Settings) -> MemoryStore:
    """Loaded memory store with the default questionnaires."""
    store = MemoryStore.from_settings(settings)
    store.load()
    return store


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """A fake runtime that has not been started."""
    return FakeRuntime()


@pytest_asyncio.fixture
async def running_runtime(fake_runtime: FakeRuntime) -> FakeRuntime:
    """A started fake runtime."""
    await fake_runtime.start("session-test", get_profile("balanced"))
    yield fake_runtime
    await fake_runtime.stop()


@pytest.fixture
def runtime_factory():
    """SessionController factory producing FakeRuntime instances; ``created`` lists them."""
    created: list[FakeRuntime] = []

    def factory(kind, settings):
        runtime = FakeRuntime(default_timeout=settings.exec_timeout_seconds)
        created.append(runtime)
        return runtime

    factory.created = created
    return factory


@pytest.fixture(autouse=True)
def reset_singletons():
    """Clear process-wide state between tests."""
    yield
    session_module._live_controller = None
    reset_shutdown_handler()
