"""Value types for isolation runtimes and the canonical profile tiers."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from enclave.core.errors import NotFoundError


class BackendKind(str, Enum):
    """Available isolation backends."""

    CONTAINER = "container"
    VM = "vm"


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ResourceLimits(BaseModel):
    """Resource caps applied to the environment."""

    model_config = ConfigDict(frozen=True)

    cpu_cores: float = Field(..., gt=0, description="CPU cores")
    memory_gb: float = Field(..., gt=0, description="Memory in GB")
    disk_gb: float = Field(..., gt=0, description="Disk in GB")


class NetworkPolicy(BaseModel):
    """Network access policy."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(True, description="Whether any network access is allowed")
    allowed_hosts: tuple[str, ...] = Field(default=(), description="Hosts reachable when restricted")
    blocked_hosts: tuple[str, ...] = Field(default=(), description="Hosts always blocked")


class FilesystemPolicy(BaseModel):
    """Filesystem access policy."""

    model_config = ConfigDict(frozen=True)

    allowed_paths: tuple[str, ...] = Field(default=(), description="Paths the session may use")
    blocked_paths: tuple[str, ...] = Field(default=(), description="Paths the session may not touch")
    read_only_paths: tuple[str, ...] = Field(default=(), description="Paths mounted read-only")


class IsolationProfile(BaseModel):
    """Immutable policy bundle chosen at session start."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Profile name")
    resources: ResourceLimits
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    filesystem: FilesystemPolicy = Field(default_factory=FilesystemPolicy)
    clipboard: bool = Field(True, description="Whether clipboard sharing is allowed")
    gpu: bool = Field(False, description="Whether GPU passthrough is allowed")

    def merged(self, patch: dict[str, Any]) -> "IsolationProfile":
        """Return a new profile with ``patch`` deep-merged over this one.

        Args:
            patch: Partial profile, nested dicts allowed (e.g. {"resources": {"memory_gb": 16}})

        Returns:
            Validated IsolationProfile
        """
        data = self.model_dump()
        for key, value in patch.items():
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return IsolationProfile.model_validate(data)

    def changed_fields(self, other: "IsolationProfile") -> list[str]:
        """Dotted names of leaf fields that differ from ``other``."""
        changed = []
        mine, theirs = self.model_dump(), other.model_dump()
        for key, value in mine.items():
            if isinstance(value, dict):
                for sub, sub_value in value.items():
                    if theirs[key].get(sub) != sub_value:
                        changed.append(f"{key}.{sub}")
            elif theirs.get(key) != value:
                changed.append(key)
        return changed


class ProfileUpdateResult(BaseModel):
    """Outcome of a best-effort live profile update."""

    profile: IsolationProfile
    applied: list[str] = Field(default_factory=list, description="Fields applied immediately")
    requires_restart: list[str] = Field(
        default_factory=list, description="Fields that take effect only after a restart"
    )


class ExecuteResult(BaseModel):
    """Output of a command run inside the environment."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class FileInfo(BaseModel):
    """A directory entry inside the environment."""

    name: str
    path: str
    size: int = 0
    is_directory: bool = False
    modified: datetime | None = None


class IsolationStatus(BaseModel):
    """Point-in-time resource usage of the environment."""

    running: bool
    cpu_percent: float = 0.0
    memory_percent: float = 0.0
    uptime_seconds: float = 0.0


PROFILES: dict[str, IsolationProfile] = {
    "open": IsolationProfile(
        name="open",
        resources=ResourceLimits(cpu_cores=4, memory_gb=8, disk_gb=20),
        network=NetworkPolicy(enabled=True),
        filesystem=FilesystemPolicy(),
        clipboard=True,
        gpu=True,
    ),
    "balanced": IsolationProfile(
        name="balanced",
        resources=ResourceLimits(cpu_cores=4, memory_gb=8, disk_gb=20),
        network=NetworkPolicy(enabled=True),
        filesystem=FilesystemPolicy(blocked_paths=("/etc/passwd", "/etc/shadow", "/var/log")),
        clipboard=True,
        gpu=False,
    ),
    "restricted": IsolationProfile(
        name="restricted",
        resources=ResourceLimits(cpu_cores=2, memory_gb=4, disk_gb=10),
        network=NetworkPolicy(enabled=True, allowed_hosts=("localhost", "127.0.0.1")),
        filesystem=FilesystemPolicy(
            allowed_paths=("/home/claude", "/tmp", "/mnt/user-data"),
            blocked_paths=("/etc", "/var", "/usr/bin"),
        ),
        clipboard=False,
        gpu=False,
    ),
    "isolated": IsolationProfile(
        name="isolated",
        resources=ResourceLimits(cpu_cores=2, memory_gb=4, disk_gb=10),
        network=NetworkPolicy(enabled=False),
        filesystem=FilesystemPolicy(
            allowed_paths=("/home/claude", "/mnt/user-data"),
            blocked_paths=("/etc", "/var", "/usr", "/bin", "/sbin"),
        ),
        clipboard=False,
        gpu=False,
    ),
}


def get_profile(name: str) -> IsolationProfile:
    """Look up a canonical profile tier by name.

    Raises:
        NotFoundError: If no tier has that name
    """
    try:
        return PROFILES[name.lower()]
    except KeyError:
        raise NotFoundError("profile", name) from None
