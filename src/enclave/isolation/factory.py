"""Backend selection.

Backends are looked up once, by :class:`BackendKind`, in a closed constructor table.
"""

from collections.abc import Callable

import structlog

from enclave.config import Settings
from enclave.core.errors import ConfigurationError
from enclave.isolation.base import IsolationRuntime
from enclave.isolation.container import ContainerBackend
from enclave.isolation.models import BackendKind
from enclave.isolation.vm import VMBackend

logger = structlog.get_logger(__name__)

_BACKENDS: dict[BackendKind, Callable[[Settings], IsolationRuntime]] = {
    BackendKind.CONTAINER: ContainerBackend.from_settings,
    BackendKind.VM: VMBackend.from_settings,
}


def parse_backend_kind(value: str | BackendKind) -> BackendKind:
    """Convert a configuration string into a BackendKind.

    Raises:
        ConfigurationError: If the value names no backend
    """
    if isinstance(value, BackendKind):
        return value
    try:
        return BackendKind(value.strip().lower())
    except ValueError:
        raise ConfigurationError(f"Unknown isolation backend: {value}") from None


def create_runtime(kind: str | BackendKind, settings: Settings) -> IsolationRuntime:
    """Construct the runtime for ``kind``.

    Args:
        kind: Backend kind (strings are accepted at this boundary only)
        settings: Settings carrying backend configuration

    Returns:
        A new, not yet started IsolationRuntime
    """
    kind = parse_backend_kind(kind)
    logger.info("creating_runtime", backend=kind.value)
    return _BACKENDS[kind](settings)


def detect_backend(settings: Settings) -> BackendKind:
    """Prefer the VM backend when its helper is installed, else containers."""
    if VMBackend.is_available(settings.vm_helper_path):
        return BackendKind.VM
    return BackendKind.CONTAINER
