"""Bulk export of files from a running environment to the host."""

import posixpath
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from enclave.core.errors import BackendError, NotFoundError, OperationTimeoutError
from enclave.isolation.base import IsolationRuntime

logger = structlog.get_logger(__name__)

OUTPUTS_DIR = "/mnt/user-data/outputs"


class TransferResult(BaseModel):
    """Outcome of copying one file out of the environment."""

    source: str = Field(..., description="Path inside the environment")
    destination: str = Field(..., description="Host path")
    success: bool
    error: str | None = None


async def export_files(runtime: IsolationRuntime, paths: list[str], destination: Path | str) -> list[TransferResult]:
    """Copy each path out of the environment into ``destination``.

    A failure on one file is recorded in its result and the export moves on.

    Args:
        runtime: Running isolation runtime
        paths: Paths inside the environment
        destination: Host directory to receive the files

    Returns:
        One TransferResult per path, in order
    """
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    results = []

    for path in paths:
        target = destination / posixpath.basename(path.rstrip("/"))
        try:
            await runtime.copy_out(path, target)
        except (BackendError, NotFoundError, OperationTimeoutError, OSError) as e:
            logger.warning("file_export_failed", source=path, destination=str(target), error=str(e))
            results.append(TransferResult(source=path, destination=str(target), success=False, error=str(e)))
            continue
        results.append(TransferResult(source=path, destination=str(target), success=True))

    logger.info(
        "files_exported",
        total=len(results),
        failed=sum(1 for r in results if not r.success),
        destination=str(destination),
    )
    return results


async def export_outputs(
    runtime: IsolationRuntime, destination: Path | str, directory: str = OUTPUTS_DIR
) -> list[TransferResult]:
    """Export every regular file found directly under ``directory``."""
    try:
        entries = await runtime.list_files(directory)
    except NotFoundError:
        logger.info("no_outputs_directory", directory=directory)
        return []
    paths = [entry.path for entry in entries if not entry.is_directory]
    if not paths:
        return []
    return await export_files(runtime, paths, destination)
