"""HTTP client for the container engine API.

Talks to the engine over its unix socket with httpx. Only the endpoints the container
backend needs are wrapped; every method translates transport and HTTP failures into
:class:`BackendError` (or :class:`NotFoundError` for 404s) after logging them.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from enclave.core.errors import BackendError, NotFoundError
from enclave.isolation.framing import FramingError, StreamDemuxer

logger = structlog.get_logger(__name__)

BACKEND_NAME = "container"


class DockerEngineClient:
    """Async client for the container engine API."""

    def __init__(
        self,
        socket_path: str = "/var/run/docker.sock",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize engine client.

        Args:
            socket_path: Unix socket of the engine
            timeout: Request timeout in seconds (exec streams are unbounded here)
            transport: Override transport (tests pass httpx.MockTransport)
        """
        self.socket_path = socket_path
        if transport is None:
            transport = httpx.AsyncHTTPTransport(uds=socket_path)
        self.client = httpx.AsyncClient(transport=transport, base_url="http://docker", timeout=timeout)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        not_found: tuple[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("engine_request_failed", method=method, url=url, error=str(e))
            raise BackendError(BACKEND_NAME, f"{method} {url} failed: {e}") from e

        self._raise_for_status(response, method, url, not_found)
        return response

    @staticmethod
    def _raise_for_status(
        response: httpx.Response,
        method: str,
        url: str,
        not_found: tuple[str, str] | None,
    ) -> None:
        if response.status_code < 400:
            return

        if response.status_code == 404 and not_found is not None:
            raise NotFoundError(*not_found)

        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        logger.error(
            "engine_request_rejected",
            method=method,
            url=url,
            status_code=response.status_code,
            message=message,
        )
        raise BackendError(BACKEND_NAME, f"{method} {url}: {message}", status_code=response.status_code)

    async def ping(self) -> bool:
        """Check whether the engine answers."""
        try:
            response = await self.client.get("/_ping")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def image_exists(self, tag: str) -> bool:
        """Check whether an image with this tag is present locally."""
        try:
            await self._request("GET", f"/images/{tag}/json", not_found=("image", tag))
        except NotFoundError:
            return False
        return True

    async def create_container(self, name: str, config: dict[str, Any]) -> str:
        """Create a container and return its id."""
        response = await self._request("POST", "/containers/create", params={"name": name}, json=config)
        container_id = response.json()["Id"]
        logger.info("container_created", name=name, container_id=container_id[:12])
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/start", not_found=("container", container_id))

    async def stop_container(self, container_id: str, grace_seconds: int = 10) -> None:
        await self._request(
            "POST",
            f"/containers/{container_id}/stop",
            params={"t": grace_seconds},
            timeout=grace_seconds + 30,
            not_found=("container", container_id),
        )

    async def kill_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/kill", not_found=("container", container_id))

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": str(force).lower()},
            not_found=("container", container_id),
        )

    async def inspect_container(self, container_id: str) -> dict[str, Any]:
        response = await self._request(
            "GET", f"/containers/{container_id}/json", not_found=("container", container_id)
        )
        return response.json()

    async def container_stats(self, container_id: str) -> dict[str, Any]:
        """One-shot resource usage sample."""
        response = await self._request(
            "GET",
            f"/containers/{container_id}/stats",
            params={"stream": "false"},
            not_found=("container", container_id),
        )
        return response.json()

    async def update_container(self, container_id: str, resources: dict[str, Any]) -> None:
        """Change resource limits of a running container."""
        await self._request(
            "POST", f"/containers/{container_id}/update", json=resources, not_found=("container", container_id)
        )

    async def exec_create(
        self,
        container_id: str,
        cmd: list[str],
        workdir: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """Create an exec instance and return its id."""
        body: dict[str, Any] = {"Cmd": cmd, "AttachStdout": True, "AttachStderr": True, "Tty": False}
        if workdir:
            body["WorkingDir"] = workdir
        if env:
            body["Env"] = [f"{key}={value}" for key, value in env.items()]
        response = await self._request(
            "POST", f"/containers/{container_id}/exec", json=body, not_found=("container", container_id)
        )
        return response.json()["Id"]

    async def exec_start(self, exec_id: str) -> AsyncIterator[tuple[str, bytes]]:
        """Start an exec instance and yield demultiplexed (stream, payload) frames.

        Raises:
            BackendError: If the engine rejects the request or the framing is corrupt
        """
        demuxer = StreamDemuxer()
        try:
            async with self.client.stream(
                "POST", f"/exec/{exec_id}/start", json={"Detach": False, "Tty": False}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._raise_for_status(response, "POST", f"/exec/{exec_id}/start", None)
                async for chunk in response.aiter_bytes():
                    for frame in demuxer.feed(chunk):
                        yield frame
            demuxer.close()
        except FramingError as e:
            logger.error("exec_stream_corrupt", exec_id=exec_id[:12], error=str(e))
            raise BackendError(BACKEND_NAME, f"Corrupt exec stream: {e}") from e
        except httpx.HTTPError as e:
            logger.error("exec_stream_failed", exec_id=exec_id[:12], error=str(e))
            raise BackendError(BACKEND_NAME, f"Exec stream failed: {e}") from e

    async def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        response = await self._request("GET", f"/exec/{exec_id}/json", not_found=("exec", exec_id))
        return response.json()

    async def get_archive(self, container_id: str, path: str) -> bytes:
        """Download ``path`` from the container as a tar archive."""
        response = await self._request(
            "GET", f"/containers/{container_id}/archive", params={"path": path}, not_found=("path", path)
        )
        return response.content

    async def put_archive(self, container_id: str, directory: str, archive: bytes) -> None:
        """Extract a tar archive into ``directory`` inside the container."""
        await self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": directory},
            content=archive,
            headers={"Content-Type": "application/x-tar"},
            not_found=("path", directory),
        )
