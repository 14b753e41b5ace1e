"""Line-delimited JSON connection to the VM helper process.

Wire format, one JSON object per line in each direction:

- request:   {"id", "command", "params"}
- response:  {"type": "response", "id", "result"} or {"type": "response", "id", "error"}
- stream:    {"type": "stream", "streamId", "streamType": "stdout"|"stderr"|"exit", "data"}
- event:     {"type": "event", "event", "data"}
- handshake: {"type": "ready"}
"""

import asyncio
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from enclave.core.errors import BackendError, BridgeCommandTimeoutError, BridgeStartupTimeoutError

logger = structlog.get_logger(__name__)

BACKEND_NAME = "vm"

# Largest single frame read from the helper; file contents travel base64 encoded in one line.
STREAM_LIMIT = 64 * 1024 * 1024


@dataclass
class StreamSink:
    """Destination for out-of-band output of one streaming command."""

    on_output: Callable[[str, str], None]
    exit_code: int | None = None


def _error_text(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)


class BridgeConnection:
    """Pending-request map and stream registry for one helper process.

    Owned by a single VMBackend instance; nothing here is shared across instances.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command_timeout: float = 60.0,
        on_event: Callable[[str, Any], None] | None = None,
        on_exit: Callable[[int | None], None] | None = None,
    ):
        """Initialize connection.

        Args:
            process: Spawned helper with stdin/stdout/stderr pipes
            command_timeout: Seconds to wait for any single response
            on_event: Called with (event, data) for event frames
            on_exit: Called once with the helper's return code when it exits
        """
        self.process = process
        self.command_timeout = command_timeout
        self.pending: dict[str, asyncio.Future] = {}
        self.streams: dict[str, StreamSink] = {}
        self.ready = asyncio.Event()
        self.closed = False
        self.exit_code: int | None = None
        self._on_event = on_event
        self._on_exit = on_exit
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None

    def start_reading(self) -> None:
        """Start the stdout and stderr reader tasks."""
        self._reader_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())

    async def _read_stdout(self) -> None:
        returncode: int | None = None
        try:
            while True:
                line = await self.process.stdout.readline()
                if not line:
                    break
                self._handle_line(line.decode("utf-8", errors="replace").strip())
            returncode = await self.process.wait()
        except Exception as e:
            # A helper we can no longer read from is a dead helper.
            logger.error("bridge_reader_failed", pid=self.process.pid, error=str(e))
            if self.process.returncode is None:
                try:
                    self.process.kill()
                except ProcessLookupError:
                    pass
            returncode = await self.process.wait()
        finally:
            self._handle_exit(returncode if returncode is not None else self.process.returncode)

    async def _read_stderr(self) -> None:
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            logger.debug("bridge_stderr", pid=self.process.pid, line=line.decode("utf-8", errors="replace").rstrip())

    def _handle_line(self, line: str) -> None:
        if not line:
            return
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("bridge_non_json_output", line=line[:500])
            return
        if not isinstance(message, dict):
            logger.debug("bridge_non_object_output", line=line[:500])
            return

        kind = message.get("type")
        if kind == "ready":
            logger.info("bridge_ready", pid=self.process.pid)
            self.ready.set()
        elif kind == "response":
            self._handle_response(message)
        elif kind == "stream":
            self._handle_stream(message)
        elif kind == "event":
            if self._on_event is not None:
                try:
                    self._on_event(message.get("event"), message.get("data"))
                except Exception as e:
                    logger.error("bridge_event_callback_failed", bridge_event=message.get("event"), error=str(e))
        else:
            logger.warning("bridge_unknown_message", message_type=kind)

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self.pending.pop(message.get("id"), None)
        if future is None or future.done():
            logger.warning("bridge_orphan_response", request_id=message.get("id"))
            return
        if message.get("error") is not None:
            future.set_exception(BackendError(BACKEND_NAME, _error_text(message["error"])))
        else:
            future.set_result(message.get("result"))

    def _handle_stream(self, message: dict[str, Any]) -> None:
        sink = self.streams.get(message.get("streamId"))
        if sink is None:
            logger.debug("bridge_unclaimed_stream", stream_id=message.get("streamId"))
            return

        stream_type = message.get("streamType")
        data = message.get("data")
        if stream_type == "exit":
            try:
                sink.exit_code = int(data)
            except (TypeError, ValueError):
                logger.warning("bridge_bad_exit_code", stream_id=message.get("streamId"), data=data)
            return
        if stream_type not in ("stdout", "stderr"):
            return
        try:
            sink.on_output(stream_type, "" if data is None else str(data))
        except Exception as e:
            logger.error("stream_callback_failed", stream_id=message.get("streamId"), error=str(e))

    def _handle_exit(self, returncode: int | None) -> None:
        if self.closed:
            return
        self.closed = True
        self.exit_code = returncode

        # One shared error for every request still waiting.
        error = BackendError(BACKEND_NAME, f"Helper exited with code {returncode}")
        outstanding = [future for future in self.pending.values() if not future.done()]
        for future in outstanding:
            future.set_exception(error)
        self.pending.clear()
        self.streams.clear()

        logger.warning("bridge_exited", returncode=returncode, rejected_requests=len(outstanding))
        if self._on_exit is not None:
            self._on_exit(returncode)

    async def wait_ready(self, timeout: float) -> None:
        """Wait for the helper's ready handshake.

        Raises:
            BackendError: If the helper exits before becoming ready
            BridgeStartupTimeoutError: If no handshake arrives within ``timeout``
        """
        ready = asyncio.ensure_future(self.ready.wait())
        exited = asyncio.ensure_future(self.process.wait())
        done, pending = await asyncio.wait({ready, exited}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()

        if ready in done:
            return
        if exited in done:
            raise BackendError(BACKEND_NAME, f"Helper exited during startup with code {exited.result()}")
        raise BridgeStartupTimeoutError(f"Helper not ready after {timeout}s", timeout)

    def register_stream(self, stream_id: str, on_output: Callable[[str, str], None]) -> StreamSink:
        sink = StreamSink(on_output=on_output)
        self.streams[stream_id] = sink
        return sink

    def unregister_stream(self, stream_id: str) -> None:
        self.streams.pop(stream_id, None)

    async def send(self, command: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Send a request and wait for its response.

        Args:
            command: Helper command name
            params: Command parameters
            timeout: Override of the per-command timeout

        Returns:
            The response's ``result`` value

        Raises:
            BackendError: If the helper reports an error or has exited
            BridgeCommandTimeoutError: If no response arrives in time
        """
        if self.closed:
            raise BackendError(BACKEND_NAME, "Helper is not running")

        timeout = timeout if timeout is not None else self.command_timeout
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self.pending[request_id] = future

        try:
            line = json.dumps({"id": request_id, "command": command, "params": params or {}}) + "\n"
            self.process.stdin.write(line.encode("utf-8"))
            await self.process.stdin.drain()
            return await asyncio.wait_for(future, timeout)
        except TimeoutError:
            logger.warning("bridge_command_timeout", command=command, timeout=timeout)
            raise BridgeCommandTimeoutError(f"Helper did not answer {command} within {timeout}s", timeout) from None
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.error("bridge_pipe_closed", command=command, error=str(e))
            raise BackendError(BACKEND_NAME, f"Helper pipe closed: {e}") from e
        finally:
            self.pending.pop(request_id, None)

    async def close(self, timeout: float = 10.0) -> None:
        """Terminate the helper, escalating to kill after ``timeout``."""
        if self.process.returncode is None:
            if self.process.stdin and not self.process.stdin.is_closing():
                self.process.stdin.close()
            try:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout)
            except TimeoutError:
                logger.warning("bridge_kill_after_timeout", pid=self.process.pid, timeout=timeout)
                self.process.kill()
                await self.process.wait()
            except ProcessLookupError:
                pass
        await self._join_readers()

    async def kill(self) -> None:
        """Kill the helper immediately."""
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass
            await self.process.wait()
        await self._join_readers()

    async def _join_readers(self) -> None:
        for task in (self._reader_task, self._stderr_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(task, 5.0)
            except TimeoutError:
                task.cancel()
