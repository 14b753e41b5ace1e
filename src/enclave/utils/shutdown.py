"""Graceful shutdown handling for interactive sessions.

Catches SIGINT/SIGTERM so a running chat can stop its isolation session and flush
memory before exiting. A second ctrl-c exits immediately.
"""

import asyncio
import inspect
import os
import signal
from collections.abc import Callable

import structlog

logger = structlog.get_logger(__name__)


class ShutdownHandler:
    """Coordinates cleanup across the orchestrator, the session and memory."""

    def __init__(self, shutdown_timeout: float = 30):
        """Initialize shutdown handler.

        Args:
            shutdown_timeout: Maximum seconds to wait for tracked tasks to finish
        """
        self.shutdown_timeout = shutdown_timeout
        self._shutdown_requested = False
        self._sigint_count = 0
        self._original_sigint_handler = None
        self._original_sigterm_handler = None
        self._cleanup_callbacks: list[Callable] = []
        self._in_progress_tasks: set[asyncio.Task] = set()
        self._on_request: Callable[[], object] | None = None

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def register_cleanup_callback(self, callback: Callable) -> None:
        """Register a callback to run during shutdown.

        Args:
            callback: Function to call during cleanup (sync or async)
        """
        self._cleanup_callbacks.append(callback)
        logger.debug("registered_cleanup_callback", callback=getattr(callback, "__name__", repr(callback)))

    def on_request(self, callback: Callable[[], object] | None) -> None:
        """Set a hook run synchronously when shutdown is first requested."""
        self._on_request = callback

    def track_task(self, task: asyncio.Task) -> None:
        self._in_progress_tasks.add(task)
        task.add_done_callback(self._in_progress_tasks.discard)

    def request_shutdown(self, signum: int | None = None, frame=None) -> None:
        """Request graceful shutdown.

        Args:
            signum: Signal number that triggered shutdown (optional)
            frame: Current stack frame (optional)
        """
        if signum == signal.SIGINT:
            self._sigint_count += 1
            if self._sigint_count >= 2:
                logger.warning("force_exit_on_second_sigint")
                os._exit(1)

        if self._shutdown_requested:
            logger.warning("shutdown_already_requested", signum=signum)
            return

        self._shutdown_requested = True
        signal_name = signal.Signals(signum).name if signum else "MANUAL"
        logger.info("shutdown_requested", signal=signal_name, in_progress_tasks=len(self._in_progress_tasks))
        if self._on_request is not None:
            self._on_request()

    def install_signal_handlers(self) -> None:
        self._original_sigint_handler = signal.signal(signal.SIGINT, self.request_shutdown)
        self._original_sigterm_handler = signal.signal(signal.SIGTERM, self.request_shutdown)
        logger.debug("signal_handlers_installed", signals=["SIGINT", "SIGTERM"])

    def restore_signal_handlers(self) -> None:
        if self._original_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._original_sigint_handler)
            self._original_sigint_handler = None
        if self._original_sigterm_handler is not None:
            signal.signal(signal.SIGTERM, self._original_sigterm_handler)
            self._original_sigterm_handler = None
        logger.debug("signal_handlers_restored")

    async def wait_for_tasks(self) -> bool:
        """Wait for tracked tasks to complete.

        Returns:
            True if all tasks completed, False if the timeout expired
        """
        if not self._in_progress_tasks:
            return True

        logger.info("waiting_for_tasks", count=len(self._in_progress_tasks), timeout=self.shutdown_timeout)
        try:
            await asyncio.wait_for(
                asyncio.gather(*self._in_progress_tasks, return_exceptions=True),
                timeout=self.shutdown_timeout,
            )
            return True
        except TimeoutError:
            logger.warning("shutdown_timeout_exceeded", remaining_tasks=len(self._in_progress_tasks))
            return False

    async def run_cleanup_callbacks(self) -> None:
        """Run every registered callback; a failing callback does not stop the rest."""
        for callback in self._cleanup_callbacks:
            name = getattr(callback, "__name__", repr(callback))
            try:
                result = callback()
                if inspect.isawaitable(result):
                    await result
                logger.debug("cleanup_callback_completed", callback=name)
            except Exception as e:
                logger.error("cleanup_callback_failed", callback=name, error=str(e), exc_info=True)

    async def shutdown(self) -> bool:
        """Wait for tasks, run cleanup callbacks and restore signal handlers.

        Returns:
            True if every tracked task finished in time
        """
        logger.info("shutdown_sequence_started")
        try:
            completed = await self.wait_for_tasks()
            await self.run_cleanup_callbacks()
            logger.info("shutdown_sequence_completed", clean_shutdown=completed)
            return completed
        finally:
            self.restore_signal_handlers()


_shutdown_handler: ShutdownHandler | None = None


def get_shutdown_handler(shutdown_timeout: float = 30) -> ShutdownHandler:
    """Get or create the global shutdown handler."""
    global _shutdown_handler
    if _shutdown_handler is None:
        _shutdown_handler = ShutdownHandler(shutdown_timeout=shutdown_timeout)
    return _shutdown_handler


def reset_shutdown_handler() -> None:
    """Drop the global handler (used between CLI invocations in tests)."""
    global _shutdown_handler
    _shutdown_handler = None
