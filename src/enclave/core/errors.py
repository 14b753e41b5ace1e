"""Exception hierarchy for Enclave.

Every error raised on purpose by the package derives from :class:`EnclaveError`, so
callers that want a single catch-all can use it without also swallowing programming
errors.
"""


class EnclaveError(Exception):
    """Base class for all Enclave errors."""

    pass


class LifecycleError(EnclaveError):
    """Raised when an operation does not fit the current lifecycle state.

    Examples: starting a runtime that is already running, executing a command after
    stop, or an illegal session status transition.
    """

    pass


class OperationTimeoutError(EnclaveError, TimeoutError):
    """Base class for timeouts raised by isolation backends."""

    def __init__(self, message: str, timeout: float | None = None):
        super().__init__(message)
        self.timeout = timeout


class CommandTimeoutError(OperationTimeoutError):
    """A command inside the isolated environment exceeded its timeout."""

    pass


class BridgeCommandTimeoutError(OperationTimeoutError):
    """The VM helper did not answer a request in time."""

    pass


class BridgeStartupTimeoutError(OperationTimeoutError):
    """The VM helper did not complete its ready handshake in time."""

    pass


class BackendError(EnclaveError):
    """Raised when the container engine or VM helper reports a failure."""

    def __init__(self, backend: str, message: str, status_code: int | None = None):
        super().__init__(f"[{backend}] {message}")
        self.backend = backend
        self.message = message
        self.status_code = status_code


class NotFoundError(EnclaveError):
    """Raised when a named entity (worker, deadline, questionnaire, path...) does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ToolInputError(EnclaveError):
    """Raised when a tool call is missing required fields or has malformed input."""

    def __init__(self, tool: str, missing: list[str] | None = None, message: str | None = None):
        self.tool = tool
        self.missing = missing or []
        if message is None:
            message = f"Tool {tool} missing required fields: {', '.join(self.missing)}"
        super().__init__(message)


class ConfigurationError(EnclaveError):
    """Raised when required configuration (credentials, backend choice) is unusable."""

    pass


class WorkerBusyError(EnclaveError):
    """Raised when a task is handed to a worker that is not idle."""

    pass


class RequestCancelledError(EnclaveError):
    """Raised when the in-flight language-model request was cancelled."""

    pass
