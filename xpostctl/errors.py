"""Exception hierarchy shared by the store, orchestrator and protocol layer."""


class XPostError(Exception):
    """Base class for every error surfaced to a protocol caller."""


class ValidationError(XPostError):
    """Malformed StartJob input. No job is created."""


class NotFoundError(XPostError):
    """Unknown job id, channel id or worker handle."""


class JobStoppedError(XPostError):
    """Control request for a job that has already been stopped."""


class WorkerUnreachableError(XPostError):
    """A control message could not be delivered to a worker."""

    def __init__(self, handle: str, reason: str = ""):
        self.handle = handle
        message = f"Worker {handle} unreachable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
