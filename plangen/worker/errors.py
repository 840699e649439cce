"""
Error classes for the worker gateway.

These exceptions travel between the process handle, the pool and the
orchestrator. They never reach callers of generate_plan(): the orchestrator
catches them at its boundary and returns a classified PlanFailure instead.

- SpawnError: the OS could not start a worker, or it never became ready
- WorkerIOError: something went wrong on the worker's pipes
- PoolExhausted / PoolClosed: no worker could be leased
"""


class GatewayError(Exception):
    """Base exception for the worker gateway."""
    pass


class SpawnError(GatewayError):
    """
    A worker process could not be started or did not become ready.

    resource_exhausted is set when the OS itself refused (EAGAIN, ENOMEM,
    EMFILE, ENFILE). Repeated occurrences are escalated as fatal.
    """

    def __init__(self, message: str, resource_exhausted: bool = False):
        super().__init__(message)
        self.resource_exhausted = resource_exhausted


class WorkerIOError(GatewayError):
    """Base for failures on a worker's stdin/stdout."""
    pass


class PipeBroken(WorkerIOError):
    """The request could not be written: stdin closed or the process exited."""
    pass


class StreamClosed(WorkerIOError):
    """stdout reached EOF before a full frame was read."""

    def __init__(self, message: str, partial_bytes: int = 0):
        super().__init__(message)
        self.partial_bytes = partial_bytes


class WorkerTimeout(WorkerIOError, TimeoutError):
    """No complete frame arrived before the deadline."""
    pass


class FrameTooLarge(WorkerIOError):
    """A frame header announced more bytes than the configured maximum."""

    def __init__(self, message: str, length: int):
        super().__init__(message)
        self.length = length


class PoolExhausted(GatewayError):
    """No idle worker became available within the acquire timeout."""
    pass


class PoolClosed(GatewayError):
    """The pool has been shut down."""
    pass
