"""Failure taxonomy for durable invocations."""


class TerminalError(Exception):
    """Failure that must surface to the caller without automatic retries."""


class UnknownHandlerError(TerminalError):
    """Raised when an invocation targets a service or handler that is not registered."""


class InvocationNotFoundError(LookupError):
    """Raised when an invocation id does not exist."""


class ObjectLockedError(Exception):
    """Raised when another invocation holds an object key; the attempt is retried."""
