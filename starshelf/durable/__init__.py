"""Durable execution runtime: memoized steps, delayed invocations and keyed objects."""

from starshelf.durable.context import InvocationContext, ObjectContext, SharedObjectContext
from starshelf.durable.errors import InvocationNotFoundError, ObjectLockedError, TerminalError, UnknownHandlerError
from starshelf.durable.runtime import DurableRuntime
from starshelf.durable.service import Service, VirtualObject, handler, shared

__all__ = [
    "DurableRuntime",
    "InvocationContext",
    "ObjectContext",
    "SharedObjectContext",
    "Service",
    "VirtualObject",
    "handler",
    "shared",
    "TerminalError",
    "UnknownHandlerError",
    "InvocationNotFoundError",
    "ObjectLockedError",
]
