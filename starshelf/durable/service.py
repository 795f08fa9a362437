"""Declarative service and virtual-object definitions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, ClassVar

HANDLER_EXCLUSIVE = "exclusive"
HANDLER_SHARED = "shared"

_HANDLER_ATTR = "__durable_handler__"


def handler(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Mark a coroutine method as a durable handler.

    On a virtual object the handler runs exclusively for its key.
    """
    setattr(fn, _HANDLER_ATTR, HANDLER_EXCLUSIVE)
    return fn


def shared(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Mark a read-only object handler that may run next to an exclusive one."""
    setattr(fn, _HANDLER_ATTR, HANDLER_SHARED)
    return fn


@dataclass(frozen=True, slots=True)
class HandlerSpec:
    service: str
    name: str
    kind: str
    keyed: bool
    fn: Callable[..., Any]

    @property
    def is_exclusive(self) -> bool:
        return self.keyed and self.kind == HANDLER_EXCLUSIVE


class Service:
    """Stateless group of durable handlers addressed by `name`."""

    name: ClassVar[str] = ""
    keyed: ClassVar[bool] = False

    def handler_specs(self) -> dict[str, HandlerSpec]:
        if not self.name:
            raise ValueError(f"{type(self).__name__} must define a service name")

        specs: dict[str, HandlerSpec] = {}
        for attr_name in dir(type(self)):
            member = getattr(type(self), attr_name, None)
            kind = getattr(member, _HANDLER_ATTR, None)
            if kind is None:
                continue
            if kind == HANDLER_SHARED and not self.keyed:
                raise ValueError(f"{self.name}.{attr_name}: shared handlers are only valid on virtual objects")
            specs[attr_name] = HandlerSpec(
                service=self.name,
                name=attr_name,
                kind=kind,
                keyed=self.keyed,
                fn=getattr(self, attr_name),
            )
        return specs


class VirtualObject(Service):
    """Key-addressed service with private state and a single writer per key."""

    keyed: ClassVar[bool] = True
