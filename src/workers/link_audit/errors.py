"""Exceptions raised by the link audit engine.

Network failures while tracing are not here on purpose: the tracer
records them on the Trace (``unreachable`` / ``rate_limited``) and never
raises them to its caller.
"""

from __future__ import annotations


class LinkAuditError(Exception):
    """Base class for link audit errors."""


class MalformedLinkError(LinkAuditError):
    """The link URL cannot be parsed into an absolute http(s) URL."""

    def __init__(self, url: str, reason: str = "not an absolute http(s) URL") -> None:
        super().__init__(f"Malformed link {url!r}: {reason}")
        self.url = url
        self.reason = reason


class PersistenceError(LinkAuditError):
    """A registry read or write failed."""


class AuditAlreadyRunningError(LinkAuditError):
    """Another audit run for the same owner is still in progress."""

    def __init__(self, owner_id: str, run_id: int | None = None) -> None:
        super().__init__(f"Audit already running for owner {owner_id!r}")
        self.owner_id = owner_id
        self.run_id = run_id


class InvalidTransitionError(LinkAuditError):
    """A state machine transition that is not allowed."""

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity} from {current!r} to {target!r}")
        self.entity = entity
        self.current = current
        self.target = target


class NotFoundError(LinkAuditError):
    """A referenced record does not exist."""
