"""Typed failures raised by the curriculum core.

Each failure carries a short machine-readable ``code`` (e.g. ``section_not_empty``)
which the web adapter passes through unchanged. The HTTP status is chosen by
the adapter from the failure class, never from the code.
"""
from __future__ import annotations


class CurriculumError(Exception):
    """Base class for failures the serving layer maps to a client response."""

    def __init__(self, code: str, detail: str | None = None) -> None:
        super().__init__(code)
        self.code = code
        self.detail = detail or code


class NotFound(CurriculumError, LookupError):
    pass


class Conflict(CurriculumError):
    pass


class Forbidden(CurriculumError, PermissionError):
    pass


class BadRequest(CurriculumError, ValueError):
    pass


class InvalidReorderSet(BadRequest):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__("invalid_reorder_set", detail)


class StoreUnavailable(ConnectionError):
    """Infrastructure failure from the document store; propagated unmodified."""


class DuplicateKey(Exception):
    """Raised by a store when an insert collides with an existing unique key."""


class VersionConflict(Exception):
    """Raised by a store when a compare-and-set write sees a newer version."""


class ParentMissing(Exception):
    """Raised by a store when an append targets a parent that no longer exists."""


class ReferenceExists(Exception):
    """Raised by a store when a conditional delete finds referencing children."""

    def __init__(self, count: int) -> None:
        super().__init__(f"{count} referencing documents")
        self.count = count


__all__ = [
    "CurriculumError",
    "NotFound",
    "Conflict",
    "Forbidden",
    "BadRequest",
    "InvalidReorderSet",
    "StoreUnavailable",
    "DuplicateKey",
    "VersionConflict",
    "ParentMissing",
    "ReferenceExists",
]
