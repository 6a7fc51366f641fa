"""Exception taxonomy shared by every RecallEngine collection.

Each failure class maps to one recovery policy:

- ``DimensionMismatch`` is a caller bug (wrong embedding model or truncated
  vector) and is rejected immediately.
- ``EmbeddingUnavailable`` signals an upstream provider failure. Callers inside
  the engine recover locally by switching to keyword-only ranking or by storing
  memory facts with a stale embedding; it never aborts an operation.
- ``NotFound`` is a normal outcome of an id lookup and is not logged as an error.
- ``OwnerMismatch`` is security relevant: cross-tenant access is logged and
  always surfaced to the caller.
- ``IndexCorrupted`` reports a violated graph/posting invariant. The owning
  collection rebuilds its indexes from durable records and only re-raises when
  the rebuild fails as well.
"""

from __future__ import annotations

from typing import Optional

# --- Globals ---

__all__ = (
    "DimensionMismatch",
    "EmbeddingUnavailable",
    "IndexCorrupted",
    "NotFound",
    "OwnerMismatch",
    "RecallEngineError",
)


# --- Public Classes ---


class RecallEngineError(Exception):
    """Base class for all RecallEngine failures."""


class DimensionMismatch(RecallEngineError, ValueError):
    """Vector length differs from the collection's configured dimension.

    Args:
        expected: Dimension configured for the collection.
        actual: Length of the rejected vector.

    Examples:
        >>> str(DimensionMismatch(expected=4, actual=3))
        'expected vector of dimension 4, received 3'
    """

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(f"expected vector of dimension {expected}, received {actual}")
        self.expected = expected
        self.actual = actual


class EmbeddingUnavailable(RecallEngineError):
    """The embedding provider timed out, was rate limited, or failed.

    Args:
        message: Human readable description of the failure.
        reason: One of ``"timeout"``, ``"rate_limit"`` or ``"provider_error"``.
    """

    def __init__(self, message: str, *, reason: str = "provider_error") -> None:
        super().__init__(message)
        self.reason = reason


class NotFound(RecallEngineError, KeyError):
    """No record exists for the requested identifier."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "not found"


class OwnerMismatch(RecallEngineError, PermissionError):
    """A caller attempted to touch a record owned by another tenant.

    Args:
        owner_id: Owner the caller claimed.
        record_id: Identifier of the record that was accessed.
        actual_owner: Owner recorded on the record, if known.
    """

    def __init__(
        self,
        *,
        owner_id: str,
        record_id: object,
        actual_owner: Optional[str] = None,
    ) -> None:
        super().__init__(f"record {record_id!r} is not owned by {owner_id!r}")
        self.owner_id = owner_id
        self.record_id = record_id
        self.actual_owner = actual_owner


class IndexCorrupted(RecallEngineError):
    """An internal index invariant was violated (e.g. a dangling graph edge)."""
