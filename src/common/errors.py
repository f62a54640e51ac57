"""Error taxonomy shared by every layer.

Each exception carries an ``ErrorKind`` and a ``retryable`` flag so callers
can decide retry vs. abort without matching on message text.  ``ErrorInfo``
is the value form of the same information, used where a result must report
an error without raising (e.g. a chat turn that was persisted but hit a
usage quota).
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    PROVIDER = "provider"
    INDEX = "index"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTHORIZATION = "authorization"


class MaterialRagError(Exception):
    """Base class for all taxonomy errors."""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False


class ValidationError(MaterialRagError):
    """Malformed input, mismatched vector dimensions or an invalid embedding."""

    kind = ErrorKind.VALIDATION


class ProviderError(MaterialRagError):
    """An embedding, generation or vector-store call failed or timed out."""

    kind = ErrorKind.PROVIDER
    retryable = True


class VectorIndexError(MaterialRagError):
    """The vector index is unusable (dimension mismatch or not initialized).

    Raised at ``initialize()`` on a dimension mismatch and by every later
    operation until an operator recreates or renames the collection.
    """

    kind = ErrorKind.INDEX


class NotFoundError(MaterialRagError):
    kind = ErrorKind.NOT_FOUND


class QuotaExceededError(MaterialRagError):
    kind = ErrorKind.QUOTA_EXCEEDED


class AuthorizationError(MaterialRagError):
    kind = ErrorKind.AUTHORIZATION


class ErrorInfo(BaseModel):
    """Explicit error value attached to results instead of raising."""

    kind: ErrorKind
    message: str
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: MaterialRagError) -> ErrorInfo:
        return cls(kind=exc.kind, message=str(exc), retryable=exc.retryable)
