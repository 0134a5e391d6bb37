"""Error taxonomy and the result envelope returned by public operations.

Every operation exposed by :mod:`kiddyguard.services`, :mod:`kiddyguard.lifecycle`,
:mod:`kiddyguard.notifications` and :mod:`kiddyguard.wallets` is wrapped by
:func:`operation`, so callers receive an :class:`OperationResult` instead of an
exception. Inside the package the exceptions below are raised normally.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

log = logging.getLogger(__name__)


class KiddyGuardError(Exception):
    """Base error. ``kind`` is the stable machine-readable tag."""

    kind = "error"

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.retryable = retryable


class ValidationError(KiddyGuardError, ValueError):
    """Malformed identifier or input shape; raised before any I/O."""
    kind = "validation"


class NotFoundError(KiddyGuardError):
    kind = "not_found"


class PreconditionFailed(KiddyGuardError):
    """The entity's current state does not permit the requested transition."""
    kind = "precondition_failed"


class ConcurrencyConflict(KiddyGuardError):
    """A review already exists for the screening. Retrying would fail again."""
    kind = "conflict"

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class StorageError(KiddyGuardError):
    kind = "storage"

    def __init__(self, message: str):
        super().__init__(message, retryable=True)


class ScopeMismatch(KiddyGuardError):
    """Event belongs to another family. Discarded by subscribers, never surfaced."""
    kind = "scope_mismatch"


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: str = "error") -> OperationResult:
        return cls(success=False, error=error, error_kind=kind)

    def unwrap(self) -> Any:
        """Return ``data`` or re-raise the failure as a :class:`KiddyGuardError`."""
        if self.success:
            return self.data
        for exc_type in _KINDS:
            if exc_type.kind == self.error_kind:
                raise exc_type(self.error or "")
        raise KiddyGuardError(self.error or "Unknown error occurred")


_KINDS = (ValidationError, NotFoundError, PreconditionFailed, ConcurrencyConflict, StorageError, ScopeMismatch)


def _find_session(args: tuple, kwargs: dict) -> Session | None:
    if args and isinstance(args[0], Session):
        return args[0]
    candidate = kwargs.get("session")
    return candidate if isinstance(candidate, Session) else None


def operation(fn: Callable[..., Any]) -> Callable[..., OperationResult]:
    """Run *fn* and normalise its outcome into an :class:`OperationResult`.

    Storage failures roll back the session passed as first argument (or as
    ``session=``) and are reported as ``StorageError`` with a descriptive message.
    """
    label = fn.__name__

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            return OperationResult.ok(fn(*args, **kwargs))
        except KiddyGuardError as exc:
            log.info("%s failed (%s): %s", label, exc.kind, exc.message)
            return OperationResult.fail(exc.message, exc.kind)
        except SQLAlchemyError as exc:
            session = _find_session(args, kwargs)
            if session is not None:
                session.rollback()
            log.error("%s storage failure: %s", label, exc)
            return OperationResult.fail(f"Storage failure in {label}: {exc}", StorageError.kind)
        except Exception as exc:
            log.exception("Unexpected error in %s", label)
            return OperationResult.fail(str(exc) or "Unknown error occurred")

    return wrapper
