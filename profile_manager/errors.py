"""Error taxonomy shared by the store, the reconcilers and the access API."""

from __future__ import annotations

from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")


class ProfileManagerError(Exception):
    """Base class for all errors raised by this package."""


class NotFoundError(ProfileManagerError):
    """The requested object does not exist (benign on delete paths)."""


class AlreadyExistsError(ProfileManagerError):
    """A create collided with an existing object of the same name."""


class ConflictError(ProfileManagerError):
    """An update lost an optimistic-concurrency race (stale resourceVersion)."""


class StoreError(ProfileManagerError):
    """Any other backend failure."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ValidationError(ProfileManagerError):
    """A request or entity is malformed. Terminal, never retried."""


class UnauthorizedError(ProfileManagerError):
    """The caller is not an admin/owner of the target tenant. Terminal, never retried."""


class AlreadyOwnedError(ProfileManagerError):
    """A derived object is already controlled by a different owner."""


class ReconcileError(ProfileManagerError):
    """A convergence step failed; carries the failing step name."""

    def __init__(self, step: str, cause: BaseException) -> None:
        super().__init__(f"failed to reconcile {step}: {cause}")
        self.step = step
        self.cause = cause

    @property
    def retryable(self) -> bool:
        return not isinstance(self.cause, (ValidationError, UnauthorizedError))


def ignore_not_found(fn: Callable[..., T], *args: Any, **kwargs: Any) -> Optional[T]:
    """Call `fn` and swallow NotFoundError (delete paths only)."""
    try:
        return fn(*args, **kwargs)
    except NotFoundError:
        return None
