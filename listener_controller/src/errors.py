from __future__ import annotations

from kubernetes.client import ApiException


class ReconcileError(RuntimeError):
    """Base class for errors raised while reconciling an EventListener."""


class InvalidListenerError(ReconcileError):
    """The EventListener object cannot be interpreted."""


class NotReadyError(ReconcileError):
    """The generated custom object reports Ready != True.

    Raised on purpose so the work queue retries the key with backoff.
    """

    def __init__(self, name: str, status: str | None, message: str | None = None) -> None:
        self.name = name
        self.status = status
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"custom object {name} is not ready yet (Ready={status}){detail}")


class CombinedError(ReconcileError):
    """Two independent failures reported together as ``"<first> : <second>"``."""

    def __init__(self, first: BaseException, second: BaseException) -> None:
        self.first = first
        self.second = second
        super().__init__(f"{first} : {second}")


def wrap_error(first: BaseException | None, second: BaseException | None) -> BaseException | None:
    if first is None:
        return second
    if second is None:
        return first
    return CombinedError(first, second)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404
