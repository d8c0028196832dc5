from __future__ import annotations

from kubernetes.client import ApiException


class ReconcileError(RuntimeError):
    """Base class for failures that abort a reconcile pass."""


class PreconditionError(ReconcileError):
    """An invariant the controller cannot fix by itself does not hold."""


class WaitTimeoutError(ReconcileError):
    """A bounded wait elapsed before its condition became true."""


class WaitCancelledError(ReconcileError):
    """A bounded wait was abandoned because the controller is shutting down."""


class AgentError(ReconcileError):
    """The sidecar agent rejected a call or could not be reached."""


class AggregateError(ReconcileError):
    """Every failure collected from a concurrent fan-out.

    ``errors`` maps the task key (usually an object name) to the exception
    raised for it. Keys are kept sorted so messages are stable between passes.
    """

    def __init__(self, errors: dict[str, BaseException]) -> None:
        self.errors = dict(sorted(errors.items()))
        detail = "; ".join(f"{key}: {exc}" for key, exc in self.errors.items())
        super().__init__(f"{len(self.errors)} error(s): {detail}")


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 404


def is_conflict(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409


def is_already_exists(exc: BaseException) -> bool:
    return isinstance(exc, ApiException) and exc.status == 409
