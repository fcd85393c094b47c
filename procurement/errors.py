"""
Error taxonomy for the procurement core.

These exceptions are raised inside the core and converted into result
objects (``models.result.OperationResult`` and friends) at the boundary of
every public operation by ``failure_result``. Callers of the public API never
see them.
"""
import logging
from enum import Enum
from typing import Type, TypeVar

from pydantic import ValidationError

from models.result import OperationResult

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    INVALID_TRANSITION     = "invalid_transition"
    NOT_FOUND              = "not_found"
    DUPLICATE_LEDGER_KEY   = "duplicate_ledger_key"
    UPSTREAM_WRITE_FAILURE = "upstream_write_failure"
    VALIDATION_FAILURE     = "validation_failure"


class ProcurementError(Exception):
    """Base class for every expected failure in the core."""
    kind: ErrorKind = ErrorKind.VALIDATION_FAILURE


class InvalidTransition(ProcurementError):
    kind = ErrorKind.INVALID_TRANSITION

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Cannot change order status from '{source}' to '{target}'")


class NotFound(ProcurementError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, what: str, record_id: str):
        self.what = what
        self.record_id = record_id
        super().__init__(f"{what} not found: {record_id}")


class DuplicateLedgerKey(ProcurementError):
    """Raised if the reconciler tries to write a key it already holds. Indicates a bug."""
    kind = ErrorKind.DUPLICATE_LEDGER_KEY

    def __init__(self, order_id: str, item_id: str):
        self.order_id = order_id
        self.item_id = item_id
        super().__init__(f"Ledger already holds an entry for order {order_id}, item {item_id}")


class UpstreamWriteFailure(ProcurementError):
    """The document store refused or failed an operation."""
    kind = ErrorKind.UPSTREAM_WRITE_FAILURE


class ValidationFailure(ProcurementError):
    kind = ErrorKind.VALIDATION_FAILURE


R = TypeVar("R", bound=OperationResult)


def failure_result(
    exc: Exception,
    result_cls: Type[R] = OperationResult,
    **extra,
) -> R:
    """
    Convert an exception caught at an operation boundary into a failure result.

    Expected errors keep their own message (the store raises
    UpstreamWriteFailure for its own errors); anything else is logged with a
    traceback and reported as upstream_write_failure.
    """
    if isinstance(exc, ProcurementError):
        if isinstance(exc, DuplicateLedgerKey):
            logger.error("Ledger key guard tripped: %s", exc)
        elif isinstance(exc, UpstreamWriteFailure):
            logger.error("Upstream failure: %s", exc)
        return result_cls(success=False, message=str(exc), error=exc.kind.value, **extra)

    if isinstance(exc, ValidationError):
        return result_cls(
            success=False,
            message=f"Invalid input: {_first_error(exc)}",
            error=ErrorKind.VALIDATION_FAILURE.value,
            **extra,
        )

    logger.exception("Unexpected failure: %s", exc)
    return result_cls(
        success=False,
        message=f"Unexpected error: {exc}",
        error=ErrorKind.UPSTREAM_WRITE_FAILURE.value,
        **extra,
    )


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(p) for p in first.get("loc", ()))
    return f"{location}: {first.get('msg', '')}" if location else first.get("msg", "")
