"""
Purchase order state machine.

The only writer of an order's ``status`` and ``status_history``. Each
transition is validated against TRANSITIONS, applied together with its
history entry in one store transaction, and, on an order's first receipt,
followed by an incremental ledger update.

  Pending Approval   -> Approved, Rejected
  Approved           -> Sent to Supplier, Pending Approval
  Rejected           -> Pending Approval
  Sent to Supplier   -> Received, Partially Received
  Partially Received -> Received, Partially Received
  Received           -> (terminal)
"""
import logging
import secrets
from dataclasses import dataclass, field
from typing import Iterable, Optional, Protocol

from config import Config
from models.ledger import ReceivedLine
from models.purchase_order import (
    RECEIPT_STATUSES, OrderStatus, PurchaseOrder, StatusHistoryEntry,
)
from models.result import TransitionResult
from .errors import InvalidTransition, NotFound, ValidationFailure, failure_result
from .reception import ReceptionService
from .reconciler import LedgerReconciler
from .store import ORDERS, DocumentStore, Transaction

logger = logging.getLogger(__name__)

TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_APPROVAL: frozenset({OrderStatus.APPROVED, OrderStatus.REJECTED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.SENT_TO_SUPPLIER, OrderStatus.PENDING_APPROVAL}),
    OrderStatus.REJECTED: frozenset({OrderStatus.PENDING_APPROVAL}),
    OrderStatus.SENT_TO_SUPPLIER: frozenset({OrderStatus.RECEIVED, OrderStatus.PARTIALLY_RECEIVED}),
    OrderStatus.RECEIVED: frozenset(),
    OrderStatus.PARTIALLY_RECEIVED: frozenset({OrderStatus.RECEIVED, OrderStatus.PARTIALLY_RECEIVED}),
}


def allowed_targets(status: OrderStatus | str) -> frozenset[OrderStatus]:
    return TRANSITIONS.get(OrderStatus(status), frozenset())


def can_transition(source: OrderStatus | str, target: OrderStatus | str) -> bool:
    return OrderStatus(target) in allowed_targets(source)


class ApprovalGate(Protocol):
    def check(self, order: PurchaseOrder, token: Optional[str]) -> None:
        """Raise ValidationFailure unless *token* authorises approving *order*."""


class ApprovalCodeGate:
    """Accepts a numeric code of the configured length matching the order's code."""

    def __init__(self, code_length: int = 6) -> None:
        self.code_length = code_length

    def check(self, order: PurchaseOrder, token: Optional[str]) -> None:
        token = (token or "").strip()
        if len(token) != self.code_length or not token.isdigit():
            raise ValidationFailure(f"Approval code must be a {self.code_length}-digit number")
        if order.approval_code and not secrets.compare_digest(token, order.approval_code):
            raise ValidationFailure("Approval code does not match this order")


@dataclass
class _Applied:
    order_number: str
    previous: OrderStatus
    first_receipt: bool = False
    backorder_id: Optional[str] = None
    received_lines: list[ReceivedLine] = field(default_factory=list)


class OrderStateMachine:
    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Config] = None,
        gate: Optional[ApprovalGate] = None,
        reception: Optional[ReceptionService] = None,
        reconciler: Optional[LedgerReconciler] = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.gate = gate or ApprovalCodeGate(self.config.approval_code_length)
        self.reception = reception or ReceptionService(self.config)
        self.reconciler = reconciler or LedgerReconciler(store, self.config)

    def request_transition(
        self,
        order_id: str,
        target_status: OrderStatus | str,
        approval_token: Optional[str] = None,
        comment: Optional[str] = None,
        received_lines: Optional[Iterable[ReceivedLine | dict]] = None,
        location_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move an order to *target_status*.

        Approving requires *approval_token* to pass the approval gate.
        Rejecting stores *comment* as the rejection reason. Receipts need
        *received_lines* when partial or when the order was received before
        (a first full receipt defaults to every ordered quantity) and put
        stock into *location_id*.

        A ledger failure after the first receipt is reported in the message
        but does not undo the transition; a later backfill repairs it.
        """
        try:
            try:
                target = OrderStatus(target_status)
            except ValueError:
                raise ValidationFailure(f"Unknown order status: {target_status!r}") from None
            lines = (
                [ReceivedLine.model_validate(line) for line in received_lines]
                if received_lines is not None else None
            )
            applied = self.store.run_transaction(
                lambda txn: self._apply(txn, order_id, target, approval_token, comment, lines, location_id)
            )
        except Exception as exc:
            return failure_result(exc, TransitionResult, order_id=order_id)

        logger.info(
            "Order %s: %s -> %s", applied.order_number, applied.previous.value, target.value,
        )
        result = TransitionResult(
            success=True,
            message=f"Order {applied.order_number} moved from '{applied.previous.value}' to '{target.value}'",
            order_id=order_id,
            previous_status=applied.previous.value,
            status=target.value,
            backorder_id=applied.backorder_id,
        )
        if applied.backorder_id:
            result.message += f"; backorder {applied.backorder_id} created"

        if applied.first_receipt:
            ledger = self.reconciler.reconcile_order(order_id, applied.received_lines)
            if ledger.success:
                result.ledger_entries_created = ledger.entries_created
            else:
                logger.error(
                    "Ledger update after receipt of %s failed: %s", applied.order_number, ledger.message,
                )
                result.message += f"; ledger not updated ({ledger.message}), run a backfill to repair"
        return result

    def _apply(
        self,
        txn: Transaction,
        order_id: str,
        target: OrderStatus,
        approval_token: Optional[str],
        comment: Optional[str],
        received_lines: Optional[list[ReceivedLine]],
        location_id: Optional[str],
    ) -> _Applied:
        record = txn.get(ORDERS, order_id)
        if record is None:
            raise NotFound("Order", order_id)
        order = PurchaseOrder.model_validate(record)
        source = order.status
        if not can_transition(source, target):
            raise InvalidTransition(source.value, target.value)

        applied = _Applied(order_number=order.order_number or order_id, previous=source)
        updates: dict = {"status": target.value}
        history_comment = comment

        if target == OrderStatus.APPROVED:
            self.gate.check(order, approval_token)
        elif target == OrderStatus.REJECTED:
            updates["rejection_reason"] = comment
        elif target in RECEIPT_STATUSES:
            receipt = self.reception.receive(
                txn, order, target, received_lines, location_id, comment,
            )
            updates.update(receipt.order_updates)
            history_comment = receipt.history_comment
            applied.backorder_id = receipt.backorder_id
            applied.received_lines = receipt.received_lines
            applied.first_receipt = not order.has_been_received()

        # Append to the stored history as-is; earlier entries are never rewritten
        entry = StatusHistoryEntry(status=target, comment=history_comment)
        updates["status_history"] = list(record.get("status_history") or []) + [
            entry.model_dump(mode="json")
        ]
        txn.update(ORDERS, order_id, updates)
        return applied
