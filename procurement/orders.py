"""
Purchase order creation, deletion and delivery-note attachment.

Status changes are not made here; they go through ``OrderStateMachine``.
"""
import logging
import secrets
from typing import Callable, Iterable, Optional

from config import Config
from models.purchase_order import (
    DeliveryNoteAttachment, OrderStatus, PurchaseOrder, StatusHistoryEntry,
)
from models.result import OperationResult
from models.timestamps import utc_now
from .errors import NotFound, ValidationFailure, failure_result
from .resolvers import project_resolver
from .store import COUNTERS, ORDERS, DocumentStore, Transaction, dump

logger = logging.getLogger(__name__)

ORDER_COUNTER_ID = "purchase_orders"

# Committed spend is derived from live orders, so deleting one of these
# reverses its effect on project totals without any bookkeeping.
DELETABLE_STATUSES = (
    OrderStatus.PENDING_APPROVAL,
    OrderStatus.APPROVED,
    OrderStatus.REJECTED,
)

ApprovalNotifier = Callable[[PurchaseOrder], None]


def next_order_number(txn: Transaction) -> str:
    """Increment the order counter inside *txn* and return e.g. 'OC-00042'."""
    counter = txn.get(COUNTERS, ORDER_COUNTER_ID) or {}
    count = int(counter.get("count", 0)) + 1
    txn.set(COUNTERS, ORDER_COUNTER_ID, {"count": count})
    return f"OC-{count:05d}"


def generate_approval_code(length: int) -> str:
    return "".join(secrets.choice("0123456789") for _ in range(length))


class OrderService:
    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Config] = None,
        approval_notifier: Optional[ApprovalNotifier] = None,
    ) -> None:
        self.store = store
        self.config = config or Config()
        self.approval_notifier = approval_notifier

    def get_order(self, order_id: str) -> Optional[PurchaseOrder]:
        record = self.store.get(ORDERS, order_id)
        return PurchaseOrder.model_validate(record) if record else None

    def create_order(self, draft: PurchaseOrder | dict) -> OperationResult:
        """
        Number, stamp and store a new order in Pending Approval.

        When an approval notifier is configured the order gets a fresh
        approval code and the notifier is called after the write; if it
        raises, the order is removed again and the call fails.
        """
        try:
            order = draft if isinstance(draft, PurchaseOrder) else PurchaseOrder.model_validate(draft)
            if not order.items:
                raise ValidationFailure("An order needs at least one line item")
            created = self.store.run_transaction(lambda txn: self._insert(txn, order))
        except Exception as exc:
            return failure_result(exc)

        if self.approval_notifier is not None:
            try:
                self.approval_notifier(created)
            except Exception as exc:
                logger.error(
                    "Approval notice for %s failed, removing the order: %s",
                    created.order_number, exc,
                )
                self.store.delete(ORDERS, created.id)
                return OperationResult(
                    success=False,
                    message=f"Order not created: approval notice failed ({exc})",
                    error="upstream_write_failure",
                )

        logger.info(
            "Order %s created for project %s (total=%.2f)",
            created.order_number, created.project_id, created.total,
        )
        return OperationResult(
            success=True,
            message=f"Order {created.order_number} created",
            id=created.id,
        )

    def _insert(self, txn: Transaction, order: PurchaseOrder) -> PurchaseOrder:
        project_name = order.project_name
        if not project_name and order.project_id:
            project = project_resolver(txn).resolve(order.project_id, None)
            project_name = project.name if project else None

        updates = {
            "order_number": next_order_number(txn),
            "status": OrderStatus.PENDING_APPROVAL,
            "project_name": project_name,
            "status_history": [
                StatusHistoryEntry(status=OrderStatus.PENDING_APPROVAL, comment="Order created")
            ],
        }
        if "date" not in order.model_fields_set:
            updates["date"] = utc_now()
        if self.approval_notifier is not None and not order.approval_code:
            updates["approval_code"] = generate_approval_code(self.config.approval_code_length)

        # Re-validate so the total is recomputed from the lines
        created = PurchaseOrder.model_validate({**order.model_dump(), **updates, "id": None})
        doc_id = txn.add(ORDERS, dump(created))
        return created.model_copy(update={"id": doc_id})

    def delete_order(self, order_id: str) -> OperationResult:
        """Delete an order that has not yet reached the supplier."""
        def _delete(txn: Transaction) -> str:
            record = txn.get(ORDERS, order_id)
            if record is None:
                raise NotFound("Order", order_id)
            status = OrderStatus(record.get("status", OrderStatus.PENDING_APPROVAL))
            number = record.get("order_number") or order_id
            if status not in DELETABLE_STATUSES:
                raise ValidationFailure(
                    f"Order {number} is '{status.value}' and can no longer be deleted"
                )
            txn.delete(ORDERS, order_id)
            return number

        try:
            number = self.store.run_transaction(_delete)
        except Exception as exc:
            return failure_result(exc)
        logger.info("Order %s deleted", number)
        return OperationResult(success=True, message=f"Order {number} deleted", id=order_id)

    def attach_delivery_notes(
        self,
        order_id: str,
        notes: Iterable[DeliveryNoteAttachment | dict],
    ) -> OperationResult:
        try:
            attachments = [DeliveryNoteAttachment.model_validate(n) for n in notes]
            if not attachments:
                raise ValidationFailure("No delivery notes to attach")

            def _attach(txn: Transaction) -> None:
                record = txn.get(ORDERS, order_id)
                if record is None:
                    raise NotFound("Order", order_id)
                existing = list(record.get("delivery_notes") or [])
                existing.extend(a.model_dump(mode="json") for a in attachments)
                txn.update(ORDERS, order_id, {"delivery_notes": existing})

            self.store.run_transaction(_attach)
        except Exception as exc:
            return failure_result(exc)
        return OperationResult(
            success=True,
            message=f"Attached {len(attachments)} delivery note(s)",
            id=order_id,
        )
