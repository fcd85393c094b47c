"""
Goods reception: stock effects and backorders.

Called by the order state machine inside its transaction whenever an order
moves to Received or Partially Received. Nothing here changes the order's
status or history; the caller applies the returned updates.
"""
import logging
from dataclasses import dataclass, field
from typing import Optional

from config import Config
from models.ledger import ReceivedLine
from models.purchase_order import (
    LineType, OrderStatus, PurchaseOrder, PurchaseOrderItem, StatusHistoryEntry,
)
from .errors import ValidationFailure
from .orders import next_order_number
from .store import INVENTORY_LOCATIONS, ORDERS, Transaction, dump, where

logger = logging.getLogger(__name__)


@dataclass
class ReceiptOutcome:
    received_lines: list[ReceivedLine]
    order_updates: dict = field(default_factory=dict)
    history_comment: str = ""
    backorder_id: Optional[str] = None


class ReceptionService:
    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config or Config()

    def receive(
        self,
        txn: Transaction,
        order: PurchaseOrder,
        target: OrderStatus,
        received_lines: Optional[list[ReceivedLine]] = None,
        location_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ReceiptOutcome:
        partial = target == OrderStatus.PARTIALLY_RECEIVED

        if received_lines is None:
            if partial:
                raise ValidationFailure("A partial receipt needs the received quantity of each line")
            # Outstanding quantities already moved to a backorder
            if order.status == OrderStatus.PARTIALLY_RECEIVED or order.has_been_received():
                raise ValidationFailure(
                    f"Order {order.order_number or order.id} was already partly received; "
                    "list the quantities of this receipt"
                )
            received_lines = [
                ReceivedLine(item_id=line.item_id, quantity=line.quantity)
                for line in order.items if line.item_id
            ]

        received_by_item: dict[str, float] = {}
        for line in received_lines:
            if order.find_line(line.item_id) is None:
                raise ValidationFailure(
                    f"Item {line.item_id} is not on order {order.order_number or order.id}"
                )
            received_by_item[line.item_id] = received_by_item.get(line.item_id, 0.0) + line.quantity

        location = location_id or order.delivery_location_id or self.config.default_location_id
        for item_id, quantity in received_by_item.items():
            order_line = order.find_line(item_id)
            if quantity <= 0 or order_line.type != LineType.MATERIAL:
                continue
            self._add_stock(txn, item_id, location, quantity)

        outcome = ReceiptOutcome(received_lines=list(received_lines))
        if notes is not None:
            outcome.order_updates["reception_notes"] = notes

        if partial:
            pending = _pending_lines(order, received_by_item)
            if pending:
                backorder_id = self._create_backorder(txn, order, pending, notes)
                outcome.backorder_id = backorder_id
                outcome.order_updates["backorder_ids"] = order.backorder_ids + [backorder_id]
            outcome.history_comment = (
                f"Partial receipt at {location}."
                + (f" Backorder {backorder_id} created." if outcome.backorder_id else "")
            )
        else:
            outcome.history_comment = f"Full receipt at {location}."
        if notes:
            outcome.history_comment += f" Notes: {notes}"

        logger.info(
            "Order %s received (%s): %d line(s) into %s",
            order.order_number, target.value, len(received_by_item), location,
        )
        return outcome

    def _add_stock(self, txn: Transaction, item_id: str, location_id: str, quantity: float) -> None:
        rows = txn.query(
            INVENTORY_LOCATIONS,
            where("item_id", "==", item_id),
            where("location_id", "==", location_id),
        )
        if rows:
            current = float(rows[0].get("quantity") or 0)
            txn.update(INVENTORY_LOCATIONS, rows[0]["id"], {"quantity": current + quantity})
        else:
            txn.add(INVENTORY_LOCATIONS, {
                "item_id": item_id,
                "location_id": location_id,
                "quantity": quantity,
            })

    def _create_backorder(
        self,
        txn: Transaction,
        order: PurchaseOrder,
        pending: list[PurchaseOrderItem],
        notes: Optional[str],
    ) -> str:
        number = next_order_number(txn)
        comment = f"Backorder of order {order.order_number}."
        if notes:
            comment += f" Original notes: {notes}"
        backorder = PurchaseOrder(
            order_number=number,
            project_id=order.project_id,
            project_name=order.project_name,
            supplier_name=order.supplier_name,
            supplier_id=order.supplier_id,
            delivery_location_id=order.delivery_location_id,
            status=OrderStatus.SENT_TO_SUPPLIER,
            date=order.date,
            estimated_delivery_date=order.estimated_delivery_date,
            items=pending,
            original_order_id=order.id,
            status_history=[StatusHistoryEntry(status=OrderStatus.SENT_TO_SUPPLIER, comment=comment)],
        )
        backorder_id = txn.add(ORDERS, dump(backorder))
        logger.info("Backorder %s (%s) created from %s", number, backorder_id, order.order_number)
        return backorder_id


def _pending_lines(order: PurchaseOrder, received_by_item: dict[str, float]) -> list[PurchaseOrderItem]:
    """Lines (with outstanding quantities) still owed by the supplier."""
    pending = []
    for line in order.items:
        if not line.item_id:
            continue  # ad hoc lines stay on the original order
        received = received_by_item.get(line.item_id, 0.0)
        if received < line.quantity:
            pending.append(line.model_copy(update={"quantity": line.quantity - received}))
    return pending
