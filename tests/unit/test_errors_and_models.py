"""
Unit tests for failure conversion and model invariants.
"""
import pytest
from pydantic import ValidationError

from models.purchase_order import OrderStatus, PurchaseOrder, StatusHistoryEntry
from models.result import TransitionResult
from procurement.errors import (
    DuplicateLedgerKey, InvalidTransition, NotFound, UpstreamWriteFailure, ValidationFailure,
    failure_result,
)


@pytest.mark.unit
class TestFailureResult:
    """Tests for failure_result."""

    def test_invalid_transition_names_both_statuses(self):
        result = failure_result(InvalidTransition("Received", "Approved"))
        assert not result.success
        assert result.error == "invalid_transition"
        assert "Received" in result.message and "Approved" in result.message

    def test_not_found(self):
        result = failure_result(NotFound("Order", "ORD-9"))
        assert result.error == "not_found"
        assert "ORD-9" in result.message

    def test_duplicate_key(self):
        assert failure_result(DuplicateLedgerKey("O", "I")).error == "duplicate_ledger_key"

    def test_store_errors_become_upstream_failures(self):
        result = failure_result(UpstreamWriteFailure("Store operation failed: disk I/O error"))
        assert result.error == "upstream_write_failure"
        assert "disk I/O error" in result.message

    def test_pydantic_errors_become_validation_failures(self):
        with pytest.raises(ValidationError) as info:
            PurchaseOrder(items=[{"name": "x", "quantity": -1, "price": 1}])
        result = failure_result(info.value)
        assert result.error == "validation_failure"
        assert "quantity" in result.message

    def test_unexpected_errors_are_contained(self):
        result = failure_result(RuntimeError("boom"))
        assert not result.success
        assert result.error == "upstream_write_failure"

    def test_result_class_and_extra_fields(self):
        result = failure_result(ValidationFailure("bad"), TransitionResult, order_id="ORD-1")
        assert isinstance(result, TransitionResult)
        assert result.order_id == "ORD-1"
        assert result.message == "bad"


@pytest.mark.unit
class TestPurchaseOrderModel:
    """Tests for PurchaseOrder invariants."""

    def test_total_is_recomputed_from_lines(self):
        order = PurchaseOrder.model_validate({
            "total": 999999,
            "items": [
                {"name": "a", "quantity": 2, "price": 3.5},
                {"name": "b", "quantity": 1, "price": 10, "type": "Service"},
            ],
        })
        assert order.total == pytest.approx(17.0)

    def test_defaults(self):
        order = PurchaseOrder()
        assert order.status == OrderStatus.PENDING_APPROVAL
        assert order.items == []
        assert order.total == 0.0
        assert order.date.tzinfo is not None

    def test_line_quantity_must_be_positive(self):
        with pytest.raises(ValidationError):
            PurchaseOrder(items=[{"name": "a", "quantity": 0, "price": 1}])

    def test_material_lines_need_item_reference(self):
        order = PurchaseOrder(items=[
            {"item_id": "I1", "name": "a", "quantity": 1, "price": 1},
            {"item_id": None, "name": "ad hoc", "quantity": 1, "price": 1},
            {"item_id": "I2", "name": "labour", "quantity": 1, "price": 1, "type": "Service"},
        ])
        assert [line.item_id for line in order.material_lines] == ["I1"]

    def test_has_been_received(self):
        order = PurchaseOrder(status_history=[StatusHistoryEntry(status=OrderStatus.APPROVED)])
        assert not order.has_been_received()
        order.status_history.append(StatusHistoryEntry(status=OrderStatus.PARTIALLY_RECEIVED))
        assert order.has_been_received()
