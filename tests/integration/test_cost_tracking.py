"""
Integration tests for project cost tracking and store-backed price reports.
"""
import pytest

from procurement.analytics import PriceIntelligence, ProjectCostTracker
from procurement.errors import ValidationFailure
from procurement.store import LEDGER, TRAVEL_REPORTS


@pytest.fixture
def tracker(seeded_store, test_config):
    return ProjectCostTracker(seeded_store, test_config)


@pytest.fixture
def prices(seeded_store, test_config):
    return PriceIntelligence(seeded_store, test_config)


@pytest.mark.integration
class TestProjectConsumption:
    """ProjectCostTracker.get_project_consumption."""

    def test_unknown_project(self, tracker):
        assert tracker.get_project_consumption("PRJ-404") is None

    def test_totals(self, tracker, seeded_store, make_order, make_entry):
        make_entry(quantity=10, unit_price=2.0, date="2024-01-10T00:00:00Z")
        make_entry(item_id="ITEM-2", item_name="Steel bolt M12", quantity=100, unit_price=0.5,
                   supplier_name="Global Materials", supplier_id="SUP-002", date="2024-02-10T00:00:00Z")
        make_entry(project_id="PRJ-2", project_name="Harbour Bridge", quantity=1, unit_price=999.0)

        make_order(status="Approved")            # 100.0
        make_order(status="Sent to Supplier")    # 100.0
        make_order(status="Pending Approval")
        make_order(status="Received")
        make_order(status="Approved", project_id="PRJ-2")

        seeded_store.add(TRAVEL_REPORTS, {"project_id": "PRJ-1", "total": 40.0, "status": "Approved"})
        seeded_store.add(TRAVEL_REPORTS, {"project_id": "PRJ-1", "total": 15.0, "status": "Pending Approval"})
        seeded_store.add(TRAVEL_REPORTS, {"project_id": "PRJ-1", "total": 500.0, "status": "Rejected"})

        report = tracker.get_project_consumption("PRJ-1")
        summary = report.summary

        assert report.project.name == "Metro Line"
        assert summary.materials_received == pytest.approx(70.0)
        assert summary.materials_committed == pytest.approx(200.0)
        assert summary.travel_approved == pytest.approx(40.0)
        assert summary.travel_pending == pytest.approx(15.0)
        assert summary.total_spent == pytest.approx(110.0)
        assert summary.total_committed == pytest.approx(215.0)
        assert summary.total_projected == pytest.approx(325.0)
        assert summary.budget_used_percent == pytest.approx(3.25)
        assert summary.pending_orders_count == 1
        assert summary.unique_items == 2
        assert summary.unique_suppliers == 2
        assert summary.total_transactions == 2
        assert summary.project_match == "id"

        assert [m.item_id for m in report.top_by_amount] == ["ITEM-2", "ITEM-1"]
        assert [m.month for m in report.monthly_evolution] == ["2024-01", "2024-02"]
        assert {o.status for o in report.committed_orders} == {"Approved", "Sent to Supplier"}

    def test_window_applies_to_ledger_only(self, tracker, make_order, make_entry):
        make_entry(quantity=1, unit_price=10.0, date="2024-01-10T00:00:00Z")
        make_entry(quantity=1, unit_price=20.0, date="2024-03-10T00:00:00Z")
        make_order(status="Approved", date="2023-01-01T00:00:00Z")

        report = tracker.get_project_consumption("PRJ-1", start="2024-03-01", end="2024-03-31")

        assert report.summary.materials_received == pytest.approx(20.0)
        assert report.summary.materials_committed == pytest.approx(100.0)
        assert report.period.start_date.month == 3

    def test_name_fallback_for_legacy_entries(self, tracker, make_entry):
        make_entry(project_id="", project_name="Harbour Bridge", quantity=2, unit_price=5.0)

        report = tracker.get_project_consumption("PRJ-2")

        assert report.summary.materials_received == pytest.approx(10.0)
        assert report.summary.project_match == "name"
        assert report.summary.budget_used_percent is None

    def test_legacy_orders_match_by_name(self, tracker, make_order):
        make_order(status="Approved", project_id="", project_name="Harbour Bridge")
        assert tracker.get_project_consumption("PRJ-2").summary.materials_committed == pytest.approx(100.0)

    def test_empty_project(self, tracker):
        report = tracker.get_project_consumption("PRJ-2")
        assert report.summary.total_projected == 0
        assert report.materials == []
        assert report.summary.project_match == "none"


@pytest.mark.integration
class TestProjectRankings:
    """ProjectCostTracker.get_project_rankings."""

    def test_sorted_by_projection(self, tracker, seeded_store, make_order, make_entry):
        make_entry(quantity=1, unit_price=10.0)
        make_order(status="Approved", project_id="PRJ-2")
        seeded_store.add(TRAVEL_REPORTS, {"project_id": "PRJ-1", "total": 5.0, "status": "Approved"})

        rankings = tracker.get_project_rankings()

        assert [r.id for r in rankings] == ["PRJ-2", "PRJ-1"]
        assert rankings[0].total_projected == pytest.approx(100.0)
        assert rankings[1].total_spent == pytest.approx(15.0)
        assert rankings[1].item_count == 1


@pytest.mark.integration
class TestStoredPriceReports:
    """PriceIntelligence against the store."""

    def test_item_metrics(self, prices, make_entry):
        make_entry(unit_price=2.0, quantity=10, date="2024-01-01T00:00:00Z")
        make_entry(unit_price=3.0, quantity=10, date="2024-02-01T00:00:00Z")

        history = prices.get_item_price_metrics("ITEM-1")

        assert history.item.sku == "CAB-001"
        assert [e.unit_price for e in history.history] == [2.0, 3.0]
        assert history.metrics.avg_price == pytest.approx(2.5)
        assert history.metrics.last_price == 3.0

    def test_item_without_history(self, prices):
        history = prices.get_item_price_metrics("ITEM-3")
        assert history.metrics is None
        assert history.history == []

    def test_variation_report_uses_live_statuses(self, prices, make_order, make_entry):
        order_id = make_order(status="Received")
        make_entry(order_id=order_id, unit_price=2.0, date="2024-03-01T00:00:00Z")
        make_entry(order_id="deleted-order", unit_price=3.0, date="2024-03-05T00:00:00Z")
        make_entry(unit_price=9.0, date="2023-01-01T00:00:00Z")

        report = prices.get_price_variation_report(start="2024-01-01", end="2024-12-31")

        [item] = report.items
        assert item.min_price == 2.0 and item.max_price == 3.0
        assert [p.order_status for p in item.purchases] == ["Unknown", "Received"]

    def test_top_variations(self, prices, make_entry):
        make_entry(unit_price=1.0)
        make_entry(unit_price=3.0)
        make_entry(item_id="ITEM-2", unit_price=1.0)
        make_entry(item_id="ITEM-2", unit_price=1.1)
        make_entry(item_id="ITEM-3", unit_price=50.0)

        top = prices.get_top_price_variations(limit=5)
        assert [t.item_id for t in top] == ["ITEM-1", "ITEM-2"]

    def test_items_by_supplier_falls_back_to_name(self, prices, make_entry):
        make_entry(supplier_id="", supplier_name="Corner Hardware", unit_price=2.0)
        make_entry(supplier_id="", supplier_name="Corner Hardware", item_id="ITEM-2", unit_price=1.0)
        make_entry(supplier_id="", supplier_name="Corner Hardware", item_id="ITEM-2", unit_price=1.0)

        rows = prices.get_items_by_supplier("SUP-999", "Corner Hardware")

        assert [r.item_id for r in rows] == ["ITEM-2", "ITEM-1"]
        assert rows[0].name == "Steel bolt M12"

    def test_items_by_project_sorted_by_spend(self, prices, make_entry):
        make_entry(quantity=1, unit_price=5.0)
        make_entry(item_id="ITEM-2", quantity=10, unit_price=5.0)

        rows = prices.get_items_by_project("PRJ-1")
        assert [r.item_id for r in rows] == ["ITEM-2", "ITEM-1"]


@pytest.mark.integration
class TestSearch:
    """PriceIntelligence.search."""

    def test_short_queries_return_nothing(self, prices):
        assert prices.search("c") == []
        assert prices.search("  ") == []

    def test_items_come_before_suppliers_and_projects(self, prices, make_entry):
        make_entry(supplier_name="Metro Cables", supplier_id="SUP-9", project_name="Metro Line")

        hits = prices.search("metro")

        assert [h.type for h in hits] == ["supplier", "project"]
        assert hits[1].id == "PRJ-1"

    def test_substring_and_sku_matches(self, prices, make_entry):
        make_entry()
        hits = prices.search("cab-001")
        assert hits[0].type == "item"
        assert hits[0].id == "ITEM-1"
        assert hits[0].score == 100
        assert hits[0].item_count == 1

    def test_fuzzy_match(self, prices):
        hits = prices.search("coper cable")
        assert any(h.id == "ITEM-1" for h in hits)

    def test_limit(self, prices):
        assert len(prices.search("steel bolt", limit=1)) <= 1


@pytest.mark.integration
class TestReportInputs:
    """Malformed windows and unreadable ledger records."""

    def test_bad_consumption_window(self, tracker):
        with pytest.raises(ValidationFailure, match="start"):
            tracker.get_project_consumption("PRJ-1", start="not-a-date")

    def test_bad_variation_window(self, prices):
        with pytest.raises(ValidationFailure, match="end"):
            prices.get_price_variation_report(end="someday")

    def test_unreadable_entries_are_skipped(self, tracker, prices, seeded_store, make_entry):
        make_entry(quantity=2, unit_price=5.0)
        seeded_store.add(LEDGER, {"item_id": "ITEM-1", "project_id": "PRJ-1", "quantity": "lots"})

        assert tracker.get_project_consumption("PRJ-1").summary.materials_received == pytest.approx(10.0)
        assert prices.get_item_price_metrics("ITEM-1").metrics.total_purchases == 1
