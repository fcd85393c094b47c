"""
Aggregation engine: price intelligence and project cost tracking.

Read-only. Every figure is computed on request from ledger entries and live
orders; nothing is cached or written back. The module-level functions are
pure and work on already-loaded ledger entries; ``PriceIntelligence`` and
``ProjectCostTracker`` load the records and call them.

Averages are quantity-weighted (total spent / total quantity). Every ratio
goes through ``_ratio`` so empty or zero-quantity inputs give 0, never NaN or
infinity.
"""
import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import ValidationError
from rapidfuzz import fuzz

from config import Config
from models.inventory import InventoryItem
from models.ledger import LedgerEntry
from models.project import Project, TravelReport, TravelStatus
from models.purchase_order import COMMITTED_STATUSES, OrderStatus, PurchaseOrder
from models.report import (
    CommittedOrder, ConsumptionSummary, ItemPriceHistory, ItemPurchaseSummary,
    LastPurchase, MaterialConsumption, MonthlySpend, PriceMetrics, PriceVariationItem,
    PriceVariationReport, ProjectConsumptionReport, ProjectRanking, ProjectRef,
    PurchaseDetail, ReportPeriod, SearchHit, SupplierPriceComparison, TopPriceVariation,
)
from models.timestamps import month_key, to_instant, utc_now
from .errors import ValidationFailure
from .resolvers import TwoStageResolver
from .store import (
    INVENTORY, LEDGER, ORDERS, PROJECTS, TRAVEL_REPORTS, DocumentStore, Filter, where,
)

logger = logging.getLogger(__name__)

UNKNOWN_STATUS = "Unknown"


# ----------------------------------------------------------------------
# Pure computations
# ----------------------------------------------------------------------

def _ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    value = numerator / denominator
    return value if math.isfinite(value) else 0.0


def chronological(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """Entries in ascending date order; equal dates keep their original order."""
    return sorted(entries, key=lambda e: e.date)


def group_by_item(entries: Iterable[LedgerEntry]) -> dict[str, list[LedgerEntry]]:
    groups: dict[str, list[LedgerEntry]] = defaultdict(list)
    for entry in entries:
        groups[entry.item_id].append(entry)
    return groups


def price_metrics(entries: list[LedgerEntry]) -> Optional[PriceMetrics]:
    """Min/max/weighted-average price metrics, or None for an empty history."""
    if not entries:
        return None
    history = chronological(entries)
    prices = [e.unit_price for e in history]
    total_quantity = sum(e.quantity for e in history)
    total_spent = sum(e.total_price for e in history)
    avg_price = _ratio(total_spent, total_quantity)
    min_price, max_price = min(prices), max(prices)
    return PriceMetrics(
        min_price=min_price,
        max_price=max_price,
        avg_price=avg_price,
        total_purchases=len(history),
        total_quantity=total_quantity,
        total_spent=total_spent,
        price_variation=_ratio(max_price - min_price, avg_price) * 100,
        last_price=history[-1].unit_price,
        last_purchase_date=history[-1].date,
    )


def supplier_comparison(entries: list[LedgerEntry]) -> list[SupplierPriceComparison]:
    """Per-supplier metrics for one item, cheapest average first."""
    groups: dict[str, list[LedgerEntry]] = defaultdict(list)
    for entry in entries:
        # Entries whose supplier name never matched the master list have no id
        groups[entry.supplier_id or entry.supplier_name].append(entry)

    rows = []
    for group in groups.values():
        metrics = price_metrics(group)
        first = group[0]
        rows.append(SupplierPriceComparison(
            supplier_id=first.supplier_id,
            supplier_name=first.supplier_name,
            avg_price=metrics.avg_price,
            min_price=metrics.min_price,
            max_price=metrics.max_price,
            last_price=metrics.last_price,
            purchase_count=metrics.total_purchases,
            total_quantity=metrics.total_quantity,
        ))
    return sorted(rows, key=lambda r: r.avg_price)


def variation_item(
    entries: list[LedgerEntry],
    order_statuses: dict[str, str],
) -> Optional[PriceVariationItem]:
    """
    Variation analysis for one item's purchases.

    Returns None unless the item was bought at two or more distinct positive
    prices. ``impact`` is what was paid above the cheapest price:
    sum of (price - min) * quantity over the purchases priced above it.
    """
    positive = {e.unit_price for e in entries if e.unit_price > 0}
    if len(positive) < 2:
        return None

    history = chronological(entries)
    min_price, max_price = min(positive), max(positive)
    total_quantity = sum(e.quantity for e in history)
    total_amount = sum(e.total_price for e in history)
    impact = sum(
        (e.unit_price - min_price) * e.quantity for e in history if e.unit_price > min_price
    )
    suppliers = list(dict.fromkeys(e.supplier_name for e in history if e.supplier_name))
    last = history[-1]

    purchases = [
        PurchaseDetail(
            entry_id=e.id,
            date=e.date,
            supplier_id=e.supplier_id,
            supplier_name=e.supplier_name,
            order_id=e.order_id,
            order_number=e.order_number,
            order_status=order_statuses.get(e.order_id, UNKNOWN_STATUS),
            quantity=e.quantity,
            unit_price=e.unit_price,
            total_price=e.total_price,
            project_id=e.project_id,
            project_name=e.project_name,
        )
        for e in reversed(history)
    ]

    return PriceVariationItem(
        item_id=last.item_id,
        item_name=last.item_name,
        item_sku=last.item_sku,
        unique_prices=len(positive),
        min_price=min_price,
        max_price=max_price,
        variation_percent=_ratio(max_price - min_price, min_price) * 100,
        weighted_avg_price=_ratio(total_amount, total_quantity),
        total_quantity=total_quantity,
        total_amount=total_amount,
        suppliers_count=len(suppliers),
        suppliers=suppliers,
        last_price=last.unit_price,
        last_supplier=last.supplier_name,
        last_date=last.date,
        impact=impact,
        purchases=purchases,
    )


def variation_report(
    items: Iterable[PriceVariationItem],
    min_variation_pct: float = 0.0,
    min_impact: float = 0.0,
) -> PriceVariationReport:
    kept = [
        i for i in items
        if i.variation_percent >= min_variation_pct and i.impact >= min_impact
    ]
    kept.sort(key=lambda i: i.impact, reverse=True)
    return PriceVariationReport(
        items=kept,
        total_items=len(kept),
        total_impact=sum(i.impact for i in kept),
        avg_variation=_ratio(sum(i.variation_percent for i in kept), len(kept)),
    )


def material_consumption(entries: list[LedgerEntry]) -> list[MaterialConsumption]:
    """Per-item consumption rows, largest amount first."""
    rows = []
    for item_id, group in group_by_item(entries).items():
        history = chronological(group)
        prices = [e.unit_price for e in history]
        positive = [p for p in prices if p > 0]
        total_quantity = sum(e.quantity for e in history)
        total_amount = sum(e.total_price for e in history)
        suppliers = list(dict.fromkeys(e.supplier_name for e in history if e.supplier_name))
        last = history[-1]
        rows.append(MaterialConsumption(
            item_id=item_id,
            item_name=last.item_name,
            item_sku=last.item_sku,
            total_quantity=total_quantity,
            transaction_count=len(history),
            total_amount=total_amount,
            avg_price=_ratio(total_amount, total_quantity),
            min_price=min(positive) if positive else 0.0,
            max_price=max(prices),
            last_purchase=LastPurchase(
                date=last.date,
                supplier=last.supplier_name,
                price=last.unit_price,
                order_number=last.order_number,
            ),
            suppliers=suppliers,
            supplier_count=len(suppliers),
        ))
    rows.sort(key=lambda r: r.total_amount, reverse=True)
    return rows


def monthly_evolution(entries: Iterable[LedgerEntry]) -> list[MonthlySpend]:
    amounts: dict[str, float] = defaultdict(float)
    for entry in entries:
        amounts[month_key(entry.date)] += entry.total_price
    return [MonthlySpend(month=m, amount=amounts[m]) for m in sorted(amounts)]


def purchase_summaries(
    entries: list[LedgerEntry],
    inventory: dict[str, InventoryItem],
) -> list[ItemPurchaseSummary]:
    summaries = []
    for item_id, group in group_by_item(entries).items():
        history = chronological(group)
        last = history[-1]
        item = inventory.get(item_id)
        total_spent = sum(e.total_price for e in history)
        summaries.append(ItemPurchaseSummary(
            item_id=item_id,
            sku=item.sku if item else last.item_sku,
            name=item.name if item else last.item_name,
            unit=item.unit if item else last.unit,
            purchase_count=len(history),
            avg_price=_ratio(total_spent, sum(e.quantity for e in history)),
            last_price=last.unit_price,
            last_purchase_date=last.date,
            total_spent=total_spent,
        ))
    return summaries


def _within(instant: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and instant < start:
        return False
    if end is not None and instant > end:
        return False
    return True


def _date_filters(start: Optional[datetime], end: Optional[datetime]) -> list[Filter]:
    filters = []
    if start is not None:
        filters.append(where("date", ">=", start))
    if end is not None:
        filters.append(where("date", "<=", end))
    return filters


def _entries(records: Iterable[dict]) -> list[LedgerEntry]:
    entries = []
    for record in records:
        try:
            entries.append(LedgerEntry.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "Ledger entry %s skipped: unreadable record (%d errors)",
                record.get("id"), exc.error_count(),
            )
    return entries


def _window_bound(value: Any, label: str) -> Optional[datetime]:
    try:
        return to_instant(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"Invalid {label} date: {exc}") from exc


# ----------------------------------------------------------------------
# Price intelligence
# ----------------------------------------------------------------------

class PriceIntelligence:
    def __init__(self, store: DocumentStore, config: Optional[Config] = None) -> None:
        self.store = store
        self.config = config or Config()

    def _item_entries(self, item_id: str) -> list[LedgerEntry]:
        return _entries(self.store.query(LEDGER, where("item_id", "==", item_id)))

    def _inventory(self, item_ids: Iterable[str]) -> dict[str, InventoryItem]:
        records = self.store.query_in(INVENTORY, "id", item_ids)
        return {r["id"]: InventoryItem.model_validate(r) for r in records}

    def get_item_price_metrics(self, item_id: str) -> ItemPriceHistory:
        entries = self._item_entries(item_id)
        record = self.store.get(INVENTORY, item_id)
        return ItemPriceHistory(
            history=chronological(entries),
            metrics=price_metrics(entries),
            item=InventoryItem.model_validate(record) if record else None,
        )

    def get_supplier_comparison(self, item_id: str) -> list[SupplierPriceComparison]:
        return supplier_comparison(self._item_entries(item_id))

    def get_price_variation_report(
        self,
        start: Any = None,
        end: Any = None,
        min_variation_pct: float = 0.0,
        min_impact: float = 0.0,
    ) -> PriceVariationReport:
        window = _date_filters(_window_bound(start, "start"), _window_bound(end, "end"))
        entries = _entries(self.store.query(LEDGER, *window))
        order_ids = {e.order_id for e in entries}
        statuses = {
            r["id"]: r.get("status", UNKNOWN_STATUS)
            for r in self.store.query_in(ORDERS, "id", order_ids)
        }
        items = filter(None, (
            variation_item(group, statuses) for group in group_by_item(entries).values()
        ))
        report = variation_report(items, min_variation_pct, min_impact)
        logger.debug(
            "Price variation report: %d entries, %d items kept", len(entries), report.total_items,
        )
        return report

    def get_top_price_variations(self, limit: int = 10) -> list[TopPriceVariation]:
        rows = []
        for item_id, group in group_by_item(_entries(self.store.query(LEDGER))).items():
            if len(group) < 2:
                continue
            metrics = price_metrics(group)
            last = chronological(group)[-1]
            rows.append(TopPriceVariation(
                item_id=item_id,
                item_name=last.item_name,
                item_sku=last.item_sku,
                price_variation=metrics.price_variation,
                last_price=metrics.last_price,
                avg_price=metrics.avg_price,
                purchase_count=metrics.total_purchases,
            ))
        rows.sort(key=lambda r: r.price_variation, reverse=True)
        return rows[:limit]

    def get_items_by_supplier(
        self, supplier_id: str, supplier_name: Optional[str] = None
    ) -> list[ItemPurchaseSummary]:
        resolver = TwoStageResolver(
            "Supplier ledger entries",
            lambda sid: self.store.query(LEDGER, where("supplier_id", "==", sid)) or None,
            lambda name: self.store.query(LEDGER, where("supplier_name", "==", name)) or None,
        )
        entries = _entries(resolver.resolve(supplier_id, supplier_name) or [])
        inventory = self._inventory(e.item_id for e in entries)
        summaries = purchase_summaries(entries, inventory)
        return sorted(summaries, key=lambda s: s.purchase_count, reverse=True)

    def get_items_by_project(
        self, project_id: str, project_name: Optional[str] = None
    ) -> list[ItemPurchaseSummary]:
        resolver = TwoStageResolver(
            "Project ledger entries",
            lambda pid: self.store.query(LEDGER, where("project_id", "==", pid)) or None,
            lambda name: self.store.query(LEDGER, where("project_name", "==", name)) or None,
        )
        entries = _entries(resolver.resolve(project_id, project_name) or [])
        inventory = self._inventory(e.item_id for e in entries)
        summaries = purchase_summaries(entries, inventory)
        return sorted(summaries, key=lambda s: s.total_spent, reverse=True)

    def search(self, query: str, limit: Optional[int] = None) -> list[SearchHit]:
        """
        Search inventory items, and the suppliers and projects seen in the ledger.

        A hit is a case-insensitive substring match (score 100) or a fuzzy
        match at or above search_fuzzy_threshold. Items come first, then
        suppliers, then projects; within a type, best score then most items.
        """
        text = (query or "").strip().lower()
        if len(text) < 2:
            return []
        limit = limit or self.config.search_result_limit

        item_stats: dict[str, list[LedgerEntry]] = defaultdict(list)
        supplier_stats: dict[str, list[LedgerEntry]] = defaultdict(list)
        project_stats: dict[str, list[LedgerEntry]] = defaultdict(list)
        for entry in _entries(self.store.query(LEDGER)):
            item_stats[entry.item_id].append(entry)
            if entry.supplier_name:
                supplier_stats[entry.supplier_id or entry.supplier_name].append(entry)
            if entry.project_name or entry.project_id:
                project_stats[entry.project_name or entry.project_id].append(entry)

        hits: list[SearchHit] = []
        for record in self.store.query(INVENTORY):
            item = InventoryItem.model_validate(record)
            score = max(self._score(text, item.name), self._score(text, item.sku))
            if score:
                history = item_stats.get(item.id, [])
                hits.append(SearchHit(
                    type="item", id=item.id, name=item.name, subtitle=item.sku,
                    item_count=len(history),
                    last_purchase=max((e.date for e in history), default=None),
                    score=score,
                ))

        for key, group in supplier_stats.items():
            name = group[0].supplier_name
            score = self._score(text, name)
            if score:
                hits.append(self._group_hit("supplier", key, name, group, score))

        for name, group in project_stats.items():
            score = self._score(text, name)
            if score:
                # Most recent project id seen under this name
                project_id = next((e.project_id for e in reversed(group) if e.project_id), name)
                hits.append(self._group_hit("project", project_id, name, group, score))

        type_order = {"item": 0, "supplier": 1, "project": 2}
        hits.sort(key=lambda h: (type_order[h.type], -h.score, -h.item_count))
        return hits[:limit]

    def _score(self, text: str, candidate: Optional[str]) -> float:
        if not candidate:
            return 0.0
        lowered = candidate.lower()
        if text in lowered:
            return 100.0
        score = fuzz.partial_ratio(text, lowered)
        return score if score >= self.config.search_fuzzy_threshold else 0.0

    @staticmethod
    def _group_hit(kind: str, hit_id: str, name: str, group: list[LedgerEntry], score: float) -> SearchHit:
        item_count = len({e.item_id for e in group})
        return SearchHit(
            type=kind, id=hit_id, name=name,
            subtitle=f"{item_count} items",
            item_count=item_count,
            last_purchase=max(e.date for e in group),
            score=score,
        )


# ----------------------------------------------------------------------
# Project cost tracking
# ----------------------------------------------------------------------

def _belongs_to(order: PurchaseOrder, project: Project) -> bool:
    """Orders reference projects by id; older ones only by name."""
    if order.project_id:
        return order.project_id == project.id
    return bool(order.project_name) and order.project_name == project.name


class ProjectCostTracker:
    def __init__(self, store: DocumentStore, config: Optional[Config] = None) -> None:
        self.store = store
        self.config = config or Config()

    def get_project_consumption(
        self,
        project_id: str,
        start: Any = None,
        end: Any = None,
    ) -> Optional[ProjectConsumptionReport]:
        """
        Spent / committed / projected cost of one project, or None if it does not exist.

        The optional window applies to ledger entries only; committed orders
        and travel reports are counted as they stand now.
        Raises ValidationFailure when a window bound is not a readable date.
        """
        start_at = _window_bound(start, "start")
        end_at = _window_bound(end, "end") or utc_now()
        record = self.store.get(PROJECTS, project_id)
        if record is None:
            return None
        project = Project.model_validate(record)

        resolver = TwoStageResolver(
            "Project ledger entries",
            lambda pid: self.store.query(LEDGER, where("project_id", "==", pid)) or None,
            lambda name: self.store.query(LEDGER, where("project_name", "==", name)) or None,
        )
        records, match = resolver.resolve_with_stage(project.id, project.name)
        entries = [e for e in _entries(records or []) if _within(e.date, start_at, end_at)]

        orders = [
            o for o in self._orders((*COMMITTED_STATUSES, OrderStatus.PENDING_APPROVAL))
            if _belongs_to(o, project)
        ]
        committed = [o for o in orders if o.status in COMMITTED_STATUSES]
        travel = [
            TravelReport.model_validate(r)
            for r in self.store.query(TRAVEL_REPORTS, where("project_id", "==", project.id))
        ]

        materials = material_consumption(entries)
        limit = self.config.top_materials_limit
        summary = _summary(
            project,
            materials_received=sum(e.total_price for e in entries),
            materials_committed=sum(o.total for o in committed),
            travel=travel,
        )
        summary.unique_items = len(materials)
        summary.unique_suppliers = len({e.supplier_name for e in entries if e.supplier_name})
        summary.total_transactions = len(entries)
        summary.pending_orders_count = sum(
            1 for o in orders if o.status == OrderStatus.PENDING_APPROVAL
        )
        summary.project_match = match

        return ProjectConsumptionReport(
            project=ProjectRef(
                id=project.id, name=project.name, client=project.client, budget=project.budget,
            ),
            period=ReportPeriod(start_date=start_at, end_date=end_at),
            summary=summary,
            materials=materials,
            top_by_amount=materials[:limit],
            top_by_quantity=sorted(materials, key=lambda m: m.total_quantity, reverse=True)[:limit],
            monthly_evolution=monthly_evolution(entries),
            committed_orders=[
                CommittedOrder(
                    order_id=o.id,
                    order_number=o.order_number or "",
                    supplier_name=o.supplier_name,
                    status=o.status.value,
                    total=o.total,
                    date=o.date,
                )
                for o in committed
            ],
        )

    def get_project_rankings(self) -> list[ProjectRanking]:
        """Spent / committed / projected totals for every project, largest projection first."""
        projects = [Project.model_validate(r) for r in self.store.query(PROJECTS)]
        entries = _entries(self.store.query(LEDGER))
        orders = self._orders(COMMITTED_STATUSES)
        travel = [TravelReport.model_validate(r) for r in self.store.query(TRAVEL_REPORTS)]

        by_project_id: dict[str, list[LedgerEntry]] = defaultdict(list)
        by_project_name: dict[str, list[LedgerEntry]] = defaultdict(list)
        for entry in entries:
            if entry.project_id:
                by_project_id[entry.project_id].append(entry)
            if entry.project_name:
                by_project_name[entry.project_name].append(entry)
        travel_by_project: dict[str, list[TravelReport]] = defaultdict(list)
        for report in travel:
            travel_by_project[report.project_id].append(report)

        rankings = []
        for project in projects:
            project_entries = by_project_id.get(project.id) or by_project_name.get(project.name, [])
            summary = _summary(
                project,
                materials_received=sum(e.total_price for e in project_entries),
                materials_committed=sum(o.total for o in orders if _belongs_to(o, project)),
                travel=travel_by_project.get(project.id, []),
            )
            rankings.append(ProjectRanking(
                id=project.id,
                name=project.name,
                client=project.client,
                budget=project.budget,
                materials_received=summary.materials_received,
                materials_committed=summary.materials_committed,
                travel_approved=summary.travel_approved,
                travel_pending=summary.travel_pending,
                total_spent=summary.total_spent,
                total_committed=summary.total_committed,
                total_projected=summary.total_projected,
                item_count=len({e.item_id for e in project_entries}),
            ))
        rankings.sort(key=lambda r: r.total_projected, reverse=True)
        return rankings

    def _orders(self, statuses: Iterable[OrderStatus]) -> list[PurchaseOrder]:
        records = self.store.query(ORDERS, where("status", "in", [s.value for s in statuses]))
        return [PurchaseOrder.model_validate(r) for r in records]


def _summary(
    project: Project,
    materials_received: float,
    materials_committed: float,
    travel: Iterable[TravelReport],
) -> ConsumptionSummary:
    travel = list(travel)
    travel_approved = sum(t.total for t in travel if t.status == TravelStatus.APPROVED)
    travel_pending = sum(t.total for t in travel if t.status == TravelStatus.PENDING_APPROVAL)
    total_spent = materials_received + travel_approved
    total_committed = materials_committed + travel_pending
    total_projected = total_spent + total_committed
    return ConsumptionSummary(
        materials_received=materials_received,
        materials_committed=materials_committed,
        travel_approved=travel_approved,
        travel_pending=travel_pending,
        total_spent=total_spent,
        total_committed=total_committed,
        total_projected=total_projected,
        budget_used_percent=(
            _ratio(total_projected, project.budget) * 100 if project.budget else None
        ),
    )
