"""
Ledger and project-spend integrity checks.

Read-only. Reports, never repairs: duplicates and orphans need a human
decision, and spent drift is fixed with TravelExpenseService.recompute_spent.
"""
import logging
import math
from collections import defaultdict

from models.result import IntegrityIssue, IntegrityReport
from .store import LEDGER, ORDERS, PROJECTS, SPEND_ADJUSTMENTS, DocumentStore

logger = logging.getLogger(__name__)

# Absolute tolerance for money comparisons
TOLERANCE = 0.005


class LedgerAuditor:
    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def audit(self) -> IntegrityReport:
        entries = self.store.query(LEDGER)
        projects = self.store.query(PROJECTS)
        report = IntegrityReport(entries_checked=len(entries), projects_checked=len(projects))

        self._check_keys(entries, report)
        self._check_orphans(entries, report)
        self._check_totals(entries, report)
        self._check_spent(projects, report)

        if report.ok:
            logger.info(
                "Audit clean: %d entries, %d projects", report.entries_checked, report.projects_checked,
            )
        else:
            logger.warning("Audit found %d issue(s)", len(report.issues))
        return report

    def _check_keys(self, entries: list[dict], report: IntegrityReport) -> None:
        by_key: dict[tuple, list[str]] = defaultdict(list)
        for entry in entries:
            by_key[(entry.get("order_id"), entry.get("item_id"))].append(entry["id"])
        for (order_id, item_id), ids in by_key.items():
            if len(ids) > 1:
                report.issues.append(IntegrityIssue(
                    kind="duplicate_key",
                    description=f"{len(ids)} entries for order {order_id}, item {item_id}: {', '.join(ids)}",
                    record_id=ids[0],
                ))

    def _check_orphans(self, entries: list[dict], report: IntegrityReport) -> None:
        order_ids = {e.get("order_id") for e in entries if e.get("order_id")}
        existing = {r["id"] for r in self.store.query_in(ORDERS, "id", order_ids)}
        for entry in entries:
            if entry.get("order_id") not in existing:
                report.issues.append(IntegrityIssue(
                    kind="orphan_entry",
                    description=f"Entry refers to missing order {entry.get('order_id')!r}",
                    record_id=entry["id"],
                ))

    def _check_totals(self, entries: list[dict], report: IntegrityReport) -> None:
        for entry in entries:
            quantity = float(entry.get("quantity") or 0)
            unit_price = float(entry.get("unit_price") or 0)
            total = float(entry.get("total_price") or 0)
            if not math.isclose(total, quantity * unit_price, abs_tol=TOLERANCE):
                report.issues.append(IntegrityIssue(
                    kind="total_mismatch",
                    description=(
                        f"total_price {total:.2f} != {quantity:g} x {unit_price:.2f}"
                    ),
                    record_id=entry["id"],
                ))

    def _check_spent(self, projects: list[dict], report: IntegrityReport) -> None:
        replayed: dict[str, float] = defaultdict(float)
        for adjustment in self.store.query(SPEND_ADJUSTMENTS):
            replayed[adjustment.get("project_id", "")] += float(adjustment.get("amount") or 0)
        for project in projects:
            spent = float(project.get("spent") or 0)
            expected = replayed.get(project["id"], 0.0)
            if not math.isclose(spent, expected, abs_tol=TOLERANCE):
                report.issues.append(IntegrityIssue(
                    kind="spent_drift",
                    description=(
                        f"Project {project.get('name', project['id'])} spent {spent:.2f}, "
                        f"adjustments sum to {expected:.2f}"
                    ),
                    record_id=project["id"],
                ))
