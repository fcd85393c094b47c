"""
Travel-expense approval and project travel spend.

A project's ``spent`` counter moves only through ``post_spend_adjustment``,
which records a signed SpendAdjustment and applies it to the project in the
caller's transaction. ``recompute_spent`` can therefore rebuild the counter
from the adjustment records at any time.

  approve  Pending Approval -> Approved    +total
  reject   Pending Approval -> Rejected    no spend effect
  cancel   Approved         -> Cancelled   -total
  delete   any status                      -total when Approved

Bulk deletion runs each report in its own transaction, so one failure does
not hold back the rest.
"""
import logging
from typing import Callable, Iterable, Optional

from config import Config
from models.project import SpendAdjustment, TravelReport, TravelStatus
from models.result import BulkDeleteResult, OperationResult
from models.timestamps import utc_now
from .errors import NotFound, ValidationFailure, failure_result
from .store import PROJECTS, SPEND_ADJUSTMENTS, TRAVEL_REPORTS, DocumentStore, Transaction, dump, where

logger = logging.getLogger(__name__)


def post_spend_adjustment(
    txn: Transaction,
    project_id: str,
    report_id: str,
    amount: float,
    reason: str,
) -> str:
    """Record a signed change to a project's travel spend and apply it. Returns the adjustment id."""
    record = txn.get(PROJECTS, project_id)
    if record is None:
        raise NotFound("Project", project_id)
    adjustment = SpendAdjustment(
        project_id=project_id, report_id=report_id, amount=amount, reason=reason,
    )
    adjustment_id = txn.add(SPEND_ADJUSTMENTS, dump(adjustment))
    spent = float(record.get("spent") or 0) + amount
    txn.update(PROJECTS, project_id, {"spent": spent})
    logger.debug(
        "Project %s spent %+.2f (%s, report %s) -> %.2f",
        project_id, amount, reason, report_id, spent,
    )
    return adjustment_id


class TravelExpenseService:
    def __init__(self, store: DocumentStore, config: Optional[Config] = None) -> None:
        self.store = store
        self.config = config or Config()

    def approve_report(self, report_id: str, approver: str) -> OperationResult:
        def _approve(txn: Transaction, report: TravelReport) -> None:
            _require_status(report, TravelStatus.PENDING_APPROVAL, "approved")
            post_spend_adjustment(txn, report.project_id, report_id, report.total, "approve")
            txn.update(TRAVEL_REPORTS, report_id, {
                "status": TravelStatus.APPROVED.value,
                "approved_by": approver,
                "decided_at": utc_now().isoformat(),
            })

        return self._run(report_id, _approve, "approved")

    def reject_report(self, report_id: str, approver: str, reason: str) -> OperationResult:
        def _reject(txn: Transaction, report: TravelReport) -> None:
            _require_status(report, TravelStatus.PENDING_APPROVAL, "rejected")
            self._require_reason(reason)
            txn.update(TRAVEL_REPORTS, report_id, {
                "status": TravelStatus.REJECTED.value,
                "approved_by": approver,
                "notes": _with_note(report.notes, f"Rejected: {reason.strip()}"),
                "decided_at": utc_now().isoformat(),
            })

        return self._run(report_id, _reject, "rejected")

    def cancel_report(self, report_id: str, approver: str, reason: str) -> OperationResult:
        def _cancel(txn: Transaction, report: TravelReport) -> None:
            _require_status(report, TravelStatus.APPROVED, "cancelled")
            self._require_reason(reason)
            post_spend_adjustment(txn, report.project_id, report_id, -report.total, "cancel")
            txn.update(TRAVEL_REPORTS, report_id, {
                "status": TravelStatus.CANCELLED.value,
                "notes": _with_note(report.notes, f"Cancelled by {approver}: {reason.strip()}"),
                "decided_at": utc_now().isoformat(),
            })

        return self._run(report_id, _cancel, "cancelled")

    def delete_report(self, report_id: str) -> OperationResult:
        return self._run(report_id, _delete, "deleted")

    def delete_reports(self, report_ids: Iterable[str]) -> BulkDeleteResult:
        """
        Delete several reports, reversing the spend of approved ones.

        Reports that are missing or fail are listed in ``errors`` and the
        rest are still deleted. The result is a failure only when nothing
        was deleted.
        """
        ids = list(dict.fromkeys(report_ids))
        if not ids:
            return BulkDeleteResult(
                success=False,
                message="No travel report ids given",
                error="validation_failure",
            )

        deleted = 0
        refunded = 0.0
        errors: list[str] = []
        first_failure: Optional[OperationResult] = None
        for report_id in ids:
            try:
                report = self._transact(report_id, _delete)
            except Exception as exc:
                failure = failure_result(exc, id=report_id)
                first_failure = first_failure or failure
                errors.append(failure.message)
                continue
            deleted += 1
            if report.status == TravelStatus.APPROVED:
                refunded += report.total

        message = f"{deleted} of {len(ids)} travel reports deleted"
        if refunded:
            message += f"; {refunded:.2f} taken off project spend"
        logger.info("Bulk travel delete: %s (%d errors)", message, len(errors))
        return BulkDeleteResult(
            success=deleted > 0,
            message=message,
            error=None if deleted else first_failure.error,
            deleted=deleted,
            total_refunded=refunded,
            errors=errors,
        )

    def recompute_spent(self, project_id: str) -> OperationResult:
        """Reset a project's spent counter to the sum of its adjustments."""
        def _recompute(txn: Transaction) -> float:
            if txn.get(PROJECTS, project_id) is None:
                raise NotFound("Project", project_id)
            adjustments = txn.query(SPEND_ADJUSTMENTS, where("project_id", "==", project_id))
            spent = sum(float(a.get("amount") or 0) for a in adjustments)
            txn.update(PROJECTS, project_id, {"spent": spent})
            return spent

        try:
            spent = self.store.run_transaction(_recompute)
        except Exception as exc:
            return failure_result(exc, id=project_id)
        logger.info("Project %s spent recomputed: %.2f", project_id, spent)
        return OperationResult(success=True, message=f"Project spent set to {spent:.2f}", id=project_id)

    def _transact(
        self,
        report_id: str,
        action: Callable[[Transaction, TravelReport], None],
    ) -> TravelReport:
        def _txn(txn: Transaction) -> TravelReport:
            record = txn.get(TRAVEL_REPORTS, report_id)
            if record is None:
                raise NotFound("Travel report", report_id)
            report = TravelReport.model_validate(record)
            action(txn, report)
            return report

        return self.store.run_transaction(_txn)

    def _run(
        self,
        report_id: str,
        action: Callable[[Transaction, TravelReport], None],
        verb: str,
    ) -> OperationResult:
        try:
            report = self._transact(report_id, action)
        except Exception as exc:
            return failure_result(exc, id=report_id)
        label = report.code or report_id
        logger.info("Travel report %s %s (project %s, total=%.2f)", label, verb, report.project_id, report.total)
        return OperationResult(success=True, message=f"Travel report {label} {verb}", id=report_id)

    def _require_reason(self, reason: Optional[str]) -> None:
        if len((reason or "").strip()) < self.config.min_reason_length:
            raise ValidationFailure(
                f"A reason of at least {self.config.min_reason_length} characters is required"
            )


def _delete(txn: Transaction, report: TravelReport) -> None:
    if report.status == TravelStatus.APPROVED:
        post_spend_adjustment(txn, report.project_id, report.id, -report.total, "delete")
    txn.delete(TRAVEL_REPORTS, report.id)


def _require_status(report: TravelReport, expected: TravelStatus, verb: str) -> None:
    if report.status != expected:
        raise ValidationFailure(
            f"Travel report {report.code or report.id} is '{report.status.value}' "
            f"and cannot be {verb}"
        )


def _with_note(notes: Optional[str], addition: str) -> str:
    return f"{notes}\n{addition}" if notes else addition
