"""
Procurement Dashboard: FastAPI backend.

JSON API over the procurement core for the dashboard front end. Every
write goes through the core services; failures come back from them as
result objects and are mapped to HTTP status codes here:

  not_found              404
  invalid_transition     409
  validation_failure     422
  duplicate_ledger_key   500
  upstream_write_failure 502

Endpoints
---------
  GET    /api/health                         liveness probe
  POST   /api/orders                         create an order (Pending Approval)
  GET    /api/orders/{order_id}              one order
  DELETE /api/orders/{order_id}              delete (only before it reaches the supplier)
  GET    /api/orders/{order_id}/transitions  statuses the order can move to
  POST   /api/orders/{order_id}/transition   request a status change
  POST   /api/ledger/reconcile               backfill missing ledger entries
  GET    /api/items/{item_id}/prices         price history and metrics
  GET    /api/items/{item_id}/suppliers      per-supplier price comparison
  GET    /api/reports/price-variations       variation / impact report
  GET    /api/projects/rankings              all projects by projected cost
  GET    /api/projects/{project_id}/consumption
  GET    /api/search?q=                      items, suppliers and projects
  POST   /api/travel/{report_id}/approve|reject|cancel
  POST   /api/travel/delete                   delete several reports
  GET    /api/audit                          ledger integrity report
"""
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from config import Config
from dashboard.models import OrderDraft, TransitionRequest, TravelBulkDelete, TravelDecision
from models.result import OperationResult
from procurement.analytics import PriceIntelligence, ProjectCostTracker
from procurement.auditor import LedgerAuditor
from procurement.errors import ValidationFailure
from procurement.orders import OrderService
from procurement.reconciler import LedgerReconciler
from procurement.store import DocumentStore
from procurement.travel import TravelExpenseService
from procurement.workflow import OrderStateMachine, allowed_targets

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    "not_found":              404,
    "invalid_transition":     409,
    "validation_failure":     422,
    "duplicate_ledger_key":   500,
    "upstream_write_failure": 502,
}

# ---------------------------------------------------------------------------
# Store (lazy: opened on first request so import never touches the disk)
# ---------------------------------------------------------------------------
_config: Optional[Config] = None
_store: Optional[DocumentStore] = None


def get_config() -> Config:
    global _config
    if _config is None:
        _config = Config()
    return _config


def get_store() -> DocumentStore:
    global _store
    if _store is None:
        _store = DocumentStore.from_config(get_config())
    return _store


def _checked(result: OperationResult) -> dict:
    """Return the result as JSON, or raise the HTTP error matching its failure kind."""
    if not result.success:
        raise HTTPException(STATUS_BY_ERROR.get(result.error, 500), result.message)
    return result.model_dump(mode="json")


app = FastAPI(title="Procurement Dashboard", docs_url=None, redoc_url=None)


# ── Routes ───────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health():
    config = get_config()
    return {
        "status": "ok",
        "db_path": str(config.db_path),
        "db_exists": config.db_path.exists(),
    }


# ── Orders ───────────────────────────────────────────────────────────────────

@app.post("/api/orders", status_code=201)
def create_order(body: OrderDraft):
    service = OrderService(get_store(), get_config())
    return _checked(service.create_order(body.model_dump(exclude_none=True)))


@app.get("/api/orders/{order_id}")
def get_order(order_id: str):
    order = OrderService(get_store(), get_config()).get_order(order_id)
    if order is None:
        raise HTTPException(404, f"Order not found: {order_id}")
    return order.model_dump(mode="json", exclude={"approval_code"})


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str):
    return _checked(OrderService(get_store(), get_config()).delete_order(order_id))


@app.get("/api/orders/{order_id}/transitions")
def order_transitions(order_id: str):
    order = OrderService(get_store(), get_config()).get_order(order_id)
    if order is None:
        raise HTTPException(404, f"Order not found: {order_id}")
    return {
        "order_id": order_id,
        "status": order.status.value,
        "allowed": sorted(s.value for s in allowed_targets(order.status)),
    }


@app.post("/api/orders/{order_id}/transition")
def transition_order(order_id: str, body: TransitionRequest):
    machine = OrderStateMachine(get_store(), get_config())
    result = machine.request_transition(
        order_id,
        body.status,
        approval_token=body.approval_code,
        comment=body.comment,
        received_lines=body.received_lines,
        location_id=body.location_id,
    )
    return _checked(result)


# ── Ledger ───────────────────────────────────────────────────────────────────

@app.post("/api/ledger/reconcile")
def reconcile_ledger():
    summary = LedgerReconciler(get_store(), get_config()).reconcile_all()
    if not summary.success:
        # Partial counts still matter to the caller
        return JSONResponse(status_code=502, content=summary.model_dump(mode="json"))
    return summary.model_dump(mode="json")


@app.get("/api/audit")
def audit():
    report = LedgerAuditor(get_store()).audit()
    return {**report.model_dump(mode="json"), "ok": report.ok}


# ── Price intelligence ───────────────────────────────────────────────────────

@app.get("/api/items/{item_id}/prices")
def item_prices(item_id: str):
    return PriceIntelligence(get_store(), get_config()).get_item_price_metrics(item_id).model_dump(mode="json")


@app.get("/api/items/{item_id}/suppliers")
def item_suppliers(item_id: str):
    rows = PriceIntelligence(get_store(), get_config()).get_supplier_comparison(item_id)
    return [r.model_dump(mode="json") for r in rows]


@app.get("/api/reports/price-variations")
def price_variations(
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
    min_variation: float = Query(default=0.0, ge=0),
    min_impact: float = Query(default=0.0, ge=0),
):
    try:
        report = PriceIntelligence(get_store(), get_config()).get_price_variation_report(
            start, end, min_variation, min_impact,
        )
    except ValidationFailure as exc:
        raise HTTPException(STATUS_BY_ERROR[exc.kind.value], str(exc))
    return report.model_dump(mode="json")


@app.get("/api/search")
def search(q: str = Query(default=""), limit: int = Query(default=15, ge=1, le=100)):
    hits = PriceIntelligence(get_store(), get_config()).search(q, limit)
    return [h.model_dump(mode="json") for h in hits]


# ── Projects ─────────────────────────────────────────────────────────────────

@app.get("/api/projects/rankings")
def project_rankings():
    rankings = ProjectCostTracker(get_store(), get_config()).get_project_rankings()
    return [r.model_dump(mode="json") for r in rankings]


@app.get("/api/projects/{project_id}/consumption")
def project_consumption(
    project_id: str,
    start: Optional[str] = Query(default=None),
    end: Optional[str] = Query(default=None),
):
    try:
        report = ProjectCostTracker(get_store(), get_config()).get_project_consumption(
            project_id, start, end,
        )
    except ValidationFailure as exc:
        raise HTTPException(STATUS_BY_ERROR[exc.kind.value], str(exc))
    if report is None:
        raise HTTPException(404, f"Project not found: {project_id}")
    return report.model_dump(mode="json")


# ── Travel expenses ──────────────────────────────────────────────────────────

@app.post("/api/travel/delete")
def delete_travel(body: TravelBulkDelete):
    return _checked(TravelExpenseService(get_store(), get_config()).delete_reports(body.ids))


@app.post("/api/travel/{report_id}/approve")
def approve_travel(report_id: str, body: TravelDecision):
    return _checked(TravelExpenseService(get_store(), get_config()).approve_report(report_id, body.approver))


@app.post("/api/travel/{report_id}/reject")
def reject_travel(report_id: str, body: TravelDecision):
    service = TravelExpenseService(get_store(), get_config())
    return _checked(service.reject_report(report_id, body.approver, body.reason or ""))


@app.post("/api/travel/{report_id}/cancel")
def cancel_travel(report_id: str, body: TravelDecision):
    service = TravelExpenseService(get_store(), get_config())
    return _checked(service.cancel_report(report_id, body.approver, body.reason or ""))
