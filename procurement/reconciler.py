"""
Ledger reconciliation.

Derives LedgerEntry records from purchase orders. The ledger holds at most
one entry per (order_id, item_id) key. The reconciler checks the key inside
the same store transaction as the insert, which makes both modes safe to
repeat and safe to run alongside each other:

  reconcile_all()      backfill over every order in a ledger status,
                       written in chunks of ledger_batch_size
  reconcile_order()    incremental, called after an order's first receipt

Orders, suppliers and projects are only ever read here.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from pydantic import ValidationError

from config import Config
from models.ledger import LedgerEntry, LedgerKey, ReceivedLine
from models.project import Project
from models.purchase_order import LEDGER_STATUSES, LineType, PurchaseOrder, PurchaseOrderItem
from models.result import LedgerWriteResult, ReconcileSummary
from models.supplier import Supplier
from models.timestamps import utc_now
from .errors import DuplicateLedgerKey, NotFound, ValidationFailure, failure_result
from .resolvers import TwoStageResolver, project_resolver, supplier_resolver
from .store import (
    LEDGER, ORDERS, PROJECTS, SUPPLIERS, DocumentStore, Transaction, chunked, dump, where,
)

logger = logging.getLogger(__name__)

KEY_STRATEGIES = ("preload", "point_lookup")


class LedgerReconciler:
    def __init__(self, store: DocumentStore, config: Optional[Config] = None) -> None:
        self.store = store
        self.config = config or Config()
        if self.config.ledger_key_strategy not in KEY_STRATEGIES:
            raise ValueError(
                f"Unknown ledger_key_strategy {self.config.ledger_key_strategy!r}; "
                f"expected one of {KEY_STRATEGIES}"
            )

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def reconcile_all(self) -> ReconcileSummary:
        """
        Create ledger entries for every qualifying order line that lacks one.

        Entries are dated at the order date and stamped with migrated_at.
        A failing chunk stops the run; chunks already written stay written
        and the counts in the summary reflect them.
        """
        errors: list[str] = []
        try:
            orders = self._load_candidate_orders(errors)
            existing = self._all_keys() if self.config.ledger_key_strategy == "preload" else None
            suppliers = self._preloaded_supplier_resolver()
            projects = self._preloaded_project_resolver()
        except Exception as exc:
            result = failure_result(exc)
            return ReconcileSummary(success=False, message=result.message, errors=[result.message])

        logger.info(
            "Ledger backfill: %d candidate orders (strategy=%s)",
            len(orders), self.config.ledger_key_strategy,
        )

        migrated_at = utc_now()
        queued: set[LedgerKey] = set()
        pending: list[LedgerEntry] = []
        skipped = 0

        for order in orders:
            try:
                if existing is not None:
                    known = existing
                else:
                    known = self._keys_for_orders(self.store, [order.id])
            except Exception as exc:
                result = failure_result(exc)
                return ReconcileSummary(
                    success=False,
                    message=f"Backfill aborted while reading the ledger: {result.message}",
                    orders_processed=0,
                    skipped=skipped,
                    errors=errors + [result.message],
                )
            supplier = suppliers.resolve(order.supplier_id, order.supplier_name)
            project_name = _project_name(order, projects.resolve(order.project_id, None))
            for line in order.material_lines:
                key = (order.id, line.item_id)
                if key in known or key in queued:
                    skipped += 1
                    continue
                queued.add(key)
                pending.append(_build_entry(
                    order, line, line.quantity, order.date, supplier, project_name, migrated_at,
                ))

        created = 0
        for chunk in chunked(pending, self.config.ledger_batch_size):
            try:
                written = self._write_entries(chunk)
            except Exception as exc:
                result = failure_result(exc)
                logger.error(
                    "Ledger backfill stopped after %d entries: %s", created, result.message,
                )
                return ReconcileSummary(
                    success=False,
                    message=(
                        f"Backfill stopped after writing {created} of {len(pending)} entries: "
                        f"{result.message}"
                    ),
                    orders_processed=len(orders),
                    entries_created=created,
                    skipped=skipped,
                    errors=errors + [result.message],
                )
            created += written
            skipped += len(chunk) - written
            logger.debug("Ledger chunk committed (%d/%d)", created, len(pending))

        logger.info(
            "Ledger backfill complete: %d orders, %d created, %d skipped",
            len(orders), created, skipped,
        )
        return ReconcileSummary(
            success=True,
            message=f"Processed {len(orders)} orders: {created} entries created, {skipped} already present",
            orders_processed=len(orders),
            entries_created=created,
            skipped=skipped,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Incremental
    # ------------------------------------------------------------------

    def reconcile_order(
        self,
        order_id: str,
        received_lines: Iterable[ReceivedLine | dict],
    ) -> LedgerWriteResult:
        """Record the received Material lines of one order, dated now."""
        try:
            record = self.store.get(ORDERS, order_id)
            if record is None:
                raise NotFound("Order", order_id)
            order = PurchaseOrder.model_validate(record)
            lines = [ReceivedLine.model_validate(line) for line in received_lines]

            known = self._keys_for_orders(self.store, [order_id])
            supplier = supplier_resolver(self.store).resolve(order.supplier_id, order.supplier_name)
            project_name = _project_name(
                order, project_resolver(self.store).resolve(order.project_id, None)
            )

            now = utc_now()
            entries: list[LedgerEntry] = []
            skipped = 0
            for received in lines:
                if received.quantity <= 0:
                    continue
                line = order.find_line(received.item_id)
                if line is None or line.type != LineType.MATERIAL:
                    continue
                key = (order_id, received.item_id)
                if key in known:
                    skipped += 1
                    continue
                known.add(key)
                entries.append(_build_entry(
                    order, line, received.quantity, now, supplier, project_name, None,
                ))

            created = 0
            for chunk in chunked(entries, self.config.ledger_batch_size):
                written = self._write_entries(chunk)
                created += written
                skipped += len(chunk) - written
        except Exception as exc:
            return failure_result(exc, LedgerWriteResult, id=order_id)

        if created:
            logger.info(
                "Ledger: %d entries recorded for order %s", created, order.order_number,
            )
        return LedgerWriteResult(
            success=True,
            message=f"{created} ledger entries created for order {order.order_number or order_id}",
            id=order_id,
            entries_created=created,
            skipped=skipped,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_candidate_orders(self, errors: list[str]) -> list[PurchaseOrder]:
        records = self.store.query(
            ORDERS, where("status", "in", [s.value for s in LEDGER_STATUSES])
        )
        orders = []
        for record in records:
            try:
                orders.append(PurchaseOrder.model_validate(record))
            except ValidationError as exc:
                message = f"Order {record.get('id')} skipped: unreadable record ({exc.error_count()} errors)"
                logger.warning(message)
                errors.append(message)
        return orders

    def _all_keys(self) -> set[LedgerKey]:
        return {
            (r.get("order_id", ""), r.get("item_id", "")) for r in self.store.query(LEDGER)
        }

    def _keys_for_orders(self, reader, order_ids: Iterable[str]) -> set[LedgerKey]:
        """Ledger keys held for *order_ids*. *reader* is the store or a Transaction."""
        keys: set[LedgerKey] = set()
        for chunk in chunked(sorted(set(order_ids)), self.store.max_in_filter_values):
            for record in reader.query(LEDGER, where("order_id", "in", chunk)):
                keys.add((record.get("order_id", ""), record.get("item_id", "")))
        return keys

    def _preloaded_supplier_resolver(self) -> TwoStageResolver[Supplier]:
        suppliers = [Supplier.model_validate(r) for r in self.store.query(SUPPLIERS)]
        by_id = {s.id: s for s in suppliers}
        by_name: dict[str, Supplier] = {}
        for s in suppliers:
            by_name.setdefault(s.name, s)
        return TwoStageResolver("Supplier", by_id.get, by_name.get)

    def _preloaded_project_resolver(self) -> TwoStageResolver[Project]:
        projects = {r["id"]: Project.model_validate(r) for r in self.store.query(PROJECTS)}
        return TwoStageResolver("Project", projects.get, lambda name: None)

    def _write_entries(self, entries: list[LedgerEntry]) -> int:
        """
        Insert *entries* in one transaction and return how many were written.

        Keys are re-read under the transaction's write lock; an entry whose
        key was committed meanwhile by another receipt or backfill is dropped.
        """
        if len(entries) > self.store.max_batch_operations:
            raise ValidationFailure(
                f"Ledger chunk of {len(entries)} entries exceeds the limit of "
                f"{self.store.max_batch_operations}"
            )
        seen: set[LedgerKey] = set()
        for entry in entries:
            if entry.key in seen:
                raise DuplicateLedgerKey(*entry.key)
            seen.add(entry.key)

        def insert(txn: Transaction) -> int:
            present = self._keys_for_orders(txn, {e.order_id for e in entries})
            fresh = [e for e in entries if e.key not in present]
            for entry in fresh:
                txn.add(LEDGER, dump(entry))
            if len(fresh) < len(entries):
                logger.info(
                    "Ledger: %d entries already written concurrently, skipped",
                    len(entries) - len(fresh),
                )
            return len(fresh)

        return self.store.run_transaction(insert)


def _project_name(order: PurchaseOrder, project: Optional[Project]) -> str:
    if order.project_name:
        return order.project_name
    if project is not None and project.name:
        return project.name
    return order.project_id


def _build_entry(
    order: PurchaseOrder,
    line: PurchaseOrderItem,
    quantity: float,
    date: datetime,
    supplier: Optional[Supplier],
    project_name: str,
    migrated_at: Optional[datetime],
) -> LedgerEntry:
    return LedgerEntry(
        item_id=line.item_id,
        item_sku=line.sku,
        item_name=line.name,
        supplier_id=supplier.id if supplier else "",
        supplier_name=order.supplier_name,
        order_id=order.id,
        order_number=order.order_number or "",
        quantity=quantity,
        unit_price=line.price,
        total_price=quantity * line.price,
        unit=line.unit,
        date=date,
        project_id=order.project_id,
        project_name=project_name,
        migrated_at=migrated_at,
    )
