"""
Record resolution by id with a logged name fallback.

Older orders and ledger entries sometimes carry only a name (supplier name,
project name) where newer ones carry an id. Every such lookup goes through
``TwoStageResolver`` so the id path is always tried first and each use of
the name path leaves a warning in the log:

  1. by id    (exact document id)
  2. by name  (exact name match against the master collection)
"""
import logging
from typing import Callable, Generic, Optional, TypeVar

from rapidfuzz import fuzz, process

from models.project import Project
from models.supplier import Supplier
from .store import PROJECTS, SUPPLIERS, DocumentStore, Transaction, where

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Minimum rapidfuzz score (0-100) for a "did you mean" hint in the log
HINT_THRESHOLD = 80


class TwoStageResolver(Generic[T]):
    """Resolve a record by id, falling back to an exact name lookup."""

    def __init__(
        self,
        label: str,
        by_id: Callable[[str], Optional[T]],
        by_name: Callable[[str], Optional[T]],
    ) -> None:
        self.label = label
        self._by_id = by_id
        self._by_name = by_name

    def resolve(self, record_id: Optional[str], name: Optional[str]) -> Optional[T]:
        return self.resolve_with_stage(record_id, name)[0]

    def resolve_with_stage(
        self, record_id: Optional[str], name: Optional[str]
    ) -> tuple[Optional[T], str]:
        """Like resolve, also returning which stage matched: "id", "name" or "none"."""
        if record_id:
            found = self._by_id(record_id)
            if found is not None:
                return found, "id"
        if name:
            found = self._by_name(name)
            if found is not None:
                logger.warning(
                    "%s resolved by name fallback: '%s' (id=%r)", self.label, name, record_id
                )
                return found, "name"
        logger.debug("%s not resolved (id=%r, name=%r)", self.label, record_id, name)
        return None, "none"


def _reader(source: DocumentStore | Transaction):
    return source.get, source.query


def supplier_resolver(source: DocumentStore | Transaction) -> TwoStageResolver[Supplier]:
    get, query = _reader(source)

    def by_id(supplier_id: str) -> Optional[Supplier]:
        record = get(SUPPLIERS, supplier_id)
        return Supplier.model_validate(record) if record else None

    def by_name(name: str) -> Optional[Supplier]:
        rows = query(SUPPLIERS, where("name", "==", name))
        if rows:
            return Supplier.model_validate(rows[0])
        _log_name_hint("Supplier", name, [r.get("name", "") for r in query(SUPPLIERS)])
        return None

    return TwoStageResolver("Supplier", by_id, by_name)


def project_resolver(source: DocumentStore | Transaction) -> TwoStageResolver[Project]:
    get, query = _reader(source)

    def by_id(project_id: str) -> Optional[Project]:
        record = get(PROJECTS, project_id)
        return Project.model_validate(record) if record else None

    def by_name(name: str) -> Optional[Project]:
        rows = query(PROJECTS, where("name", "==", name))
        return Project.model_validate(rows[0]) if rows else None

    return TwoStageResolver("Project", by_id, by_name)


def _log_name_hint(label: str, name: str, candidates: list[str]) -> None:
    """Log the closest master-list name when an exact match fails."""
    if not candidates:
        return
    best = process.extractOne(name, candidates, scorer=fuzz.token_sort_ratio)
    if best and best[1] >= HINT_THRESHOLD:
        logger.info(
            "%s '%s' has no exact match; closest is '%s' (score=%d)",
            label, name, best[0], best[1],
        )
