from pydantic import BaseModel, Field
from typing import Optional, List, Literal


ErrorKindName = Literal[
    "invalid_transition",
    "not_found",
    "duplicate_ledger_key",
    "upstream_write_failure",
    "validation_failure",
]


class OperationResult(BaseModel):
    """
    Outcome of a public core operation.

    Expected failures (invalid transition, not found, validation) and
    unexpected store failures both come back in this shape, so callers only
    ever check ``success``.
    """
    success: bool
    message: str
    error: Optional[ErrorKindName] = None   # Set when success is False
    id: Optional[str] = None                # Id of the record created, if any


class TransitionResult(OperationResult):
    """Outcome of a status transition request."""
    order_id: Optional[str] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    backorder_id: Optional[str] = None
    ledger_entries_created: int = 0


class BulkDeleteResult(OperationResult):
    """Outcome of deleting several records one by one."""
    deleted: int = 0
    total_refunded: float = 0.0             # Spend taken back off projects
    errors: List[str] = Field(default_factory=list)


class ReconcileSummary(BaseModel):
    """
    Counts from a ledger backfill run.

    On failure the counts still describe what was committed before the
    failing chunk; the run is safe to repeat.
    """
    success: bool
    message: str
    orders_processed: int = 0
    entries_created: int = 0
    skipped: int = 0                        # Keys already present in the ledger
    errors: List[str] = Field(default_factory=list)


class IntegrityIssue(BaseModel):
    kind: Literal[
        "duplicate_key",
        "orphan_entry",
        "total_mismatch",
        "spent_drift",
    ]
    description: str
    record_id: Optional[str] = None


class IntegrityReport(BaseModel):
    """Findings of a ledger / project-spend audit."""
    entries_checked: int = 0
    projects_checked: int = 0
    issues: List[IntegrityIssue] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.issues


class LedgerWriteResult(OperationResult):
    """Outcome of an incremental ledger update for one order."""
    entries_created: int = 0
    skipped: int = 0
