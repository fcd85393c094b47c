from .store import DocumentStore
from .workflow import OrderStateMachine, ApprovalCodeGate, allowed_targets, can_transition
from .reception import ReceptionService
from .orders import OrderService
from .reconciler import LedgerReconciler
from .analytics import PriceIntelligence, ProjectCostTracker
from .travel import TravelExpenseService, post_spend_adjustment
from .auditor import LedgerAuditor
from .backup import BackupService

__all__ = [
    "DocumentStore", "OrderStateMachine", "ApprovalCodeGate",
    "allowed_targets", "can_transition", "ReceptionService", "OrderService",
    "LedgerReconciler", "PriceIntelligence", "ProjectCostTracker",
    "TravelExpenseService", "post_spend_adjustment", "LedgerAuditor", "BackupService",
]
