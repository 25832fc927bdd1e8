"""
Resolution: turning the two payment stores into one PaymentStatusView.

- accessors: read-only access to the aggregate, ledger, combined procedure and view
- precedence: the rule that merges aggregate and ledger
- fallback: FallbackQueryChain for when the combined procedure is unavailable
- reconciler: ReconciliationGateway and AutoReconciler
- resolver: StatusResolver, the single-order entry point
"""

from payrecon.resolution.accessors import (
    AggregateAccessor,
    CombinedStatusAccessor,
    CombinedViewAccessor,
    LedgerAccessor,
    latest_settled,
)
from payrecon.resolution.fallback import FallbackQueryChain
from payrecon.resolution.precedence import apply_precedence, pick_source, view_from_combined_row
from payrecon.resolution.reconciler import (
    AutoReconciler,
    AutoReconcilerConfig,
    ReconciliationGateway,
    RepairResult,
)
from payrecon.resolution.resolver import ManualReconcileResult, ResolveOptions, StatusResolver

__all__ = [
    "AggregateAccessor",
    "CombinedStatusAccessor",
    "CombinedViewAccessor",
    "LedgerAccessor",
    "latest_settled",
    "FallbackQueryChain",
    "apply_precedence",
    "pick_source",
    "view_from_combined_row",
    "AutoReconciler",
    "AutoReconcilerConfig",
    "ReconciliationGateway",
    "RepairResult",
    "ManualReconcileResult",
    "ResolveOptions",
    "StatusResolver",
]
