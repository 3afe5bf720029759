# feerecon/models/__init__.py

from feerecon.models.money import Money, Percent
from feerecon.models.payment import (
    FeeCategory,
    LineItemStatus,
    Payment,
    PaymentLineItem,
    PaymentStatus,
)
from feerecon.models.expectation import (
    Allocation,
    Expectation,
    ExpectationStatus,
)
from feerecon.models.match import (
    DataQualityReport,
    Match,
    MatchDetail,
    MatchMethod,
    MatchQuality,
    MatchType,
    PassResult,
    PendingMatch,
    TolerancePreview,
    VarianceDistribution,
    VarianceResult,
)
from feerecon.models.sync import (
    BatchUpdateResult,
    MatchRecord,
    PropagationReport,
    PropagationState,
    RecordResult,
    SyncReport,
    SyncState,
    SyncUnit,
)
from feerecon.models.session import (
    ExpectationFilters,
    ExpectationStatusFilter,
    PaymentFilters,
    PaymentStatusFilter,
    ReconciliationStatistics,
)

__all__ = [
    "Money",
    "Percent",
    # Payment
    "FeeCategory",
    "LineItemStatus",
    "Payment",
    "PaymentLineItem",
    "PaymentStatus",
    # Expectation
    "Allocation",
    "Expectation",
    "ExpectationStatus",
    # Match
    "DataQualityReport",
    "Match",
    "MatchDetail",
    "MatchMethod",
    "MatchQuality",
    "MatchType",
    "PassResult",
    "PendingMatch",
    "TolerancePreview",
    "VarianceDistribution",
    "VarianceResult",
    # Sync
    "BatchUpdateResult",
    "MatchRecord",
    "PropagationReport",
    "PropagationState",
    "RecordResult",
    "SyncReport",
    "SyncState",
    "SyncUnit",
    # Session
    "ExpectationFilters",
    "ExpectationStatusFilter",
    "PaymentFilters",
    "PaymentStatusFilter",
    "ReconciliationStatistics",
]
