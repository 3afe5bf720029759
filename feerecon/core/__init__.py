# feerecon/core/__init__.py

from feerecon.core.errors import (
    ReconciliationError,
    PreconditionViolation,
    RateLimited,
    TransportFailure,
    ValidationFailure,
)
from feerecon.core.variance import evaluate, classify_quality, is_exact, variance_distribution
from feerecon.core.staging import PendingMatchSet
from feerecon.core.session import ReconciliationSession
from feerecon.core.auto_match import auto_match, find_reference_joins
from feerecon.core.prescreening import Prescreener, TOLERANCE_LADDER, is_large_payment
from feerecon.core.sync import MatchSyncer, StatusPropagator
from feerecon.core.statistics import calculate_statistics
from feerecon.core.data_check import run_data_check, approve_condition
from feerecon.core.workflow import ReconciliationWorkflow

__all__ = [
    "ReconciliationError",
    "PreconditionViolation",
    "RateLimited",
    "TransportFailure",
    "ValidationFailure",
    "evaluate",
    "classify_quality",
    "is_exact",
    "variance_distribution",
    "PendingMatchSet",
    "ReconciliationSession",
    "auto_match",
    "find_reference_joins",
    "Prescreener",
    "TOLERANCE_LADDER",
    "is_large_payment",
    "MatchSyncer",
    "StatusPropagator",
    "calculate_statistics",
    "run_data_check",
    "approve_condition",
    "ReconciliationWorkflow",
]
