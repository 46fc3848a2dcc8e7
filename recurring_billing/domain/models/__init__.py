"""Domain models for the recurring billing service."""

from .history import HistoryEvent, new_history_event
from .results import OperationResult, RenewalBatchResult, RenewalOutcome
from .subscription import (
    BillingPeriod,
    SubscriptionData,
    SubscriptionDates,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionType,
    new_subscription,
)
from .user import User

__all__ = [
    "BillingPeriod",
    "HistoryEvent",
    "OperationResult",
    "RenewalBatchResult",
    "RenewalOutcome",
    "SubscriptionData",
    "SubscriptionDates",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "SubscriptionType",
    "User",
    "new_history_event",
    "new_subscription",
]
