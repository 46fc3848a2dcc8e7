"""Result objects returned by lifecycle operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .subscription import SubscriptionRecord, SubscriptionStatus


@dataclass(slots=True)
class OperationResult:
    """Outcome of a single-record operation such as suspend or save."""

    success: bool
    subscription: Optional[SubscriptionRecord] = None
    agreement: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, subscription: Optional[SubscriptionRecord] = None) -> "OperationResult":
        return cls(success=False, subscription=subscription, error=error)


@dataclass(slots=True)
class RenewalOutcome:
    subscription_id: Optional[str]
    success: bool
    subscription: Optional[SubscriptionRecord] = None
    order_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class RenewalBatchResult:
    """Per-record outcomes of one renewal run, in selection order."""

    run_at: datetime
    outcomes: List[RenewalOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.outcomes if item.success)

    @property
    def failed(self) -> int:
        return sum(1 for item in self.outcomes if not item.success)

    @property
    def finished(self) -> int:
        return sum(
            1
            for item in self.outcomes
            if item.success
            and item.subscription is not None
            and item.subscription.status == SubscriptionStatus.FINISHED
        )
