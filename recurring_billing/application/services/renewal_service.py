from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ...domain.errors import ExternalCallError
from ...domain.models import (
    RenewalBatchResult,
    RenewalOutcome,
    SubscriptionRecord,
    SubscriptionStatus,
)
from ...domain.ports.persistence import SubscriptionRepository
from ...domain.ports.services import OrderService
from ...domain.timestamps import utcnow
from .lifecycle import AUTOMATIC, LifecycleStateMachine
from .save_service import SubscriptionSaveService

logger = logging.getLogger(__name__)


class RenewalService:
    """Creates renewal orders for every due subscription and advances their schedule."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        save_service: SubscriptionSaveService,
        order_service: OrderService,
        lifecycle: Optional[LifecycleStateMachine] = None,
    ) -> None:
        self._repository = repository
        self._save = save_service
        self._orders = order_service
        self._lifecycle = lifecycle or LifecycleStateMachine()
        self._run_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    async def run(self, today: Optional[datetime] = None) -> RenewalBatchResult:
        """
        Process every subscription that is due on ``today``.

        A subscription is due when it is active, its next order date has
        arrived and its end date has not passed. Each one is renewed
        independently; a failure is reported in its own outcome and never
        stops the others.

        Args:
            today: Reference date, defaults to now

        Returns:
            One outcome per selected subscription, in selection order
        """
        today = today or utcnow()
        async with self._run_lock:
            due = self._repository.find(
                {
                    "dates.date_order_next": {"$lte": today},
                    "dates.date_end": {"$gte": today},
                    "status": SubscriptionStatus.ACTIVE.value,
                }
            )
            logger.info("Renewal run %s: %s subscriptions due", today.isoformat(), len(due))
            results = await asyncio.gather(
                *(self._renew(record, today) for record in due), return_exceptions=True
            )
        outcomes = [
            self._unexpected_failure(record, item) if isinstance(item, Exception) else item
            for record, item in zip(due, results)
        ]
        result = RenewalBatchResult(run_at=today, outcomes=outcomes)
        logger.info(
            "Renewal run %s finished: %s succeeded, %s failed, %s finished",
            today.isoformat(),
            result.succeeded,
            result.failed,
            result.finished,
        )
        return result

    async def _renew(self, record: SubscriptionRecord, today: datetime) -> RenewalOutcome:
        expected = {
            "status": record.status,
            "dates.date_order_next": record.dates.date_order_next,
        }

        order = build_renewal_order(record)
        if order is None:
            return await self._fail_without_template(record)

        try:
            created = await self._orders.create_order(order)
            order_id = created.get("id") if isinstance(created, dict) else None
            if not order_id:
                raise ExternalCallError("create_order", "response has no order id")
        except Exception as exc:
            message = str(exc)
            logger.error("Renewal order for subscription %s failed: %s", record.id, message)
            await self._record_error(record, "create_order error", message)
            return RenewalOutcome(subscription_id=record.id, success=False, error=message)

        order_id = str(order_id)
        logger.info("Renewal order %s created for subscription %s", order_id, record.id)
        try:
            self._lifecycle.advance_or_finish(record, today, related_order=order_id)
            updated = await self._save.save(record, expected=expected)
        except Exception as exc:
            message = str(exc)
            logger.error(
                "Subscription %s not updated after renewal order %s: %s", record.id, order_id, message
            )
            await self._record_error(
                record, "update after renewal error", message, related_order=order_id
            )
            return RenewalOutcome(
                subscription_id=record.id, success=False, order_id=order_id, error=message
            )
        return RenewalOutcome(
            subscription_id=updated.id, success=True, subscription=updated, order_id=order_id
        )

    async def _fail_without_template(self, record: SubscriptionRecord) -> RenewalOutcome:
        message = "subscription has no order template"
        logger.error("Subscription %s cannot be renewed: %s", record.id, message)
        self._lifecycle.mark_error(record, message)
        try:
            updated = await self._save.save(record)
        except Exception:
            logger.exception("Subscription %s could not be marked as failed.", record.id)
            updated = None
        return RenewalOutcome(
            subscription_id=record.id, success=False, subscription=updated, error=message
        )

    @staticmethod
    def _unexpected_failure(record: SubscriptionRecord, exc: Exception) -> RenewalOutcome:
        logger.error("Renewal of subscription %s failed", record.id, exc_info=exc)
        return RenewalOutcome(subscription_id=record.id, success=False, error=str(exc))

    async def _record_error(
        self,
        record: SubscriptionRecord,
        message: str,
        error: str,
        related_order: Optional[str] = None,
    ) -> None:
        if record.id is None:
            return
        event = self._lifecycle.record_error(
            message, {"error": error, "related_order": related_order}, type=AUTOMATIC
        )
        try:
            await self._save.append_history(record.id, event)
        except Exception:
            logger.exception("Unable to record renewal error on subscription %s.", record.id)


def build_renewal_order(record: SubscriptionRecord) -> Optional[Dict[str, Any]]:
    """Copy the stored order template; ``None`` when the subscription has none."""
    if not record.data.has_order:
        return None
    order: Dict[str, Any] = copy.deepcopy(record.data.order)
    order.pop("id", None)
    return order
