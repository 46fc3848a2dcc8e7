from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ...domain.billing_cycle import next_order_date
from ...domain.errors import InvalidTransitionError, MissingAgreementError
from ...domain.models import (
    HistoryEvent,
    SubscriptionRecord,
    SubscriptionStatus,
    new_history_event,
)
from ...domain.timestamps import utcnow

logger = logging.getLogger(__name__)

USER = "user"
AUTOMATIC = "automatic"


class LifecycleStateMachine:
    """Validates and applies subscription status transitions.

    Every transition works on the in-memory record passed in and appends
    the matching history event. Callers are expected to fetch the record
    fresh from storage first and persist it afterwards.
    """

    # State transitions ----------------------------------------------------
    def activate(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if record.status != SubscriptionStatus.INACTIVE:
            raise InvalidTransitionError("activate", record.status)
        record.status = SubscriptionStatus.ACTIVE.value
        return record

    def request_suspend(self, record: SubscriptionRecord, now: Optional[datetime] = None) -> str:
        """Move an active subscription to suspend_requested.

        Returns:
            The billing agreement id the provider must suspend.

        Raises:
            InvalidTransitionError: the subscription is not active
            MissingAgreementError: no 'paid' event carries an agreement id
        """
        return self._request(
            record,
            action="suspend",
            source=SubscriptionStatus.ACTIVE,
            target=SubscriptionStatus.SUSPEND_REQUESTED,
            now=now,
        )

    def confirm_suspend(
        self,
        record: SubscriptionRecord,
        agreement_result: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionRecord:
        return self._confirm(
            record,
            action="suspended",
            source=SubscriptionStatus.SUSPEND_REQUESTED,
            target=SubscriptionStatus.SUSPENDED,
            agreement_result=agreement_result,
        )

    def request_reactivate(self, record: SubscriptionRecord, now: Optional[datetime] = None) -> str:
        return self._request(
            record,
            action="reactivate",
            source=SubscriptionStatus.SUSPENDED,
            target=SubscriptionStatus.REACTIVATE_REQUESTED,
            now=now,
        )

    def confirm_reactivate(
        self,
        record: SubscriptionRecord,
        agreement_result: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionRecord:
        return self._confirm(
            record,
            action="reactivated",
            source=SubscriptionStatus.REACTIVATE_REQUESTED,
            target=SubscriptionStatus.ACTIVE,
            agreement_result=agreement_result,
        )

    def advance_or_finish(
        self,
        record: SubscriptionRecord,
        today: datetime,
        related_order: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Schedule the next cycle after a renewal order, or finish the subscription."""
        date_end = record.dates.date_end
        if date_end is not None and date_end > today:
            current = record.dates.date_order_next or today
            upcoming = next_order_date(record.period, record.duration, current)
            if upcoming > date_end:
                record.status = SubscriptionStatus.FINISHED.value
            else:
                record.dates.date_order_next = upcoming
                record.status = SubscriptionStatus.ACTIVE.value
        else:
            record.status = SubscriptionStatus.FINISHED.value
        record.append_history(
            new_history_event("prolonged", AUTOMATIC, {"related_order": related_order})
        )
        return record

    def mark_error(
        self,
        record: SubscriptionRecord,
        message: str,
        data: Optional[Mapping[str, Any]] = None,
        type: str = AUTOMATIC,
    ) -> SubscriptionRecord:
        record.status = SubscriptionStatus.ERROR.value
        record.append_history(self.record_error(message, data, type))
        return record

    # Helpers ----------------------------------------------------------------
    @staticmethod
    def record_error(
        message: str,
        data: Optional[Mapping[str, Any]] = None,
        type: str = USER,
    ) -> HistoryEvent:
        payload: Dict[str, Any] = {"error_msg": message}
        if data:
            payload.update(data)
        return new_history_event("error", type, payload)

    @staticmethod
    def find_agreement_id(record: SubscriptionRecord) -> Optional[str]:
        for event in reversed(record.history):
            if event.action == "paid" and event.data and event.data.get("id"):
                return str(event.data["id"])
        return None

    def _request(
        self,
        record: SubscriptionRecord,
        *,
        action: str,
        source: SubscriptionStatus,
        target: SubscriptionStatus,
        now: Optional[datetime],
    ) -> str:
        if record.status != source:
            raise InvalidTransitionError(action, record.status)
        agreement_id = self.find_agreement_id(record)
        if not agreement_id:
            record.append_history(self.record_error("agreement id not found"))
            logger.error("Subscription %s has no billing agreement to %s", record.id, action)
            raise MissingAgreementError(f"Subscription {record.id} has no billing agreement id")
        record.status = target.value
        record.dates.date_stopped = now or utcnow()
        record.append_history(new_history_event(target.value, USER, {"related_order": None}))
        return agreement_id

    def _confirm(
        self,
        record: SubscriptionRecord,
        *,
        action: str,
        source: SubscriptionStatus,
        target: SubscriptionStatus,
        agreement_result: Optional[Mapping[str, Any]],
    ) -> SubscriptionRecord:
        if record.status != source:
            raise InvalidTransitionError(action, record.status)
        record.status = target.value
        data: Dict[str, Any] = {"related_order": None}
        if agreement_result is not None:
            data["agreement"] = dict(agreement_result)
        record.append_history(new_history_event(action, USER, data))
        return record
