from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Union

from ...domain.errors import NotFoundError, ValidationError
from ...domain.models import HistoryEvent, SubscriptionRecord, SubscriptionStatus
from ...domain.ports.persistence import SubscriptionRepository
from ...domain.ports.services import ChangeNotifier
from ...domain.timestamps import utcnow
from ...domain.validation import normalize_dates, validate_document

logger = logging.getLogger(__name__)

Entity = Union[SubscriptionRecord, Mapping[str, Any]]


class SubscriptionSaveService:
    """Single write path for subscriptions: validate, stamp, upsert, notify."""

    def __init__(self, repository: SubscriptionRepository, notifier: ChangeNotifier) -> None:
        self._repository = repository
        self._notifier = notifier

    async def save(
        self,
        entity: Entity,
        *,
        expected: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionRecord:
        """
        Insert or update a subscription.

        Args:
            entity: Record or raw document; an ``id`` selects the record to update
            expected: Conditions the stored record must still match when updating

        Returns:
            The stored subscription

        Raises:
            ValidationError: the entity breaks the entity rules; nothing is written
            ConflictError: ``expected`` no longer matches the stored record
        """
        document = self._to_document(entity)
        subscription_id = document.pop("id", None)
        existing = self._repository.find_by_id(str(subscription_id)) if subscription_id else None
        if existing is not None:
            return await self._update(existing, document, expected)
        return await self._insert(document)

    async def append_history(self, subscription_id: str, event: HistoryEvent) -> SubscriptionRecord:
        """Append one audit event to the stored copy of a subscription."""
        record = self._repository.find_by_id(subscription_id)
        if record is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        record.append_history(event)
        return await self.save(record)

    async def _update(
        self,
        existing: SubscriptionRecord,
        document: Dict[str, Any],
        expected: Optional[Mapping[str, Any]],
    ) -> SubscriptionRecord:
        now = utcnow()
        dates = self._dates_of(document)
        dates["date_updated"] = self._not_before(now, existing.dates.date_updated)
        dates.setdefault("date_created", existing.dates.date_created or now)
        self._validate(document, "update")
        logger.info("Updating subscription %s (status=%s)", existing.id, document.get("status"))
        stored = self._repository.update_by_id(str(existing.id), document, expected=expected)
        await self._notifier.publish("updated", stored)
        return stored

    async def _insert(self, document: Dict[str, Any]) -> SubscriptionRecord:
        now = utcnow()
        dates = self._dates_of(document)
        if not dates.get("date_created"):
            dates["date_created"] = now
        if not dates.get("date_updated"):
            dates["date_updated"] = now
        self._validate(document, "insert")

        similar = self._repository.find(
            {
                "user_id": document["user_id"],
                "order_item_name": document["order_item_name"],
                "status": SubscriptionStatus.ACTIVE.value,
            },
            limit=1,
        )
        if similar:
            logger.warning(
                "User %s already has an active subscription for %s (%s)",
                document["user_id"],
                document["order_item_name"],
                similar[0].id,
            )

        stored = self._repository.insert(SubscriptionRecord.from_document(document))
        logger.info("Created subscription %s for user %s", stored.id, stored.user_id)
        await self._notifier.publish("created", stored)
        return stored

    @staticmethod
    def _to_document(entity: Entity) -> Dict[str, Any]:
        if isinstance(entity, SubscriptionRecord):
            return normalize_dates(entity.to_document())
        if isinstance(entity, Mapping):
            return normalize_dates(copy.deepcopy(dict(entity)))
        raise ValidationError(f"Cannot save {type(entity).__name__} as a subscription")

    @staticmethod
    def _validate(document: Dict[str, Any], operation: str) -> None:
        try:
            document.update(validate_document(document))
        except ValidationError as exc:
            logger.error("Subscription %s validation error: %s", operation, exc)
            raise

    @staticmethod
    def _not_before(now: datetime, previous: Optional[datetime]) -> datetime:
        if previous is not None and previous > now:
            return previous
        return now

    @staticmethod
    def _dates_of(document: Dict[str, Any]) -> Dict[str, Any]:
        dates = document.get("dates")
        if not isinstance(dates, dict):
            dates = {}
            document["dates"] = dates
        return dates
