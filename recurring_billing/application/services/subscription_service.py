from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ...domain.billing_cycle import next_order_date
from ...domain.errors import (
    InvalidTransitionError,
    MissingAgreementError,
    PermissionDeniedError,
    SubscriptionError,
)
from ...domain.models import (
    HistoryEvent,
    OperationResult,
    SubscriptionRecord,
    User,
)
from ...domain.ports.persistence import SubscriptionRepository
from ...domain.ports.services import AgreementService
from ...domain.timestamps import utcnow
from .lifecycle import LifecycleStateMachine
from .save_service import SubscriptionSaveService

logger = logging.getLogger(__name__)

AgreementCall = Callable[[str], Awaitable[Dict[str, Any]]]


class SubscriptionService:
    """Caller-facing subscription operations: listing, suspension, updates and import."""

    MAX_LIST_LIMIT = 20
    DEFAULT_SORT = "-dates.date_created"

    def __init__(
        self,
        repository: SubscriptionRepository,
        save_service: SubscriptionSaveService,
        agreement_service: AgreementService,
        lifecycle: Optional[LifecycleStateMachine] = None,
    ) -> None:
        self._repository = repository
        self._save = save_service
        self._agreements = agreement_service
        self._lifecycle = lifecycle or LifecycleStateMachine()

    # Queries --------------------------------------------------------------
    def list_subscriptions(
        self,
        user: User,
        *,
        query: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        sort: Optional[str] = None,
        full_data: bool = False,
    ) -> Optional[List[SubscriptionRecord]]:
        """
        List subscriptions visible to ``user``.

        Administrators asking for ``full_data`` see every subscription;
        everybody else only their own, whatever the query says.

        Returns:
            Matching subscriptions, without history when more than one is
            returned, or ``None`` when the lookup failed
        """
        filters: Dict[str, Any] = dict(query or {})
        if not (user.is_admin and full_data):
            filters["user_id"] = str(user.id)

        page_size = self.MAX_LIST_LIMIT
        if limit:
            page_size = min(max(int(limit), 1), self.MAX_LIST_LIMIT)
        identifier = filters.pop("_id", None) or filters.get("id")
        if isinstance(identifier, str) and identifier.strip():
            filters["id"] = identifier.strip()
            page_size = 1

        try:
            found = self._repository.find(
                filters,
                limit=page_size,
                offset=offset if offset and offset > 0 else 0,
                sort=sort or self.DEFAULT_SORT,
            )
        except Exception:
            logger.exception("Listing subscriptions for user %s failed.", user.id)
            return None

        if len(found) > 1:
            return [replace(item, history=()) for item in found]
        return found

    def get_subscription(self, user: User, subscription_id: str) -> Optional[SubscriptionRecord]:
        record = self._repository.find_by_id(subscription_id)
        if record is None or not self._can_access(user, record):
            return None
        return record

    @staticmethod
    def next_order_date(period: str, duration: float, start: Optional[datetime] = None) -> datetime:
        return next_order_date(period, duration, start)

    # Lifecycle operations -------------------------------------------------
    async def suspend(self, user: User, subscription_id: str) -> OperationResult:
        return await self._change_agreement(
            user,
            subscription_id,
            operation="suspend_agreement",
            request=self._lifecycle.request_suspend,
            call=self._agreements.suspend_agreement,
            confirm=self._lifecycle.confirm_suspend,
        )

    async def reactivate(self, user: User, subscription_id: str) -> OperationResult:
        return await self._change_agreement(
            user,
            subscription_id,
            operation="reactivate_agreement",
            request=self._lifecycle.request_reactivate,
            call=self._agreements.reactivate_agreement,
            confirm=self._lifecycle.confirm_reactivate,
        )

    async def update_subscription(
        self,
        subscription_id: str,
        changes: Mapping[str, Any],
        history_event: Optional[HistoryEvent] = None,
    ) -> OperationResult:
        """
        Merge ``changes`` into the stored subscription and save it.

        Top-level keys replace stored values; ``dates`` and ``data`` are
        merged one level deep.

        The merged document goes through the regular write path, so values
        that break the entity rules (an unparsable date, a negative
        duration) come back as a failed result and nothing is written.
        """
        record = self._repository.find_by_id(subscription_id)
        if record is None:
            return OperationResult.failed("subscription not found")
        document = record.to_document()
        for key, value in changes.items():
            if key in ("id", "_id", "history"):
                continue
            if key in ("dates", "data") and isinstance(value, Mapping):
                document[key].update(value)
            else:
                document[key] = value
        if history_event is not None:
            document["history"].append(history_event.to_document())
        try:
            saved = await self._save.save(document)
        except SubscriptionError as exc:
            logger.error("Subscription %s update failed: %s", subscription_id, exc)
            return OperationResult.failed(str(exc), record)
        except Exception as exc:
            logger.exception("Subscription %s update failed.", subscription_id)
            return OperationResult.failed(str(exc), record)
        return OperationResult(success=True, subscription=saved)

    async def save_subscription(self, entity: Any) -> OperationResult:
        try:
            saved = await self._save.save(entity)
        except SubscriptionError as exc:
            return OperationResult.failed(str(exc))
        except Exception as exc:
            logger.exception("Saving subscription failed.")
            return OperationResult.failed(str(exc))
        return OperationResult(success=True, subscription=saved)

    async def import_subscriptions(self, user: User, entities: List[Mapping[str, Any]]) -> List[OperationResult]:
        """Save raw subscription documents; administrators only."""
        if not user.is_admin:
            raise PermissionDeniedError("Permission denied")
        logger.info("Importing %s subscriptions for administrator %s", len(entities), user.id)
        return [await self.save_subscription(entity) for entity in entities]

    # Internal helpers -----------------------------------------------------
    async def _change_agreement(
        self,
        user: User,
        subscription_id: str,
        *,
        operation: str,
        request: Callable[..., str],
        call: AgreementCall,
        confirm: Callable[..., SubscriptionRecord],
    ) -> OperationResult:
        record = self._repository.find_by_id(subscription_id)
        if record is None or not self._can_access(user, record):
            return OperationResult.failed("subscription not found")

        try:
            agreement_id = request(record, utcnow())
        except InvalidTransitionError as exc:
            return OperationResult.failed(str(exc), _without_history(record))
        except MissingAgreementError:
            await self._save_quietly(record)
            return OperationResult.failed("agreement id not found", _without_history(record))

        try:
            agreement = await call(agreement_id)
        except Exception as exc:
            error = f"{operation} error"
            logger.error("Subscription %s %s: %s", subscription_id, error, exc)
            await self._append_quietly(
                subscription_id, self._lifecycle.record_error(error, {"error": str(exc)})
            )
            return OperationResult.failed(error)

        confirm(record, agreement)
        try:
            saved = await self._save.save(record)
        except Exception as exc:
            logger.exception("Subscription %s not saved after %s.", subscription_id, operation)
            return OperationResult(success=False, agreement=agreement, error=str(exc))
        logger.info("Subscription %s: %s completed (status=%s)", saved.id, operation, saved.status)
        return OperationResult(success=True, subscription=_without_history(saved), agreement=agreement)

    async def _save_quietly(self, record: SubscriptionRecord) -> None:
        try:
            await self._save.save(record)
        except Exception:
            logger.exception("Unable to store error event on subscription %s.", record.id)

    async def _append_quietly(self, subscription_id: str, event: HistoryEvent) -> None:
        try:
            await self._save.append_history(subscription_id, event)
        except Exception:
            logger.exception("Unable to store error event on subscription %s.", subscription_id)

    @staticmethod
    def _can_access(user: User, record: SubscriptionRecord) -> bool:
        return user.is_admin or str(record.user_id) == str(user.id)


def _without_history(record: SubscriptionRecord) -> SubscriptionRecord:
    return replace(record, history=())
