"""Subscription domain model for recurring billing."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from dateutil.relativedelta import relativedelta

from ..timestamps import to_datetime, utcnow
from .history import HistoryEvent


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    SUSPEND_REQUESTED = "suspend_requested"
    SUSPENDED = "suspended"
    REACTIVATE_REQUESTED = "reactivate_requested"
    FINISHED = "finished"
    ERROR = "error"


class SubscriptionType(str, Enum):
    AUTOREFRESH = "autorefresh"
    SINGLETIME = "singletime"


class BillingPeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@dataclass(slots=True)
class SubscriptionDates:
    date_start: Optional[datetime] = None
    date_order_next: Optional[datetime] = None
    date_end: Optional[datetime] = None
    date_created: Optional[datetime] = None
    date_updated: Optional[datetime] = None
    date_stopped: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        document = {
            "date_start": self.date_start,
            "date_order_next": self.date_order_next,
            "date_end": self.date_end,
            "date_created": self.date_created,
            "date_updated": self.date_updated,
        }
        if self.date_stopped is not None:
            document["date_stopped"] = self.date_stopped
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SubscriptionDates":
        return cls(
            date_start=to_datetime(document.get("date_start")),
            date_order_next=to_datetime(document.get("date_order_next")),
            date_end=to_datetime(document.get("date_end")),
            date_created=to_datetime(document.get("date_created")),
            date_updated=to_datetime(document.get("date_updated")),
            date_stopped=to_datetime(document.get("date_stopped")),
        )


@dataclass(slots=True)
class SubscriptionData:
    """Snapshots taken when the subscription was created.

    ``order`` is the template every renewal order is built from and
    ``remote_data`` holds payment provider specific values.
    """

    product: Optional[Dict[str, Any]] = None
    order: Optional[Dict[str, Any]] = None
    remote_data: Optional[Dict[str, Any]] = None

    @property
    def has_order(self) -> bool:
        return self.order is not None

    @property
    def has_remote_data(self) -> bool:
        return self.remote_data is not None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "product": copy.deepcopy(self.product),
            "order": copy.deepcopy(self.order),
        }
        if self.remote_data is not None:
            document["remote_data"] = copy.deepcopy(self.remote_data)
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "SubscriptionData":
        return cls(
            product=copy.deepcopy(document.get("product")),
            order=copy.deepcopy(document.get("order")),
            remote_data=copy.deepcopy(document.get("remote_data")),
        )


@dataclass(slots=True)
class SubscriptionRecord:
    """
    A user's recurring billing subscription.

    Attributes:
        id: Storage identifier, ``None`` until inserted
        user_id: Owner of the subscription
        ip: Address the subscription was created from
        type: autorefresh, singletime, ...
        period: day, week, month or year
        duration: Number of periods in one billing cycle
        cycles: Number of cycles, 0 or less for unbounded
        status: Current lifecycle status
        order_origin_id: Order that created the subscription
        order_item_name: Localized name of the subscribed item
        dates: Schedule and bookkeeping timestamps
        price: Price snapshot taken at creation
        data: Product, order template and provider snapshots
        history: Append-only audit events, oldest first
    """

    user_id: Optional[str] = None
    ip: Optional[str] = None
    type: str = SubscriptionType.AUTOREFRESH.value
    period: str = BillingPeriod.MONTH.value
    duration: float = 1
    cycles: int = 0
    status: str = SubscriptionStatus.INACTIVE.value
    order_origin_id: Optional[str] = None
    order_item_name: Optional[str] = None
    dates: SubscriptionDates = field(default_factory=SubscriptionDates)
    price: Optional[float] = None
    data: SubscriptionData = field(default_factory=SubscriptionData)
    history: Tuple[HistoryEvent, ...] = ()
    id: Optional[str] = None

    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def append_history(self, event: HistoryEvent) -> None:
        self.history = self.history + (event,)

    def last_history_event(self, action: str) -> Optional[HistoryEvent]:
        for event in reversed(self.history):
            if event.action == action:
                return event
        return None

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "user_id": self.user_id,
            "ip": self.ip,
            "type": _plain(self.type),
            "period": _plain(self.period),
            "duration": self.duration,
            "cycles": self.cycles,
            "status": _plain(self.status),
            "order_origin_id": self.order_origin_id,
            "order_item_name": self.order_item_name,
            "dates": self.dates.to_document(),
            "price": self.price,
            "data": self.data.to_document(),
            "history": [event.to_document() for event in self.history],
        }
        if self.id is not None:
            document["id"] = self.id
        return document

    @classmethod
    def from_document(
        cls, document: Mapping[str, Any], record_id: Optional[str] = None
    ) -> "SubscriptionRecord":
        return cls(
            id=record_id if record_id is not None else document.get("id"),
            user_id=document.get("user_id"),
            ip=document.get("ip"),
            type=_plain(document.get("type") or SubscriptionType.AUTOREFRESH),
            period=_plain(document.get("period") or BillingPeriod.MONTH),
            duration=document.get("duration", 1),
            cycles=document.get("cycles", 0),
            status=_plain(document.get("status") or SubscriptionStatus.INACTIVE),
            order_origin_id=document.get("order_origin_id"),
            order_item_name=document.get("order_item_name"),
            dates=SubscriptionDates.from_document(document.get("dates") or {}),
            price=document.get("price"),
            data=SubscriptionData.from_document(document.get("data") or {}),
            history=tuple(HistoryEvent.from_document(item) for item in document.get("history") or ()),
        )

    def __repr__(self) -> str:
        return f"<SubscriptionRecord id={self.id} user_id={self.user_id} status={_plain(self.status)}>"


def new_subscription(now: Optional[datetime] = None) -> SubscriptionRecord:
    """Return an empty inactive subscription with default terms."""
    now = now or utcnow()
    return SubscriptionRecord(
        dates=SubscriptionDates(
            date_start=now,
            date_end=now + relativedelta(years=1),
            date_created=now,
            date_updated=now,
        ),
    )
