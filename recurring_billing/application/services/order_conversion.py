from __future__ import annotations

import asyncio
import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ...domain.billing_cycle import end_date
from ...domain.errors import ValidationError
from ...domain.models import SubscriptionRecord, new_history_event, new_subscription
from ...domain.ports.services import OrderService
from ...domain.timestamps import utcnow
from .lifecycle import LifecycleStateMachine
from .save_service import SubscriptionSaveService

logger = logging.getLogger(__name__)

SUBSCRIPTION_ITEM_TYPE = "subscription"

_PRICE_FIELDS = (
    "price_total",
    "price_total_no_tax",
    "price_items",
    "price_items_no_tax",
    "price_tax_total",
    "price_delivery",
    "price_payment",
)
_PAYMENT_RESULT_FIELDS = ("payment_request_id", "last_status", "last_date", "paid_amount_total")


class OrderConversionService:
    """Turns the subscribable items of a placed order into subscriptions."""

    def __init__(
        self,
        save_service: SubscriptionSaveService,
        order_service: OrderService,
        lifecycle: Optional[LifecycleStateMachine] = None,
    ) -> None:
        self._save = save_service
        self._orders = order_service
        self._lifecycle = lifecycle or LifecycleStateMachine()

    async def convert(
        self,
        order: Dict[str, Any],
        remote_address: Optional[str] = None,
    ) -> List[SubscriptionRecord]:
        """
        Create one subscription per subscribable order item.

        All subscriptions are saved together; if any save fails the whole
        conversion fails and the order is left untouched. Otherwise the
        order receives the subscription ids and is sent back to the order
        service.

        Returns:
            The stored subscriptions, in item order
        """
        order_id = order_identifier(order)
        items = subscription_items(order)
        if not items:
            logger.info("Order %s has no subscription items", order_id)
            return []

        now = utcnow()
        candidates = [self._build_subscription(order, order_id, item, remote_address, now) for item in items]
        saved = await asyncio.gather(*(self._save.save(candidate) for candidate in candidates))
        for index, subscription in enumerate(saved):
            logger.info("Order %s item %s converted to subscription %s", order_id, index, subscription.id)

        linked = link_subscriptions(order, saved, now)
        await self._orders.update_order(linked)
        return list(saved)

    def _build_subscription(
        self,
        order: Mapping[str, Any],
        order_id: str,
        item: Mapping[str, Any],
        remote_address: Optional[str],
        now: datetime,
    ) -> SubscriptionRecord:
        subscription = new_subscription(now)
        subscription.data.product = copy.deepcopy(dict(item))
        subscription.data.order = prepare_order_template(order, item)

        terms = (item.get("data") or {}).get("subscription") or {}
        if terms.get("period"):
            subscription.period = terms["period"]
        if terms.get("duration"):
            subscription.duration = terms["duration"]
        if terms.get("cycles"):
            subscription.cycles = terms["cycles"]

        subscription.user_id = _user_id(order)
        subscription.ip = remote_address
        subscription.order_origin_id = order_id
        subscription.order_item_name = _localized_name(item, order)
        subscription.price = item.get("price")
        # first payment happens right after the customer accepts the billing plan
        subscription.dates.date_start = now
        subscription.dates.date_order_next = now
        subscription.dates.date_end = end_date(
            now, subscription.period, subscription.duration, subscription.cycles
        )
        subscription.append_history(
            new_history_event("created", "user", {"type": "from order", "related_order": order_id})
        )
        self._lifecycle.activate(subscription)
        return subscription


def subscription_items(order: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return [item for item in order.get("items") or [] if item.get("type") == SUBSCRIPTION_ITEM_TYPE]


def order_identifier(order: Mapping[str, Any]) -> str:
    value = order.get("id", order.get("_id"))
    if isinstance(value, Mapping):
        value = value.get("$oid")
    if not value:
        raise ValidationError("Order has no id")
    return str(value)


def prepare_order_template(order: Mapping[str, Any], item: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Return a copy of ``order`` that renewals can submit as a fresh cart."""
    template: Dict[str, Any] = copy.deepcopy(dict(order))
    template.pop("id", None)
    template.pop("_id", None)
    template["external_id"] = None
    template["external_code"] = None
    template["status"] = "cart"

    dates = template.setdefault("dates", {})
    dates["date_paid"] = None
    dates["email_sent"] = None

    data = template.setdefault("data", {})
    payment_data = data.setdefault("payment_data", {})
    for key in _PAYMENT_RESULT_FIELDS:
        payment_data.pop(key, None)
    payment_data["last_response_result"] = []
    template.pop("invoice", None)

    prices = template.setdefault("prices", {})
    for key in _PRICE_FIELDS:
        prices[key] = 0

    if not data.get("subscription"):
        data["subscription"] = {"created": utcnow(), "ids": []}

    template["items"] = [copy.deepcopy(dict(item))] if item is not None else []
    return template


def link_subscriptions(
    order: Mapping[str, Any],
    subscriptions: List[SubscriptionRecord],
    now: datetime,
) -> Dict[str, Any]:
    """Return a copy of ``order`` that references its subscriptions."""
    linked: Dict[str, Any] = copy.deepcopy(dict(order))
    linked["id"] = order_identifier(order)
    linked.pop("_id", None)

    ids: List[Dict[str, str]] = []
    by_product: Dict[str, str] = {}
    for subscription in subscriptions:
        product_id = str((subscription.data.product or {}).get("id"))
        ids.append({"subscription": str(subscription.id), "product": product_id})
        by_product[product_id] = str(subscription.id)

    data = linked.setdefault("data", {})
    if not data.get("subscription"):
        data["subscription"] = {"created": now, "ids": []}
    data["subscription"]["ids"] = ids
    for item in linked.get("items") or []:
        item["subscription_id"] = by_product.get(str(item.get("id")))
    return linked


def _user_id(order: Mapping[str, Any]) -> Optional[str]:
    user = order.get("user") or {}
    user_id = user.get("id")
    return str(user_id) if user_id is not None else None


def _localized_name(item: Mapping[str, Any], order: Mapping[str, Any]) -> Optional[str]:
    name = item.get("name")
    if isinstance(name, Mapping):
        code = (order.get("lang") or {}).get("code")
        if code and name.get(code):
            return str(name[code])
        return next((str(value) for value in name.values() if value), None)
    return str(name) if name is not None else None
