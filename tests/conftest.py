"""
Shared fixtures for the recurring billing tests.

Persistence is a real SQLite database under ``tmp_path``; the order and
billing agreement services are in-memory doubles.
"""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from recurring_billing.application.services.save_service import SubscriptionSaveService
from recurring_billing.domain.models import SubscriptionRecord
from recurring_billing.infrastructure.persistence.sqlite import SQLitePersistence


def utc(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


class RecordingNotifier:
    """Collects published changes instead of broadcasting them."""

    def __init__(self) -> None:
        self.events: List[tuple] = []

    async def publish(self, kind: str, record: SubscriptionRecord) -> None:
        self.events.append((kind, record.id))

    def kinds(self) -> List[str]:
        return [kind for kind, _ in self.events]


class FakeOrderService:
    """Order service double that hands out sequential order ids."""

    def __init__(self) -> None:
        self.created: List[Dict[str, Any]] = []
        self.updated: List[Dict[str, Any]] = []
        self.fail_numbers: set = set()
        self.response_without_id = False
        self.before_create = None

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        if self.before_create is not None:
            self.before_create(order)
        if order.get("number") in self.fail_numbers:
            raise RuntimeError(f"order service rejected order {order.get('number')}")
        self.created.append(copy.deepcopy(order))
        if self.response_without_id:
            return {"status": "cart"}
        return {**order, "id": f"renewal-{len(self.created)}"}

    async def update_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        self.updated.append(copy.deepcopy(order))
        return order


@pytest.fixture
def persistence(tmp_path):
    gateway = SQLitePersistence(tmp_path / "subscriptions.db")
    yield gateway
    gateway.close()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def save_service(persistence, notifier) -> SubscriptionSaveService:
    return SubscriptionSaveService(persistence, notifier)


@pytest.fixture
def order_service() -> FakeOrderService:
    return FakeOrderService()


@pytest.fixture
def agreement_service() -> AsyncMock:
    service = AsyncMock()
    service.suspend_agreement.return_value = {
        "id": "sub_stripe_1",
        "status": "active",
        "pause_collection": {"behavior": "void"},
    }
    service.reactivate_agreement.return_value = {
        "id": "sub_stripe_1",
        "status": "active",
        "pause_collection": None,
    }
    return service


@pytest.fixture
def make_document():
    """Return a builder for valid subscription documents."""

    def _make(number: int = 1, *, agreement_id: Optional[str] = "sub_stripe_1", **overrides: Any) -> Dict[str, Any]:
        history = [{"action": "created", "type": "user", "date": utc(2024, 1, 1)}]
        if agreement_id:
            history.append(
                {"action": "paid", "type": "user", "date": utc(2024, 1, 1, 0, 5), "data": {"id": agreement_id}}
            )
        document: Dict[str, Any] = {
            "user_id": "user-1",
            "ip": "127.0.0.1",
            "type": "autorefresh",
            "period": "month",
            "duration": 1,
            "cycles": 0,
            "status": "active",
            "order_origin_id": f"order-{number:03d}",
            "order_item_name": f"Coffee box {number}",
            "price": 25.0,
            "dates": {
                "date_start": utc(2024, 1, 30),
                "date_order_next": utc(2024, 5, 30),
                "date_end": utc(2024, 12, 31),
                "date_created": utc(2024, 1, 1, 0, number),
                "date_updated": utc(2024, 1, 1, 0, number),
            },
            "data": {
                "product": {"id": f"prod-{number}", "name": "Coffee box"},
                "order": {
                    "id": f"order-{number:03d}",
                    "number": number,
                    "status": "cart",
                    "items": [{"id": f"prod-{number}", "type": "subscription"}],
                },
            },
            "history": history,
        }
        for key, value in overrides.items():
            if key in document["dates"] or key == "date_stopped":
                document["dates"][key] = value
            else:
                document[key] = value
        return document

    return _make


@pytest.fixture
def store(persistence, make_document):
    """Insert a subscription straight into persistence and return it."""

    def _store(number: int = 1, **overrides: Any) -> SubscriptionRecord:
        return persistence.insert(SubscriptionRecord.from_document(make_document(number, **overrides)))

    return _store
