import sqlite3
from unittest.mock import AsyncMock

import pytest

from recurring_billing.application.services.subscription_service import SubscriptionService
from recurring_billing.domain.errors import ExternalCallError, PermissionDeniedError
from recurring_billing.domain.models import SubscriptionStatus, User, new_history_event

from conftest import utc

pytestmark = pytest.mark.asyncio

OWNER = User(id="user-1")
STRANGER = User(id="user-2")
ADMIN = User(id="admin-1", role="admin")


@pytest.fixture
def service(persistence, save_service, agreement_service) -> SubscriptionService:
    return SubscriptionService(persistence, save_service, agreement_service)


async def test_suspend_confirms_with_agreement_service(service, store, persistence, agreement_service):
    record = store(1)

    result = await service.suspend(OWNER, record.id)

    assert result.success
    assert result.subscription.status == SubscriptionStatus.SUSPENDED
    assert result.subscription.history == ()
    assert result.agreement["id"] == "sub_stripe_1"
    agreement_service.suspend_agreement.assert_awaited_once_with("sub_stripe_1")

    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.SUSPENDED
    assert stored.dates.date_stopped is not None
    assert [event.action for event in stored.history[-2:]] == ["suspend_requested", "suspended"]


async def test_suspend_rejected_when_not_active(service, store, persistence, agreement_service):
    record = store(1, status="suspended")

    result = await service.suspend(OWNER, record.id)

    assert not result.success
    agreement_service.suspend_agreement.assert_not_awaited()
    stored = persistence.find_by_id(record.id)
    assert stored.status == "suspended"
    assert len(stored.history) == len(record.history)


async def test_suspend_without_agreement_records_error(service, store, persistence, agreement_service):
    record = store(1, agreement_id=None)

    result = await service.suspend(OWNER, record.id)

    assert not result.success
    assert result.error == "agreement id not found"
    agreement_service.suspend_agreement.assert_not_awaited()
    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.history[-1].action == "error"


async def test_agreement_failure_keeps_stored_status(service, store, persistence, agreement_service):
    record = store(1)
    agreement_service.suspend_agreement.side_effect = ExternalCallError("suspend_agreement", "card declined")

    result = await service.suspend(OWNER, record.id)

    assert not result.success
    assert result.error == "suspend_agreement error"
    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.dates.date_stopped is None
    assert stored.history[-1].action == "error"
    assert "card declined" in stored.history[-1].data["error"]


async def test_reactivate_suspended_subscription(service, store, persistence, agreement_service):
    record = store(1, status="suspended")

    result = await service.reactivate(OWNER, record.id)

    assert result.success
    agreement_service.reactivate_agreement.assert_awaited_once_with("sub_stripe_1")
    assert persistence.find_by_id(record.id).status == SubscriptionStatus.ACTIVE


async def test_other_users_cannot_touch_subscription(service, store, agreement_service):
    record = store(1)

    result = await service.suspend(STRANGER, record.id)

    assert not result.success
    assert result.error == "subscription not found"
    agreement_service.suspend_agreement.assert_not_awaited()
    assert service.get_subscription(STRANGER, record.id) is None
    assert service.get_subscription(ADMIN, record.id).id == record.id


async def test_list_is_scoped_to_caller(service, store):
    store(1)
    store(2, user_id="user-2")

    own = service.list_subscriptions(OWNER, full_data=True)
    assert [record.user_id for record in own] == ["user-1"]

    everything = service.list_subscriptions(ADMIN, full_data=True)
    assert len(everything) == 2
    assert all(record.history == () for record in everything)

    assert service.list_subscriptions(ADMIN) == []


async def test_list_caps_limit_and_sorts_newest_first(service, store):
    for number in range(1, 26):
        store(number)

    found = service.list_subscriptions(OWNER, limit=100)

    assert len(found) == SubscriptionService.MAX_LIST_LIMIT
    assert found[0].order_item_name == "Coffee box 25"


async def test_list_by_id_returns_single_record_with_history(service, store):
    record = store(1)
    store(2)

    found = service.list_subscriptions(OWNER, query={"id": record.id})

    assert [item.id for item in found] == [record.id]
    assert found[0].history


async def test_list_returns_none_when_lookup_fails(service, store):
    store(1)
    assert service.list_subscriptions(OWNER, sort="not a path") is None


async def test_import_requires_admin(service, persistence, make_document):
    with pytest.raises(PermissionDeniedError):
        await service.import_subscriptions(OWNER, [make_document(1)])
    assert persistence.find() == []


async def test_import_reports_each_entity(service, persistence, make_document):
    results = await service.import_subscriptions(ADMIN, [make_document(1), make_document(2, ip="x")])

    assert [result.success for result in results] == [True, False]
    assert "ip" in results[1].error
    assert len(persistence.find()) == 1


async def test_update_subscription_merges_fields_and_event(service, store, persistence):
    record = store(1)
    event = new_history_event("price_changed", "user", {"price": 30.0})

    result = await service.update_subscription(record.id, {"price": 30.0}, event)

    assert result.success
    stored = persistence.find_by_id(record.id)
    assert stored.price == 30.0
    assert stored.history[-1].action == "price_changed"


async def test_update_unknown_subscription(service):
    result = await service.update_subscription("missing", {"price": 1.0})
    assert not result.success


async def test_next_order_date_helper():
    assert SubscriptionService.next_order_date("month", 1, utc(2024, 1, 31)) == utc(2024, 2, 29)


async def test_update_merges_dates(service, store, persistence):
    record = store(1)

    result = await service.update_subscription(record.id, {"dates": {"date_end": "2025-01-31T00:00:00Z"}})

    assert result.success
    stored = persistence.find_by_id(record.id)
    assert stored.dates.date_end == utc(2025, 1, 31)
    assert stored.dates.date_order_next == utc(2024, 5, 30)


async def test_update_with_invalid_values_returns_failed_result(service, store, persistence):
    record = store(1)

    bad_date = await service.update_subscription(record.id, {"dates": {"date_end": "not-a-date"}})
    bad_duration = await service.update_subscription(record.id, {"duration": -1})

    assert not bad_date.success
    assert "date_end" in bad_date.error
    assert bad_date.subscription.id == record.id
    assert not bad_duration.success
    stored = persistence.find_by_id(record.id)
    assert stored.dates.date_end == utc(2024, 12, 31)
    assert stored.duration == 1


async def test_storage_errors_become_failed_results(service, store, save_service, monkeypatch, make_document):
    missing_agreement = store(1, agreement_id=None)
    monkeypatch.setattr(save_service, "save", AsyncMock(side_effect=sqlite3.OperationalError("database is locked")))

    suspended = await service.suspend(OWNER, missing_agreement.id)
    updated = await service.update_subscription(missing_agreement.id, {"price": 30.0})
    imported = await service.import_subscriptions(ADMIN, [make_document(2)])

    assert not suspended.success
    assert suspended.error == "agreement id not found"
    assert not updated.success
    assert "database is locked" in updated.error
    assert not imported[0].success
