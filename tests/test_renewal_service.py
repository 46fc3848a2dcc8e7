import asyncio
import sqlite3
from unittest.mock import AsyncMock

import pytest

from recurring_billing.application.services.lifecycle import LifecycleStateMachine
from recurring_billing.application.services.renewal_service import RenewalService, build_renewal_order
from recurring_billing.application.services.subscription_service import SubscriptionService
from recurring_billing.domain.models import SubscriptionRecord, SubscriptionStatus, User

from conftest import utc

pytestmark = pytest.mark.asyncio

TODAY = utc(2024, 6, 1)


@pytest.fixture
def renewal_service(persistence, save_service, order_service) -> RenewalService:
    return RenewalService(persistence, save_service, order_service)


async def test_due_subscription_is_renewed_and_advanced(renewal_service, store, persistence, order_service):
    record = store(1)

    result = await renewal_service.run(TODAY)

    assert result.processed == 1
    assert result.succeeded == 1
    outcome = result.outcomes[0]
    assert outcome.success
    assert outcome.order_id == "renewal-1"

    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.dates.date_order_next == utc(2024, 6, 30)
    prolonged = [event for event in stored.history if event.action == "prolonged"]
    assert len(prolonged) == 1
    assert prolonged[0].data == {"related_order": "renewal-1"}

    assert len(order_service.created) == 1
    assert "id" not in order_service.created[0]
    assert order_service.created[0]["number"] == 1


async def test_failure_on_one_record_does_not_stop_others(renewal_service, store, persistence, order_service):
    records = [store(number) for number in (1, 2, 3)]
    order_service.fail_numbers = {2}

    result = await renewal_service.run(TODAY)

    assert [outcome.subscription_id for outcome in result.outcomes] == [record.id for record in records]
    assert [outcome.success for outcome in result.outcomes] == [True, False, True]
    assert result.failed == 1

    first, second, third = (persistence.find_by_id(record.id) for record in records)
    assert first.dates.date_order_next == utc(2024, 6, 30)
    assert third.dates.date_order_next == utc(2024, 6, 30)

    assert second.status == SubscriptionStatus.ACTIVE
    assert second.dates.date_order_next == utc(2024, 5, 30)
    assert len(second.history) == len(records[1].history) + 1
    error = second.history[-1]
    assert error.action == "error"
    assert error.type == "automatic"
    assert "rejected" in error.data["error"]


async def test_only_due_active_subscriptions_are_selected(renewal_service, store, order_service):
    store(1, date_order_next=utc(2024, 6, 2))
    store(2, status="suspended")
    store(3, date_end=utc(2024, 5, 31))

    result = await renewal_service.run(TODAY)

    assert result.processed == 0
    assert order_service.created == []


async def test_last_cycle_finishes_subscription(renewal_service, store, persistence):
    record = store(1, date_end=utc(2024, 6, 15))

    result = await renewal_service.run(TODAY)

    assert result.finished == 1
    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.FINISHED
    assert stored.history[-1].action == "prolonged"


async def test_missing_order_template_marks_error(renewal_service, store, persistence, make_document, order_service):
    document = make_document(1)
    document["data"]["order"] = None
    record = store(1, data=document["data"])

    result = await renewal_service.run(TODAY)

    assert not result.outcomes[0].success
    stored = persistence.find_by_id(record.id)
    assert stored.status == SubscriptionStatus.ERROR
    assert stored.history[-1].action == "error"
    assert order_service.created == []


async def test_order_response_without_id_fails(renewal_service, store, persistence, order_service):
    record = store(1)
    order_service.response_without_id = True

    result = await renewal_service.run(TODAY)

    assert not result.outcomes[0].success
    stored = persistence.find_by_id(record.id)
    assert stored.dates.date_order_next == utc(2024, 5, 30)
    assert stored.history[-1].action == "error"


async def test_concurrent_runs_create_one_order_per_cycle(renewal_service, store, order_service):
    store(1)

    first, second = await asyncio.gather(renewal_service.run(TODAY), renewal_service.run(TODAY))

    assert first.processed + second.processed == 1
    assert len(order_service.created) == 1


async def test_record_changed_during_renewal_is_not_advanced(renewal_service, store, persistence, order_service):
    record = store(1)

    def suspend_meanwhile(order):
        persistence.update_by_id(record.id, {"status": "suspended"})

    order_service.before_create = suspend_meanwhile

    result = await renewal_service.run(TODAY)

    outcome = result.outcomes[0]
    assert not outcome.success
    assert outcome.order_id == "renewal-1"
    stored = persistence.find_by_id(record.id)
    assert stored.status == "suspended"
    assert stored.dates.date_order_next == utc(2024, 5, 30)
    assert stored.history[-1].action == "error"
    assert stored.history[-1].data["related_order"] == "renewal-1"


async def test_build_renewal_order_copies_template(make_document):
    record = SubscriptionRecord.from_document(make_document(1))
    order = build_renewal_order(record)

    assert "id" not in order
    order["items"].clear()
    assert record.data.order["items"]


async def test_imported_string_numbers_renew_normally(
    renewal_service, persistence, save_service, agreement_service, make_document, order_service
):
    subscriptions = SubscriptionService(persistence, save_service, agreement_service)
    imported = await subscriptions.import_subscriptions(
        User(id="admin-1", role="admin"),
        [make_document(1), make_document(2, period="day", duration="1")],
    )
    assert all(result.success for result in imported)

    result = await renewal_service.run(TODAY)

    assert result.processed == 2
    assert result.succeeded == 2
    daily = persistence.find_by_id(imported[1].subscription.id)
    assert daily.duration == 1.0
    assert daily.dates.date_order_next == utc(2024, 5, 31)
    assert len(order_service.created) == 2


async def test_error_while_advancing_stays_with_its_record(renewal_service, store, persistence, order_service):
    healthy = store(1)
    # written straight to storage, bypassing the validated write path
    broken = store(2, period="day", duration="1")

    result = await renewal_service.run(TODAY)

    assert [outcome.success for outcome in result.outcomes] == [True, False]
    failed = result.outcomes[1]
    assert failed.subscription_id == broken.id
    assert failed.order_id == "renewal-2"

    assert persistence.find_by_id(healthy.id).dates.date_order_next == utc(2024, 6, 30)
    stored = persistence.find_by_id(broken.id)
    assert stored.status == SubscriptionStatus.ACTIVE
    assert stored.dates.date_order_next == utc(2024, 5, 30)
    assert stored.history[-1].action == "error"
    assert stored.history[-1].data["related_order"] == "renewal-2"


async def test_storage_error_while_marking_error_is_contained(
    renewal_service, store, save_service, make_document, monkeypatch
):
    document = make_document(1)
    document["data"]["order"] = None
    record = store(1, data=document["data"])
    monkeypatch.setattr(save_service, "save", AsyncMock(side_effect=sqlite3.OperationalError("database is locked")))

    result = await renewal_service.run(TODAY)

    outcome = result.outcomes[0]
    assert outcome.subscription_id == record.id
    assert not outcome.success
    assert outcome.subscription is None


class ExplodingLifecycle(LifecycleStateMachine):
    def mark_error(self, record, message, data=None, type="automatic"):
        raise RuntimeError("state machine bug")


async def test_unexpected_exception_becomes_failed_outcome(
    persistence, save_service, order_service, store, make_document
):
    document = make_document(1)
    document["data"]["order"] = None
    broken = store(1, data=document["data"])
    healthy = store(2)
    service = RenewalService(persistence, save_service, order_service, ExplodingLifecycle())

    result = await service.run(TODAY)

    assert [outcome.subscription_id for outcome in result.outcomes] == [broken.id, healthy.id]
    assert [outcome.success for outcome in result.outcomes] == [False, True]
    assert result.outcomes[0].error == "state machine bug"
