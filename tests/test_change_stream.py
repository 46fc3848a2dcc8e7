import pytest

from recurring_billing.domain.models import SubscriptionRecord
from recurring_billing.services.change_stream import ChangeStreamManager, serialize_change

pytestmark = pytest.mark.asyncio


class FakeWebSocket:
    def __init__(self, fail: bool = False) -> None:
        self.accepted = False
        self.sent = []
        self.fail = fail

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, payload) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(payload)


async def test_publish_reaches_listeners_and_sockets(make_document):
    manager = ChangeStreamManager()
    received = []

    async def listener(kind, record):
        received.append((kind, record.id))

    socket = FakeWebSocket()
    manager.add_listener(listener)
    await manager.connect(socket)

    record = SubscriptionRecord.from_document(make_document(1), record_id="sub-1")
    await manager.publish("updated", record)

    assert socket.accepted
    assert received == [("updated", "sub-1")]
    payload = socket.sent[0]
    assert payload["type"] == "subscription.updated"
    assert payload["data"]["id"] == "sub-1"
    assert "history" not in payload["data"]


async def test_failing_listener_and_socket_do_not_raise(make_document):
    manager = ChangeStreamManager()

    async def broken(kind, record):
        raise RuntimeError("listener bug")

    healthy = FakeWebSocket()
    closed = FakeWebSocket(fail=True)
    manager.add_listener(broken)
    await manager.connect(healthy)
    await manager.connect(closed)

    record = SubscriptionRecord.from_document(make_document(1), record_id="sub-1")
    await manager.publish("created", record)
    await manager.publish("updated", record)

    assert [payload["type"] for payload in healthy.sent] == ["subscription.created", "subscription.updated"]
    assert closed.sent == []


async def test_serialize_change_encodes_dates(make_document):
    record = SubscriptionRecord.from_document(make_document(1), record_id="sub-1")

    data = serialize_change(record)

    assert data["dates"]["date_order_next"].startswith("2024-05-30T00:00:00")
