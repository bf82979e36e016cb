import pytest

from arang_chat.domain.support_chat.errors import HistoryLoadFailed, NoActiveSession, SendFailed, SubscriptionError
from arang_chat.domain.support_chat.room import ChatRoomController
from arang_chat.domain.support_chat.schemas import ChatRole, ConnectionState
from arang_chat.domain.support_chat.synchronizer import MESSAGES_TABLE
from arang_chat.infra.gateway import GatewayError
from conftest import START, seed_profile


def _room(gateway, resolver, directory, viewer, clock, **kwargs):
    return ChatRoomController(gateway, resolver, directory, viewer=viewer, clock=clock, **kwargs)


@pytest.mark.anyio
async def test_customer_open_creates_session_and_subscribes(gateway, feed, resolver, directory, customer, clock):
    room = _room(gateway, resolver, directory, customer, clock)

    snapshot = await room.open()

    assert snapshot.connection_state is ConnectionState.ready
    assert snapshot.partner_name == "Dukungan"
    assert snapshot.session.customer_id == "cust-1"
    assert snapshot.messages == []
    assert feed.active_count == 1

    room.close()
    room.close()
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_reopen_releases_previous_subscription(gateway, feed, resolver, directory, customer, clock):
    room = _room(gateway, resolver, directory, customer, clock)

    await room.open()
    await room.open()

    assert feed.active_count == 1
    room.close()


@pytest.mark.anyio
async def test_context_manager_always_releases_subscription(gateway, feed, resolver, directory, customer, clock):
    with pytest.raises(RuntimeError):
        async with _room(gateway, resolver, directory, customer, clock) as room:
            await room.open()
            raise RuntimeError("view unmounted")

    assert feed.active_count == 0


@pytest.mark.anyio
async def test_admin_open_without_session_reports_no_session(gateway, feed, resolver, directory, admin, clock):
    room = _room(gateway, resolver, directory, admin, clock)

    with pytest.raises(NoActiveSession):
        await room.open("cust-1")

    assert room.connection_state is ConnectionState.no_session
    assert room.session is None
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_admin_needs_customer_id(gateway, resolver, directory, admin, clock):
    room = _room(gateway, resolver, directory, admin, clock)

    with pytest.raises(ValueError):
        await room.open()


@pytest.mark.anyio
async def test_admin_sees_customer_name_and_claims_session(gateway, resolver, directory, customer, admin, clock):
    await seed_profile(gateway, "cust-1", name="Sari")
    customer_room = _room(gateway, resolver, directory, customer, clock)
    await customer_room.open()
    await customer_room.send("Halo")
    await customer_room.wait_side_effects()

    admin_room = _room(gateway, resolver, directory, admin, clock)
    snapshot = await admin_room.open("cust-1")

    assert snapshot.partner_name == "Sari"
    assert snapshot.session.admin_id == "admin-1"
    assert [message.content for message in snapshot.messages] == ["Halo"]
    assert snapshot.messages[0].sender_name == "Sari"
    customer_room.close()
    admin_room.close()


@pytest.mark.anyio
async def test_admin_falls_back_to_customer_label(gateway, resolver, directory, admin, clock):
    await resolver.resolve_for_customer("ghost")
    room = _room(gateway, resolver, directory, admin, clock)

    snapshot = await room.open("ghost")

    assert snapshot.partner_name == "Pelanggan"
    room.close()


@pytest.mark.anyio
async def test_live_message_reaches_other_participant(gateway, feed, resolver, directory, customer, admin, clock):
    changes = []
    alerts = []
    customer_room = _room(gateway, resolver, directory, customer, clock, on_change=changes.append, on_alert=alerts.append)
    await customer_room.open()
    admin_room = _room(gateway, resolver, directory, admin, clock)
    await admin_room.open("cust-1")

    reply = await admin_room.send("Pesanan sedang dikirim")
    await admin_room.wait_side_effects()
    await feed.drain()

    assert [message.id for message in customer_room.messages] == [reply.id]
    assert customer_room.messages[0].sender_name == "Dukungan"
    assert [message.id for message in alerts] == [reply.id]
    assert changes[-1][-1].id == reply.id
    customer_room.close()
    admin_room.close()


@pytest.mark.anyio
async def test_pinned_order_is_attached(gateway, resolver, directory, customer, clock):
    await gateway.insert(
        "orders", {"id": "order-1", "user_id": "cust-1", "total": 150000, "status": "paid", "date": START}
    )
    room = _room(gateway, resolver, directory, customer, clock)
    await room.open()

    message = await room.send("Tentang pesanan ini", "order-1")
    await room.wait_side_effects()

    assert message.order_info.order_id == "order-1"
    assert message.order_info.order_total == 150000
    assert message.order_info.order_status == "paid"
    assert message.order_info.order_date == START.isoformat()
    stored = await gateway.find(MESSAGES_TABLE, {"id": message.id})
    assert stored[0]["order_info"]["orderId"] == "order-1"
    room.close()


@pytest.mark.anyio
async def test_foreign_order_is_not_attached(gateway, resolver, directory, customer, clock):
    await gateway.insert("orders", {"id": "order-2", "user_id": "cust-2", "total": 1, "status": "paid", "date": START})
    room = _room(gateway, resolver, directory, customer, clock)
    await room.open()

    message = await room.send("Tentang pesanan ini", "order-2")

    assert message.order_info is None
    room.close()


@pytest.mark.anyio
async def test_send_before_open_fails(gateway, resolver, directory, customer, clock):
    room = _room(gateway, resolver, directory, customer, clock)

    with pytest.raises(SendFailed):
        await room.send("Halo")


@pytest.mark.anyio
async def test_subscription_error_is_reported(gateway, resolver, directory, customer, clock):
    errors = []
    room = _room(gateway, resolver, directory, customer, clock, on_connectivity_error=errors.append)
    await room.open()

    room._subscription.report_error("ConnectionError")

    assert room.connection_state is ConnectionState.error
    assert isinstance(errors[0], SubscriptionError)
    assert room.connectivity_error is errors[0]
    room.close()


@pytest.mark.anyio
async def test_admin_can_view_as_customer_role(gateway, resolver, directory, admin, clock):
    room = _room(gateway, resolver, directory, admin, clock)

    snapshot = await room.open(viewer_role=ChatRole.customer)

    assert snapshot.session.customer_id == "admin-1"
    assert room.viewer_role is ChatRole.customer
    room.close()


class MessagesOutageGateway:
    def __init__(self, inner):
        self.inner = inner

    async def find(self, table, *args, **kwargs):
        if table == MESSAGES_TABLE:
            raise GatewayError("store offline")
        return await self.inner.find(table, *args, **kwargs)

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.mark.anyio
async def test_history_store_failure_becomes_domain_error(gateway, feed, resolver, directory, customer, clock):
    room = _room(MessagesOutageGateway(gateway), resolver, directory, customer, clock)

    with pytest.raises(HistoryLoadFailed) as excinfo:
        await room.open()

    assert isinstance(excinfo.value.__cause__, GatewayError)
    assert excinfo.value.status_code == 503
    assert room.connection_state is ConnectionState.error
    assert feed.active_count == 0
