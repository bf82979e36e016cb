import asyncio
from datetime import timedelta

import pytest

from arang_chat.domain.support_chat.inbox import (
    UNKNOWN_CUSTOMER_NAME,
    InboxAggregator,
    filter_by_name,
    mark_global_latest,
    rank_summaries,
    summarize_customer,
)
from arang_chat.domain.support_chat.schemas import ChatRole, ChatUserSummary, MessageRecord
from arang_chat.domain.support_chat.session_resolver import SESSIONS_TABLE
from arang_chat.domain.support_chat.synchronizer import MESSAGES_TABLE
from arang_chat.infra.gateway import GatewayError
from arang_chat.infra.identity import CurrentUser
from conftest import START, seed_profile


def _record(message_id, sender_type, minutes, *, content=None, read=False):
    return MessageRecord(
        id=message_id,
        session_id="s-1",
        sender_id="admin-1" if sender_type == "admin" else "cust-1",
        sender_type=sender_type,
        content=content or message_id,
        read=read,
        created_at=START + timedelta(minutes=minutes),
    )


def _summary(customer_id, name, *, last=None, last_customer=None, from_customer=False, unread=False):
    return ChatUserSummary(
        customer_id=customer_id,
        display_name=name,
        last_message="x",
        last_message_at=START + timedelta(minutes=last) if last is not None else None,
        last_customer_message_at=START + timedelta(minutes=last_customer) if last_customer is not None else None,
        from_customer=from_customer,
        unread=unread,
    )


async def _message(gateway, session_id, sender_id, sender_type, content, *, read=False):
    return await gateway.insert(
        MESSAGES_TABLE,
        {
            "session_id": session_id,
            "sender_id": sender_id,
            "sender_type": sender_type,
            "content": content,
            "order_info": None,
            "read": read,
        },
    )


def test_summary_prefers_newest_unread_customer_message():
    messages = [
        _record("admin-reply", "admin", 5),
        _record("unread-new", "customer", 4),
        _record("read-old", "customer", 3, read=True),
        _record("unread-old", "customer", 2),
    ]

    summary = summarize_customer("cust-1", "Sari", messages)

    assert summary.last_message_id == "unread-new"
    assert summary.unread is True
    assert summary.from_customer is True
    assert summary.last_message_sender_name == "Sari"
    assert summary.last_message_at == START + timedelta(minutes=5)
    assert summary.last_customer_message_at == START + timedelta(minutes=4)


def test_summary_falls_back_to_newest_customer_message_when_all_read():
    messages = [
        _record("admin-reply", "admin", 5),
        _record("read-new", "customer", 4, read=True),
    ]

    summary = summarize_customer("cust-1", "Sari", messages)

    assert summary.last_message_id == "read-new"
    assert summary.unread is False


def test_summary_legacy_null_read_counts_as_unread():
    messages = [_record("legacy", "customer", 1, read=None)]

    assert summarize_customer("cust-1", "Sari", messages).unread is True


def test_summary_with_only_admin_messages_shows_admin_preview():
    summary = summarize_customer("cust-1", "Sari", [_record("admin-only", "admin", 1)], admin_name="Admin")

    assert summary.last_message_id == "admin-only"
    assert summary.from_customer is False
    assert summary.last_message_sender_name == "Admin"
    assert summary.last_customer_message_at is None


def test_summary_without_messages_uses_placeholder():
    summary = summarize_customer("cust-1", "Sari", [])

    assert summary.last_message == "Belum ada riwayat pesan"
    assert summary.last_message_at is None
    assert summary.unread is False


def test_global_flag_marks_customer_with_newest_customer_message():
    items = mark_global_latest(
        [
            _summary("a", "Ani", last=10, last_customer=3),
            _summary("b", "Budi", last=5, last_customer=5),
            _summary("c", "Citra"),
        ]
    )

    flags = {item.customer_id: item.is_most_recent_globally for item in items}
    assert flags == {"a": False, "b": True, "c": False}


def test_global_flag_is_shared_on_ties():
    items = mark_global_latest(
        [_summary("a", "Ani", last_customer=5), _summary("b", "Budi", last_customer=5)]
    )

    assert all(item.is_most_recent_globally for item in items)


def test_ranking_order():
    items = rank_summaries(
        [
            _summary("never", "Zaki"),
            _summary("older", "Ani", last=1, from_customer=True),
            _summary("tie-admin", "Budi", last=5),
            _summary("tie-read", "Citra", last=5, from_customer=True),
            _summary("tie-unread", "Dewi", last=5, from_customer=True, unread=True),
            _summary("global", "Eko", last=2).model_copy(update={"is_most_recent_globally": True}),
        ]
    )

    assert [item.customer_id for item in items] == [
        "global",
        "tie-unread",
        "tie-read",
        "tie-admin",
        "older",
        "never",
    ]


def test_ranking_breaks_remaining_ties_by_name():
    items = rank_summaries([_summary("b", "budi"), _summary("a", "Ani")])

    assert [item.display_name for item in items] == ["Ani", "budi"]


def test_filter_by_name_is_case_insensitive_substring():
    items = [_summary("a", "Sari Dewi"), _summary("b", "Budi")]

    assert [item.customer_id for item in filter_by_name(items, "DEW")] == ["a"]
    assert len(filter_by_name(items, "  ")) == 2
    assert len(filter_by_name(items, None)) == 2


@pytest.fixture
def inbox_viewer():
    return CurrentUser(id="admin-1", role=ChatRole.admin, display_name="Budi")


@pytest.mark.anyio
async def test_refresh_builds_one_row_per_customer(gateway, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    await seed_profile(gateway, "cust-2", email="rina@example.com")
    await seed_profile(gateway, "cust-3")
    await seed_profile(gateway, "admin-1", name="Budi", role="admin")
    session = await resolver.resolve_for_customer("cust-1")
    await _message(gateway, session.id, "cust-1", "customer", "Halo")

    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)
    items = await inbox.refresh()

    # Customers without messages fall back to alphabetical order.
    assert [item.customer_id for item in items] == ["cust-1", "cust-3", "cust-2"]
    assert items[0].is_most_recent_globally is True
    assert items[0].last_message == "Halo"
    names = {item.customer_id: item.display_name for item in items}
    assert names["cust-2"] == "rina@example.com"
    assert names["cust-3"] == UNKNOWN_CUSTOMER_NAME
    assert inbox.find("cust-2").last_message == "Belum ada riwayat pesan"
    assert [item.customer_id for item in inbox.search("rina")] == ["cust-2"]


@pytest.mark.anyio
async def test_summary_spans_all_sessions_of_customer(gateway, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    old = await resolver.resolve_for_customer("cust-1")
    await _message(gateway, old.id, "cust-1", "customer", "sesi lama")
    await resolver.close_session(old.id)
    current = await resolver.resolve_for_customer("cust-1")
    await _message(gateway, current.id, "admin-1", "admin", "balasan")

    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)
    await inbox.refresh()

    summary = inbox.find("cust-1")
    assert summary.last_message == "sesi lama"
    assert summary.unread is True


@pytest.mark.anyio
async def test_live_insert_counts_and_refreshes(gateway, feed, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    alerts = []
    changes = []
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer, on_alert=alerts.append, on_change=changes.append)
    await inbox.start()
    session = await resolver.resolve_for_customer("cust-1")

    row = await _message(gateway, session.id, "cust-1", "customer", "Ada yang bisa bantu?")
    await _message(gateway, session.id, "admin-1", "admin", "Tentu")
    await feed.drain()

    assert inbox.new_message_count == 1
    assert [alert["id"] for alert in alerts] == [row["id"]]
    assert inbox.find("cust-1").last_message == "Ada yang bisa bantu?"
    assert changes[-1][0].customer_id == "cust-1"
    inbox.stop()
    inbox.stop()
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_mark_as_read_updates_row_and_counter(gateway, feed, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    async with InboxAggregator(gateway, directory, viewer=inbox_viewer) as inbox:
        session = await resolver.resolve_for_customer("cust-1")
        row = await _message(gateway, session.id, "cust-1", "customer", "Halo")
        await feed.drain()

        assert await inbox.mark_as_read("cust-1", row["id"]) is True

        assert inbox.new_message_count == 0
        assert inbox.find("cust-1").unread is False
        stored = await gateway.find(MESSAGES_TABLE, {"id": row["id"]})
        assert stored[0]["read"] is True
    assert feed.active_count == 0


@pytest.mark.anyio
async def test_mark_as_read_unknown_message_returns_false(gateway, directory, inbox_viewer):
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)
    inbox.new_message_count = 2

    assert await inbox.mark_as_read("cust-1", "missing") is False
    assert inbox.new_message_count == 2


@pytest.mark.anyio
async def test_mark_as_read_store_failure_is_swallowed(directory, inbox_viewer):
    class FailingGateway:
        async def update(self, table, filters, patch):
            raise GatewayError("store offline")

    inbox = InboxAggregator(FailingGateway(), directory, viewer=inbox_viewer)

    assert await inbox.mark_as_read("cust-1", "m-1") is False


@pytest.mark.anyio
async def test_mark_all_as_read_for_admin_clears_false_and_legacy_null(gateway, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    session = await resolver.resolve_for_customer("cust-1")
    await _message(gateway, session.id, "cust-1", "customer", "satu")
    await _message(gateway, session.id, "cust-1", "customer", "dua", read=None)
    await _message(gateway, session.id, "cust-1", "customer", "sudah", read=True)
    admin_row = await _message(gateway, session.id, "admin-1", "admin", "balasan")
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)
    inbox.new_message_count = 3

    updated = await inbox.mark_all_as_read()

    assert updated == 2
    assert inbox.new_message_count == 0
    customer_rows = await gateway.find(MESSAGES_TABLE, {"sender_type": "customer"})
    assert all(row["read"] is True for row in customer_rows)
    stored_admin = await gateway.find(MESSAGES_TABLE, {"id": admin_row["id"]})
    assert stored_admin[0]["read"] is False


@pytest.mark.anyio
async def test_mark_all_as_read_for_customer_only_touches_admin_replies(gateway, resolver, directory, inbox_viewer):
    mine = await resolver.resolve_for_customer("cust-1")
    other = await resolver.resolve_for_customer("cust-2")
    await _message(gateway, mine.id, "admin-1", "admin", "untuk cust-1")
    await _message(gateway, mine.id, "cust-1", "customer", "dari cust-1")
    foreign = await _message(gateway, other.id, "admin-1", "admin", "untuk cust-2")
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)

    updated = await inbox.mark_all_as_read(CurrentUser(id="cust-1", role=ChatRole.customer))

    assert updated == 1
    stored_foreign = await gateway.find(MESSAGES_TABLE, {"id": foreign["id"]})
    assert stored_foreign[0]["read"] is False
    own = await gateway.find(MESSAGES_TABLE, {"session_id": mine.id, "sender_type": "customer"})
    assert own[0]["read"] is False


@pytest.mark.anyio
async def test_mark_all_as_read_for_customer_without_sessions(gateway, directory, inbox_viewer):
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)

    assert await inbox.mark_all_as_read(CurrentUser(id="nobody", role=ChatRole.customer)) == 0


@pytest.mark.anyio
async def test_sessions_table_is_read_for_each_customer(gateway, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    await gateway.insert(SESSIONS_TABLE, {"customer_id": "cust-1", "status": "closed"})
    inbox = InboxAggregator(gateway, directory, viewer=inbox_viewer)

    items = await inbox.refresh()

    assert items[0].last_message == "Belum ada riwayat pesan"


class _HeldMessageRead:
    """Gateway wrapper that holds the first messages read after it has
    fetched its rows, until ``release`` is set."""

    def __init__(self, inner):
        self.inner = inner
        self.holding = asyncio.Event()
        self.release = asyncio.Event()
        self._held = False

    async def find(self, table, filters=None, **kwargs):
        rows = await self.inner.find(table, filters, **kwargs)
        if table == MESSAGES_TABLE and not self._held:
            self._held = True
            self.holding.set()
            await self.release.wait()
        return rows

    def __getattr__(self, name):
        return getattr(self.inner, name)


@pytest.mark.anyio
async def test_older_refresh_finishing_late_does_not_restore_unread(gateway, resolver, directory, inbox_viewer):
    await seed_profile(gateway, "cust-1", name="Sari")
    session = await resolver.resolve_for_customer("cust-1")
    row = await _message(gateway, session.id, "cust-1", "customer", "Halo")
    held = _HeldMessageRead(gateway)
    inbox = InboxAggregator(held, directory, viewer=inbox_viewer)

    slow_refresh = asyncio.create_task(inbox.refresh())
    await held.holding.wait()
    assert await inbox.mark_as_read("cust-1", row["id"]) is True
    assert inbox.find("cust-1").unread is False

    held.release.set()
    await slow_refresh

    assert inbox.find("cust-1").unread is False
