"""
Tests for the conversation log and outbound queue stores.

Every test runs against both InMemoryBridgeStore and SqlBridgeStore.

Tests cover:
- Per-conversation ordering under concurrent writers
- Message + outbound entry written atomically
- Forward-only status transitions
- Single-claimant claims under contention
"""

import threading

import pytest

from chatbridge.errors import ConcurrencyConflict, MessageNotFound, ValidationError
from chatbridge.schemas import MessageStatus, SenderRole
from chatbridge.sql_store import SqlBridgeStore
from chatbridge.storage import Base, SessionLocal, engine
from chatbridge.store import InMemoryBridgeStore, next_created_at

KEY = "+560000001"
TARGET = "+569999999"


@pytest.fixture(params=["memory", "sql"])
def store(request):
    if request.param == "memory":
        yield InMemoryBridgeStore()
        return
    Base.metadata.create_all(bind=engine)
    yield SqlBridgeStore(SessionLocal)
    Base.metadata.drop_all(bind=engine)


def bot_reply(store, text="Gracias", key=KEY):
    return store.append_message(
        conversation_key=key,
        sender_role=SenderRole.BOT,
        sender_id="bot-system",
        text=text,
        initial_status=MessageStatus.DELIVERED_TO_USER,
    )


def user_send(store, text="Hola", key=KEY, user_id="user-u"):
    return store.append_user_message(
        conversation_key=key,
        origin_user_id=user_id,
        text=text,
        target_channel_address=TARGET,
    )


def run_concurrently(target, count):
    """Start ``count`` threads on ``target(i)`` behind a barrier and wait for all of them."""
    barrier = threading.Barrier(count)
    errors = []

    def worker(i):
        barrier.wait()
        try:
            target(i)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


class TestAppend:

    def test_user_send_writes_message_and_outbound(self, store):
        message, outbound = user_send(store)

        assert message.status == "pending_to_channel"
        assert message.sender_role == "user"
        assert outbound.message_id == message.id
        assert outbound.origin_phone == KEY
        assert outbound.claimed_at is None
        assert store.get_outbound(outbound.id).text == "Hola"

    def test_pending_status_needs_outbound_entry(self, store):
        with pytest.raises(ValidationError):
            store.append_message(
                conversation_key=KEY,
                sender_role=SenderRole.USER,
                sender_id="user-u",
                text="Hola",
                initial_status=MessageStatus.PENDING_TO_CHANNEL,
            )
        assert store.list_messages(KEY) == []

    def test_bot_cannot_start_failed(self, store):
        with pytest.raises(ValidationError):
            store.append_message(KEY, SenderRole.BOT, "bot-system", "x", MessageStatus.FAILED)

    def test_empty_text_rejected(self, store):
        with pytest.raises(ValidationError) as exc_info:
            user_send(store, text="")

        assert "text" in exc_info.value.fields
        assert store.stats()["total_messages"] == 0

    def test_outbound_failure_leaves_nothing_behind(self, store, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(store, "_new_outbound", broken)

        with pytest.raises(RuntimeError):
            user_send(store)

        stats = store.stats()
        assert stats["total_messages"] == 0
        assert stats["outbound_pending"] == 0
        assert store.list_messages(KEY) == []


class TestOrdering:

    def test_thread_in_append_order(self, store):
        first, _ = user_send(store, "Hola")
        second = bot_reply(store, "Gracias")
        third, _ = user_send(store, "Adios")

        thread = store.list_messages(KEY)

        assert [m.id for m in thread] == [first.id, second.id, third.id]
        assert first.created_at <= second.created_at <= third.created_at

    def test_concurrent_writers_totally_ordered(self, store):
        errors = run_concurrently(
            lambda i: user_send(store, f"u{i}") if i % 2 else bot_reply(store, f"b{i}"),
            count=8,
        )

        assert errors == []
        thread = store.list_messages(KEY)
        assert len(thread) == 8
        keys = [(m.created_at, m.seq) for m in thread]
        assert keys == sorted(keys)
        assert len({m.seq for m in thread}) == 8

    def test_limit_returns_newest_oldest_first(self, store):
        for text in ("uno", "dos", "tres", "cuatro"):
            bot_reply(store, text)

        assert [m.text for m in store.list_messages(KEY, limit=2)] == ["tres", "cuatro"]
        assert store.count_messages(KEY) == 4

    def test_conversations_are_independent(self, store):
        bot_reply(store, "para u", key=KEY)
        bot_reply(store, "para v", key="+560000002")

        assert [m.text for m in store.list_messages(KEY)] == ["para u"]
        assert store.list_messages("+560000099") == []

    def test_list_conversations_most_recent_first(self, store):
        bot_reply(store, key=KEY)
        bot_reply(store, key="+560000002")
        bot_reply(store, key="+560000002")

        summaries = store.list_conversations()

        assert [s.conversation_key for s in summaries] == ["+560000002", KEY]
        assert [s.message_count for s in summaries] == [2, 1]


class TestReadsDuringWrites:

    def test_summaries_while_new_conversations_appear(self, store):
        def work(i):
            if i % 2:
                for n in range(20):
                    bot_reply(store, key=f"+5700{i:02d}{n:04d}")
            else:
                for _ in range(20):
                    store.list_conversations()
                    store.stats()
                    store.count_messages(KEY)

        errors = run_concurrently(work, count=6)

        assert errors == []
        assert store.stats()["conversations_count"] == 60
        assert len(store.list_conversations()) == 60


class TestCreatedAtClamp:

    def test_never_goes_backwards(self):
        future = "2999-01-01T00:00:00.000000Z"
        assert next_created_at(future) == future

    def test_uses_now_when_ahead(self):
        past = "2000-01-01T00:00:00.000000Z"
        assert next_created_at(past) > past
        assert next_created_at(None).endswith("Z")


class TestTransitions:

    def test_pending_to_delivered(self, store):
        message, _ = user_send(store)

        updated = store.transition_status(message.id, MessageStatus.DELIVERED_TO_USER)

        assert updated.status == "delivered_to_user"
        assert store.get_message(message.id).status == "delivered_to_user"

    def test_delivered_cannot_go_back_to_pending(self, store):
        message, _ = user_send(store)
        store.transition_status(message.id, MessageStatus.DELIVERED_TO_USER)

        with pytest.raises(ConcurrencyConflict):
            store.transition_status(message.id, MessageStatus.PENDING_TO_CHANNEL)

        assert store.get_message(message.id).status == "delivered_to_user"

    def test_failed_is_terminal(self, store):
        message, _ = user_send(store)
        store.transition_status(message.id, MessageStatus.FAILED)

        with pytest.raises(ConcurrencyConflict):
            store.transition_status(message.id, MessageStatus.DELIVERED_TO_USER)

    def test_bot_messages_never_transition(self, store):
        reply = bot_reply(store)

        with pytest.raises(ConcurrencyConflict):
            store.transition_status(reply.id, MessageStatus.FAILED)

    def test_unknown_message(self, store):
        with pytest.raises(MessageNotFound):
            store.transition_status("nope", MessageStatus.FAILED)


class TestClaims:

    def test_claim_once(self, store):
        _, outbound = user_send(store)

        claimed = store.claim_outbound(outbound.id, claimant="agent-1")

        assert claimed.claimed_by == "agent-1"
        assert claimed.claimed_at is not None
        with pytest.raises(ConcurrencyConflict):
            store.claim_outbound(outbound.id, claimant="agent-2")

    def test_claim_unknown(self, store):
        with pytest.raises(MessageNotFound):
            store.claim_outbound("nope")

    def test_concurrent_single_claims_have_one_winner(self, store):
        _, outbound = user_send(store)
        winners = []

        def claim(i):
            winners.append(store.claim_outbound(outbound.id, claimant=f"agent-{i}"))

        errors = run_concurrently(claim, count=6)

        assert len(winners) == 1
        assert len(errors) == 5
        assert all(isinstance(e, ConcurrencyConflict) for e in errors)

    def test_concurrent_batch_claims_never_share_entries(self, store):
        for i in range(10):
            user_send(store, f"m{i}")
        batches = {}

        def claim(i):
            batches[i] = store.claim_pending(TARGET, claimant=f"agent-{i}", limit=4)

        errors = run_concurrently(claim, count=4)

        assert errors == []
        ids = [entry.id for batch in batches.values() for entry in batch]
        assert len(ids) == 10
        assert len(set(ids)) == 10

    def test_batch_claim_refills_entries_taken_by_another_claimant(self, store, monkeypatch):
        if not isinstance(store, SqlBridgeStore):
            pytest.skip("conditional row claims only exist in the SQL store")
        outbounds = [user_send(store, f"m{i}")[1] for i in range(4)]
        claim_row = store._claim_row

        def claimed_elsewhere_first(session, outbound_id, claimant, now):
            if outbound_id == outbounds[0].id:
                store.claim_outbound(outbound_id, claimant="agent-fast")
            return claim_row(session, outbound_id, claimant, now)

        monkeypatch.setattr(store, "_claim_row", claimed_elsewhere_first)

        claimed = store.claim_pending(TARGET, claimant="agent-slow", limit=2)

        assert [c.text for c in claimed] == ["m1", "m2"]
        assert all(c.claimed_by == "agent-slow" for c in claimed)
        assert store.get_outbound(outbounds[0].id).claimed_by == "agent-fast"

    def test_batch_claim_oldest_first_per_target(self, store):
        user_send(store, "uno")
        store.append_user_message(KEY, "user-u", "otro destino", "+561111111")
        user_send(store, "dos")

        claimed = store.claim_pending(TARGET, limit=10)

        assert [c.text for c in claimed] == ["uno", "dos"]
        assert store.claim_pending(TARGET) == []
        assert store.stats()["outbound_pending"] == 1
