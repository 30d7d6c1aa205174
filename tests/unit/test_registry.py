"""Unit tests for the subscription registry and its reconnect handling."""

import asyncio
from unittest.mock import MagicMock

import pytest
from realtime import RealtimeSubscribeStates

from relaychat.core.exceptions import RetryExhaustedError
from relaychat.realtime.keys import RowFilter, SubscriptionConfig, channel_key
from relaychat.realtime.policy import ReconnectPolicy
from relaychat.realtime.registry import SubscriptionRegistry, SubscriptionState
from relaychat.realtime.transport import ChangeFeedClient
from relaychat.schemas.realtime import ChangeEventType


def _messages_in(channel_id: str) -> SubscriptionConfig:
    return SubscriptionConfig(
        table="messages",
        event=ChangeEventType.INSERT,
        filter=RowFilter.eq("channel_id", channel_id),
    )


class TestSubscribe:
    """Test suite for subscribing and deduplication."""

    @pytest.mark.asyncio
    async def test_subscribe_opens_channel(self, registry, feed, settle):
        config = _messages_in("C1")

        key = await registry.subscribe(config, MagicMock())
        await settle()

        assert key == channel_key(config)
        assert registry.is_active(key)
        assert registry.get_state(key) is SubscriptionState.SUBSCRIBED
        assert [channel.topic for channel in feed.channels] == [key]

    @pytest.mark.asyncio
    async def test_duplicate_subscribe_returns_same_key(self, registry, feed, settle):
        first = await registry.subscribe(_messages_in("C1"), MagicMock())
        second = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        assert first == second
        assert len(feed.channels) == 1
        assert registry.list_active_keys() == {first}

    @pytest.mark.asyncio
    async def test_concurrent_subscribes_open_one_channel(self, registry, feed, settle):
        keys = await asyncio.gather(
            registry.subscribe(_messages_in("C1"), MagicMock()),
            registry.subscribe(_messages_in("C1"), MagicMock()),
        )
        await settle()

        assert keys[0] == keys[1]
        assert len(feed.channels) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_closes_channel(self, registry, feed, settle):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        await registry.unsubscribe(key)

        assert not registry.is_active(key)
        assert registry.get_state(key) is None
        assert feed.channels[0].unsubscribed
        assert feed.live_channels == []

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_key_is_noop(self, registry):
        await registry.unsubscribe("realtime:public:nothing:*:all")

        assert registry.list_active_keys() == set()

    @pytest.mark.asyncio
    async def test_discard_removes_immediately(self, registry, feed, settle):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        registry.discard(key)

        assert not registry.is_active(key)
        await settle()
        assert feed.channels[0].unsubscribed


class TestDelivery:
    """Test suite for change delivery through subscribed channels."""

    @pytest.mark.asyncio
    async def test_filtered_insert_reaches_matching_subscriber_only(
        self, registry, store, settle
    ):
        c1_changes = []
        c2_changes = []
        await registry.subscribe(_messages_in("C1"), c1_changes.append)
        await registry.subscribe(_messages_in("C2"), c2_changes.append)
        await settle()

        await store.upsert("messages", {"id": "m1", "channel_id": "C1", "content": "hi"})
        await settle()

        assert len(c1_changes) == 1
        assert c1_changes[0].new["id"] == "m1"
        assert c1_changes[0].event_type is ChangeEventType.INSERT
        assert c2_changes == []

    @pytest.mark.asyncio
    async def test_insert_only_subscription_ignores_updates(self, registry, store, settle):
        changes = []
        await registry.subscribe(_messages_in("C1"), changes.append)
        await settle()

        await store.upsert("messages", {"id": "m1", "channel_id": "C1", "content": "hi"})
        await store.upsert("messages", {"id": "m1", "channel_id": "C1", "content": "edited"})
        await settle()

        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_async_callback_receives_changes(self, registry, store, settle):
        changes = []

        async def on_change(change):
            changes.append(change)

        await registry.subscribe(SubscriptionConfig(table="reactions"), on_change)
        await settle()

        await store.upsert("reactions", {"id": "r1", "message_id": "m1", "emoji": "+1"})
        await settle()

        assert [change.new["id"] for change in changes] == ["r1"]

    @pytest.mark.asyncio
    async def test_async_callback_sees_changes_in_emit_order(self, registry, store, settle):
        first_may_finish = asyncio.Event()
        finished = []

        async def on_change(change):
            if change.new["id"] == "m1":
                await first_may_finish.wait()
            finished.append(change.new["id"])

        await registry.subscribe(_messages_in("c1"), on_change)
        await settle()

        await store.upsert("messages", {"id": "m1", "channel_id": "c1"})
        await store.upsert("messages", {"id": "m2", "channel_id": "c1"})
        await settle()
        assert finished == []

        first_may_finish.set()
        await settle()

        assert finished == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_block_later_changes(self, registry, store, settle):
        seen = []

        async def on_change(change):
            seen.append(change.new["id"])
            if change.new["id"] == "m1":
                raise RuntimeError("consumer failed")

        await registry.subscribe(_messages_in("c1"), on_change)
        await settle()

        await store.upsert("messages", {"id": "m1", "channel_id": "c1"})
        await store.upsert("messages", {"id": "m2", "channel_id": "c1"})
        await settle()

        assert seen == ["m1", "m2"]


class TestReconnect:
    """Test suite for retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_dropped_channel_resubscribes(self, registry, feed, sleeper, settle):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        feed.channels_named(key)[0].drop()
        await settle()

        assert sleeper.delays == [1.0]
        assert len(feed.channels_named(key)) == 2
        assert registry.get_state(key) is SubscriptionState.SUBSCRIBED
        assert registry.get_stats()["channels"][key]["attempts"] == 0

    @pytest.mark.asyncio
    async def test_resubscribed_channel_still_delivers(self, registry, feed, store, settle):
        changes = []
        key = await registry.subscribe(_messages_in("C1"), changes.append)
        await settle()

        feed.channels_named(key)[0].drop(RealtimeSubscribeStates.CHANNEL_ERROR)
        await settle()
        await store.upsert("messages", {"id": "m1", "channel_id": "C1"})
        await settle()

        assert len(changes) == 1

    @pytest.mark.asyncio
    async def test_timed_out_is_retried_like_closed(self, registry, feed, sleeper, settle):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        feed.channels_named(key)[0].drop(RealtimeSubscribeStates.TIMED_OUT)
        await settle()

        assert sleeper.delays == [1.0]
        assert registry.get_state(key) is SubscriptionState.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, registry, feed, sleeper, settle):
        """An unrecoverable channel is retried 3 times, then removed."""
        on_lost = MagicMock()
        feed.join_reply = RealtimeSubscribeStates.CLOSED

        key = await registry.subscribe(_messages_in("C1"), MagicMock(), on_lost=on_lost)
        await settle()

        assert sleeper.delays == [1.0, 2.0, 4.0]
        assert len(feed.channels_named(key)) == 4
        assert not registry.is_active(key)
        on_lost.assert_called_once()
        lost_key, error = on_lost.call_args.args
        assert lost_key == key
        assert isinstance(error, RetryExhaustedError)
        assert error.details["attempts"] == 3

    @pytest.mark.asyncio
    async def test_successful_join_resets_attempts(self, registry, feed, sleeper, settle):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        for _ in range(5):
            feed.channels_named(key)[-1].drop()
            await settle()

        # Each drop is followed by a successful rejoin, so the first delay repeats
        assert sleeper.delays == [1.0] * 5
        assert registry.is_active(key)

    @pytest.mark.asyncio
    async def test_zero_retry_policy_drops_at_once(self, backend, sleeper, settle):
        registry = SubscriptionRegistry(
            ChangeFeedClient(backend.transport),
            ReconnectPolicy(max_retries=0),
            sleep=sleeper,
        )
        on_lost = MagicMock()
        key = await registry.subscribe(_messages_in("C1"), MagicMock(), on_lost=on_lost)
        await settle()

        backend.transport.channels_named(key)[0].drop()
        await settle()

        assert sleeper.delays == []
        assert not registry.is_active(key)
        on_lost.assert_called_once()

    @pytest.mark.asyncio
    async def test_open_failure_is_retried(self, registry, feed, sleeper, settle):
        feed.fail_subscribe = RuntimeError("socket unavailable")

        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        feed.fail_subscribe = None
        await settle()

        assert sleeper.delays == [1.0]
        assert registry.get_state(key) is SubscriptionState.SUBSCRIBED

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels_pending_retry(self, backend, gated_sleep, settle):
        registry = SubscriptionRegistry(ChangeFeedClient(backend.transport), sleep=gated_sleep)
        feed = backend.transport
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        feed.channels_named(key)[0].drop()
        await settle()
        assert gated_sleep.delays == [1.0]

        await registry.unsubscribe(key)
        gated_sleep.release()
        await settle()

        assert not registry.is_active(key)
        assert len(feed.channels_named(key)) == 1
        assert feed.live_channels == []

    @pytest.mark.asyncio
    async def test_discarded_key_is_never_reopened(self, backend, gated_sleep, settle):
        registry = SubscriptionRegistry(ChangeFeedClient(backend.transport), sleep=gated_sleep)
        feed = backend.transport
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()
        feed.channels_named(key)[0].drop()
        await settle()

        registry.discard(key)
        gated_sleep.release()
        await settle()

        assert len(feed.channels_named(key)) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_during_retry_still_leaves_old_channel(
        self, backend, sleeper, settle
    ):
        feed = backend.transport
        client = ChangeFeedClient(feed)
        leave_may_finish = asyncio.Event()
        close = client.close

        async def slow_close(channel, name=""):
            if channel is not None:
                await leave_may_finish.wait()
            await close(channel, name)

        client.close = slow_close
        registry = SubscriptionRegistry(client, sleep=sleeper)
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()
        old_channel = feed.channels_named(key)[0]

        old_channel.drop()
        await settle()
        await registry.unsubscribe(key)
        leave_may_finish.set()
        await settle()

        assert old_channel.unsubscribed
        assert not registry.is_active(key)
        assert len(feed.channels_named(key)) == 1

    @pytest.mark.asyncio
    async def test_resubscribe_after_unsubscribe_starts_fresh(
        self, registry, feed, sleeper, settle
    ):
        key = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()
        await registry.unsubscribe(key)

        again = await registry.subscribe(_messages_in("C1"), MagicMock())
        await settle()

        assert again == key
        assert len(feed.channels_named(key)) == 2
        assert registry.get_state(key) is SubscriptionState.SUBSCRIBED
        assert sleeper.delays == []


@pytest.mark.asyncio
async def test_close_all(registry, feed, settle):
    await registry.subscribe(_messages_in("C1"), MagicMock())
    await registry.subscribe(_messages_in("C2"), MagicMock())
    await settle()

    await registry.close_all()

    assert registry.list_active_keys() == set()
    assert all(channel.unsubscribed for channel in feed.channels)
