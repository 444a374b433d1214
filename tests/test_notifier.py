"""
Tests for the cross-context change bus and the record store that feeds it
"""
import asyncio

from shesurvived.database import EMERGENCIES_KEY, HISTORY_KEY, MemoryBackend, RecordStore
from shesurvived.notifier import ANY_KEY, ChangeBus


class TestChangeBus:

    async def test_other_contexts_receive_writes(self):
        bus = ChangeBus()
        seen = []
        bus.subscribe("emergencies", lambda e: seen.append(e.new_value), context="tab-2")

        bus.publish("emergencies", '{"a": 1}', origin="tab-1")
        await bus.flush()

        assert seen == ['{"a": 1}']
        bus.close()

    async def test_writer_does_not_hear_itself(self):
        bus = ChangeBus()
        seen = []
        bus.subscribe("emergencies", lambda e: seen.append(e), context="tab-1")

        bus.publish("emergencies", "{}", origin="tab-1")
        await bus.flush()

        assert seen == []
        bus.close()

    async def test_same_key_delivered_in_write_order(self):
        bus = ChangeBus()
        seen = []

        async def slow_handler(event):
            await asyncio.sleep(0.001)
            seen.append(event.new_value)

        bus.subscribe("emergencyData", slow_handler, context="viewer")
        for i in range(10):
            bus.publish("emergencyData", str(i), origin="writer")
        await bus.flush()

        assert seen == [str(i) for i in range(10)]
        bus.close()

    async def test_key_filter_and_wildcard(self):
        bus = ChangeBus()
        only_history, everything = [], []
        bus.subscribe(HISTORY_KEY, lambda e: only_history.append(e.key))
        bus.subscribe(ANY_KEY, lambda e: everything.append(e.key))

        bus.publish(EMERGENCIES_KEY, "{}")
        bus.publish(HISTORY_KEY, "{}")
        await bus.flush()

        assert only_history == [HISTORY_KEY]
        assert everything == [EMERGENCIES_KEY, HISTORY_KEY]
        bus.close()

    async def test_unsubscribe_stops_delivery(self):
        bus = ChangeBus()
        seen = []
        subscription = bus.subscribe("k", lambda e: seen.append(e.new_value))

        bus.publish("k", "1")
        await bus.flush()
        subscription.unsubscribe()
        bus.publish("k", "2")
        await bus.flush()

        assert seen == ["1"]
        assert bus.subscriber_count() == 0

    async def test_subscription_as_context_manager(self):
        bus = ChangeBus()
        async with bus.subscribe("k", lambda e: None):
            assert bus.subscriber_count("k") == 1
        assert bus.subscriber_count("k") == 0

    async def test_failing_handler_does_not_stop_delivery(self):
        bus = ChangeBus()
        seen = []

        def handler(event):
            if event.new_value == "bad":
                raise RuntimeError("boom")
            seen.append(event.new_value)

        bus.subscribe("k", handler)
        bus.publish("k", "bad")
        bus.publish("k", "good")
        await bus.flush()

        assert seen == ["good"]
        bus.close()


class TestRecordStore:

    async def test_missing_key_reads_default(self, store):
        assert await store.read("safetyUsers", []) == []
        assert await store.get_item("safetyUser") is None

    async def test_write_publishes_serialized_value(self):
        bus = ChangeBus()
        store = RecordStore(MemoryBackend(), bus)
        seen = []
        bus.subscribe("emergencies", lambda e: seen.append((e.new_value, e.origin)), context="other")

        await store.write("emergencies", {"1": {"active": True}}, origin="mine")
        await bus.flush()

        assert await store.read("emergencies") == {"1": {"active": True}}
        assert seen == [('{"1": {"active": true}}', "mine")]
        bus.close()

    async def test_remove_publishes_none(self, store):
        seen = []
        store.bus.subscribe("safetyUser", lambda e: seen.append(e.new_value))

        await store.write("safetyUser", {"id": "1"})
        await store.remove_item("safetyUser")
        await store.bus.flush()

        assert await store.get_item("safetyUser") is None
        assert seen == ['{"id": "1"}', None]

    async def test_corrupt_value_reads_default(self, store):
        await store.set_item("emergencies", "{not json")
        assert await store.read("emergencies", {}) == {}
