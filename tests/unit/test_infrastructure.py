# File: tests/unit/test_infrastructure.py
"""
Unit tests for the infrastructure layer: station locks, leases, the station
inventory cache and the message bus. External clients (Redis, MongoDB) are
replaced with mocks.
"""

import json
import threading
import unittest
from unittest.mock import Mock, MagicMock, patch

import redis

from swaphub.domain.errors import OperationInProgress
from swaphub.domain.inventory import StationInventory
from swaphub.domain.models import BatteryCounts, SlotStats, BatteryStatusChangedEvent, BatteryStatus
from swaphub.infrastructure.cache import InMemoryTTLCache, StationInventoryCache
from swaphub.infrastructure.locking import InFlightRegistry, RedisInFlightRegistry, StationLockRegistry
from swaphub.infrastructure.messaging import (
    DomainEvent, EventBus, EventHandler, EventStore, EventType, InMemoryMessageQueue,
    InventoryCacheInvalidator, MessageBus, MessageBrokerFactory, RedisMessageQueue
)


# ============================================================================
# LOCKS AND LEASES
# ============================================================================

class TestStationLockRegistry(unittest.TestCase):
    """Per-station locks"""

    def test_same_lock_per_station(self):
        registry = StationLockRegistry()
        self.assertIs(registry.lock_for("s1"), registry.lock_for("s1"))
        self.assertIsNot(registry.lock_for("s1"), registry.lock_for("s2"))

    def test_hold_is_reentrant(self):
        """Nested holds on one thread do not deadlock"""
        registry = StationLockRegistry()
        with registry.hold("s1"):
            with registry.hold("s1"):
                pass

    def test_hold_excludes_other_threads(self):
        registry = StationLockRegistry()
        acquired = []

        def worker():
            acquired.append(registry.lock_for("s1").acquire(blocking=False))

        with registry.hold("s1"):
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join()

        self.assertEqual(acquired, [False])


class TestInFlightRegistry(unittest.TestCase):
    """In-process leases"""

    def test_second_acquire_rejected(self):
        registry = InFlightRegistry()
        token = registry.acquire("k")
        self.assertIsNotNone(token)
        self.assertIsNone(registry.acquire("k"))

        registry.release("k", token)
        self.assertFalse(registry.is_held("k"))

    def test_release_with_wrong_token_ignored(self):
        registry = InFlightRegistry()
        registry.acquire("k")
        registry.release("k", "not-the-token")
        self.assertTrue(registry.is_held("k"))

    def test_lease_context(self):
        """lease() raises OperationInProgress and releases on exit"""
        registry = InFlightRegistry()
        with registry.lease("k"):
            with self.assertRaises(OperationInProgress):
                with registry.lease("k"):
                    pass
        self.assertFalse(registry.is_held("k"))

    def test_lease_released_on_error(self):
        registry = InFlightRegistry()
        with self.assertRaises(RuntimeError):
            with registry.lease("k"):
                raise RuntimeError("boom")
        self.assertFalse(registry.is_held("k"))


class TestRedisInFlightRegistry(unittest.TestCase):
    """Redis leases over a mocked client"""

    def setUp(self):
        self.client = Mock()
        self.release_script = Mock()
        self.client.register_script.return_value = self.release_script
        self.registry = RedisInFlightRegistry(self.client, ttl_ms=2500)

    def test_acquire_uses_set_nx_px(self):
        self.client.set.return_value = True
        token = self.registry.acquire("favorite:u1:s1")

        self.assertIsNotNone(token)
        self.client.set.assert_called_once_with("swaphub:lease:favorite:u1:s1", token, nx=True, px=2500)

    def test_acquire_when_held(self):
        self.client.set.return_value = None
        self.assertIsNone(self.registry.acquire("k"))

    def test_release_runs_compare_and_delete(self):
        self.registry.release("k", "tok")
        self.release_script.assert_called_once_with(keys=["swaphub:lease:k"], args=["tok"])

    def test_release_error_is_logged(self):
        """A failed release leaves the lease to expire"""
        self.release_script.side_effect = redis.ConnectionError("down")
        self.registry.release("k", "tok")

    def test_lease_conflict(self):
        self.client.set.return_value = None
        with self.assertRaises(OperationInProgress):
            with self.registry.lease("k"):
                pass
        self.release_script.assert_not_called()


# ============================================================================
# CACHE
# ============================================================================

def make_inventory(station_id="s1", available=2) -> StationInventory:
    return StationInventory(
        station_id=station_id,
        capacity=4,
        soh_avg=95.0,
        battery_counts=BatteryCounts(total=available, available=available, charging=0, in_use=0, faulty=0),
        slot_stats=SlotStats(total=4, empty=4 - available, occupied=available, reserved=0),
        provisioned_slots=4
    )


class TestInMemoryTTLCache(unittest.TestCase):
    """TTL handling with a controllable clock"""

    def setUp(self):
        self.now = 100.0
        self.cache = InMemoryTTLCache(clock=lambda: self.now)

    def test_entry_expires(self):
        self.cache.set("k", "v", ex=30)
        self.now += 29
        self.assertEqual(self.cache.get("k"), "v")
        self.now += 1
        self.assertIsNone(self.cache.get("k"))

    def test_no_ttl(self):
        self.cache.set("k", "v")
        self.now += 10_000
        self.assertEqual(self.cache.get("k"), "v")

    def test_delete_counts(self):
        self.cache.set("a", 1)
        self.assertEqual(self.cache.delete("a", "b"), 1)


class TestStationInventoryCache(unittest.TestCase):
    """Read-through behaviour"""

    def test_miss_then_hit(self):
        """The loader runs once until the entry is invalidated"""
        cache = StationInventoryCache(ttl=30)
        loader = Mock(return_value=make_inventory())

        first = cache.get_or_load("s1", loader)
        second = cache.get_or_load("s1", loader)

        self.assertEqual(first, second)
        self.assertEqual(first["availableBatteries"], 2)
        loader.assert_called_once()

        cache.invalidate("s1")
        cache.get_or_load("s1", loader)
        self.assertEqual(loader.call_count, 2)

    def test_redis_client_payload(self):
        """Entries are written as JSON with the configured TTL"""
        client = Mock()
        client.get.return_value = None
        cache = StationInventoryCache(client, ttl=15)

        cache.get_or_load("s1", lambda: make_inventory())

        key, payload = client.set.call_args[0]
        self.assertEqual(key, "swaphub:station-inventory:s1")
        self.assertEqual(json.loads(payload)["_id"], "s1")
        self.assertEqual(client.set.call_args[1], {"ex": 15})

    def test_redis_read_failure_falls_through(self):
        """A broken cache never blocks the read path"""
        client = Mock()
        client.get.side_effect = redis.ConnectionError("down")
        client.set.side_effect = redis.ConnectionError("down")
        cache = StationInventoryCache(client)

        result = cache.get_or_load("s1", lambda: make_inventory(available=3))
        self.assertEqual(result["availableBatteries"], 3)

    def test_invalidation_failure_propagates(self):
        client = Mock()
        client.delete.side_effect = redis.ConnectionError("down")
        with self.assertRaises(redis.RedisError):
            StationInventoryCache(client).invalidate("s1")

    def test_invalidate_without_station(self):
        client = Mock()
        StationInventoryCache(client).invalidate(None)
        client.delete.assert_not_called()


# ============================================================================
# MESSAGING
# ============================================================================

def status_event(station_id="s1") -> DomainEvent:
    return DomainEvent.from_domain(
        BatteryStatusChangedEvent("b1", station_id, BatteryStatus.IDLE, BatteryStatus.CHARGING, "test")
    )


class TestEventBus(unittest.TestCase):
    """In-process publish/subscribe"""

    def test_handler_receives_subscribed_type(self):
        bus = EventBus()
        handler = Mock(spec=EventHandler)
        handler.can_handle.return_value = True
        bus.subscribe(EventType.BATTERY_STATUS_CHANGED, handler)

        event = status_event()
        bus.publish(event)
        handler.handle.assert_called_once_with(event)

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        failing, healthy = Mock(spec=EventHandler), Mock(spec=EventHandler)
        failing.can_handle.return_value = True
        healthy.can_handle.return_value = True
        failing.handle.side_effect = RuntimeError("boom")
        bus.subscribe(EventType.BATTERY_STATUS_CHANGED, failing)
        bus.subscribe(EventType.BATTERY_STATUS_CHANGED, healthy)

        bus.publish(status_event())
        healthy.handle.assert_called_once()

    def test_domain_event_wrapping(self):
        """Aggregate events keep their station id on the bus"""
        event = status_event("s9")
        self.assertEqual(event.event_type, EventType.BATTERY_STATUS_CHANGED)
        self.assertEqual(event.station_id, "s9")
        self.assertEqual(event.aggregate_id, "b1")


class TestMessageBus(unittest.TestCase):
    """Routing and outbox delivery"""

    def test_routes_to_bus_queue_and_store(self):
        queue = InMemoryMessageQueue()
        store = Mock()
        bus = MessageBus(EventBus(), queue, store)

        event = status_event()
        bus.publish_event(event)

        store.save.assert_called_once_with(event)
        self.assertEqual(queue.get_messages(MessageBus.EVENTS_TOPIC), [event])

    def test_outbox_retries_then_dead_letters(self):
        """Queue failures are retried and then parked, never raised"""
        queue = Mock()
        queue.publish.side_effect = redis.ConnectionError("down")
        bus = MessageBus(EventBus(), queue)
        bus.retry_delay = 0

        bus.publish_event(status_event())

        self.assertEqual(queue.publish.call_count, bus.max_retries)
        self.assertEqual(len(bus.dead_letters), 1)

    def test_outbox_recovers_after_transient_failure(self):
        queue = Mock()
        queue.publish.side_effect = [redis.ConnectionError("blip"), True]
        bus = MessageBus(EventBus(), queue)
        bus.retry_delay = 0

        bus.publish_event(status_event())
        self.assertEqual(queue.publish.call_count, 2)
        self.assertEqual(bus.dead_letters, [])

    def test_publish_domain_events_counts(self):
        bus = MessageBus(EventBus())
        events = [
            BatteryStatusChangedEvent("b1", "s1", BatteryStatus.IDLE, BatteryStatus.CHARGING),
            BatteryStatusChangedEvent("b2", "s1", BatteryStatus.IDLE, BatteryStatus.FULL),
        ]
        self.assertEqual(bus.publish_domain_events(events), 2)


class TestInventoryCacheInvalidator(unittest.TestCase):
    """Inventory events drop the station's cache entry"""

    def test_invalidates_station(self):
        cache = Mock()
        event_bus = EventBus()
        InventoryCacheInvalidator(cache).subscribe_all(event_bus)

        event_bus.publish(status_event("s1"))
        cache.invalidate.assert_called_once_with("s1")

    def test_transfer_invalidates_both_stations(self):
        cache = Mock()
        handler = InventoryCacheInvalidator(cache)
        event = DomainEvent(
            event_type=EventType.BATTERY_TRANSFERRED,
            aggregate_id="b1",
            data={"station_id": "s2", "from_station_id": "s1"}
        )
        handler.handle(event)
        self.assertEqual([c.args[0] for c in cache.invalidate.call_args_list], ["s2", "s1"])

    def test_ignores_events_without_station(self):
        handler = InventoryCacheInvalidator(Mock())
        event = DomainEvent(event_type=EventType.BATTERY_STATUS_CHANGED, data={})
        self.assertFalse(handler.can_handle(event))


class TestExternalBrokers(unittest.TestCase):
    """Redis queue and MongoDB store with patched clients"""

    @patch("swaphub.infrastructure.messaging.redis.Redis.from_url")
    def test_redis_queue_publishes_json(self, from_url):
        client = MagicMock()
        client.publish.return_value = 1
        from_url.return_value = client

        queue = RedisMessageQueue("redis://cache:6379")
        event = status_event()
        self.assertTrue(queue.publish("swaphub.events", event))

        topic, payload = client.publish.call_args[0]
        self.assertEqual(topic, "swaphub.events")
        self.assertEqual(json.loads(payload)["event_type"], "battery_status_changed")

    @patch("swaphub.infrastructure.messaging.redis.Redis.from_url")
    def test_redis_queue_dispatches_received_message(self, from_url):
        from_url.return_value = MagicMock()
        queue = RedisMessageQueue()
        received = []
        with patch.object(RedisMessageQueue, "_start_listener"):
            subscription_id = queue.subscribe("swaphub.events", received.append)
        queue.pubsub.subscribe.assert_called_once_with("swaphub.events")

        event = status_event()
        queue._handle_message({"channel": b"swaphub.events", "data": event.to_json().encode("utf-8")})

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].event_type, EventType.BATTERY_STATUS_CHANGED)
        self.assertEqual(received[0].station_id, "s1")

        self.assertTrue(queue.unsubscribe(subscription_id))
        queue.pubsub.unsubscribe.assert_called_once_with("swaphub.events")
        self.assertFalse(queue.unsubscribe(subscription_id))

    @patch("swaphub.infrastructure.messaging.redis.Redis.from_url")
    def test_malformed_message_is_dropped(self, from_url):
        from_url.return_value = MagicMock()
        queue = RedisMessageQueue()
        callback = Mock()
        queue._subscriptions["sub"] = "t"
        queue._callbacks["sub"] = callback

        queue._handle_message({"channel": "t", "data": "not json"})
        callback.assert_not_called()

    @patch("swaphub.infrastructure.messaging.pymongo.MongoClient")
    def test_event_store_document(self, mongo_client):
        collection = MagicMock()
        mongo_client.return_value.__getitem__.return_value.__getitem__.return_value = collection

        store = EventStore("mongodb://events:27017")
        event = status_event("s1")
        store.save(event)

        document = collection.insert_one.call_args[0][0]
        self.assertEqual(document["_id"], str(event.message_id))
        self.assertEqual(document["station_id"], "s1")
        self.assertEqual(document["event_type"], "battery_status_changed")

    @patch("swaphub.infrastructure.messaging.pymongo.MongoClient")
    @patch("swaphub.infrastructure.messaging.redis.Redis.from_url")
    def test_factory_wires_external_components(self, from_url, mongo_client):
        bus = MessageBrokerFactory.create_message_bus("redis://cache:6379", "mongodb://events:27017")
        self.assertIsInstance(bus.message_queue, RedisMessageQueue)
        self.assertIsInstance(bus.event_store, EventStore)

    def test_factory_without_external_components(self):
        bus = MessageBrokerFactory.create_message_bus()
        self.assertIsNone(bus.message_queue)
        self.assertIsNone(bus.event_store)


if __name__ == '__main__':
    unittest.main()
