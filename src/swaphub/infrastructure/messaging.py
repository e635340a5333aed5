# File: src/swaphub/infrastructure/messaging.py
"""
Messaging Infrastructure for the Battery Swap Platform

This module implements messaging patterns for event-driven communication:
1. Event Bus - For intra-process event publishing/subscription
2. Message Queue - For inter-process messaging (Redis Pub/Sub or in-memory)
3. Event Store - MongoDB audit trail of every published domain event
4. Message Bus - Routes committed domain events to all three
5. Event Handlers - Inventory cache invalidation and audit logging

Domain events are handed to the bus only after their unit of work has
committed. Handler and broker failures are logged and never undo a commit.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Any, Callable, Iterable, Tuple
from datetime import datetime
import logging
import json
from dataclasses import dataclass, asdict, field
from enum import Enum
from uuid import UUID, uuid4
import time
import threading

import redis
import pymongo
from pymongo.errors import PyMongoError

from ..domain import models as domain
from .cache import StationInventoryCache


# ============================================================================
# MESSAGE TYPES AND ENUMS
# ============================================================================

class MessageType(str, Enum):
    """Types of messages in the system"""
    DOMAIN_EVENT = "domain_event"


class EventType(str, Enum):
    """Domain event types"""
    # Battery events
    BATTERY_REGISTERED = "battery_registered"
    BATTERY_STATUS_CHANGED = "battery_status_changed"
    BATTERY_HEALTH_UPDATED = "battery_health_updated"
    BATTERY_TRANSFERRED = "battery_transferred"
    BATTERY_RETIRED = "battery_retired"

    # Slot and pillar events
    SLOT_STATUS_CHANGED = "slot_status_changed"
    PILLAR_CREATED = "pillar_created"

    # Station events
    STATION_UPDATED = "station_updated"

    # Booking events
    BOOKING_STATUS_CHANGED = "booking_status_changed"
    TRANSACTION_RECORDED = "transaction_recorded"

    # Membership events
    FAVORITE_TOGGLED = "favorite_toggled"

    # Support events
    SUPPORT_REQUEST_STATUS_CHANGED = "support_request_status_changed"

    # Feedback events
    FEEDBACK_SUBMITTED = "feedback_submitted"


# Events after which a station's inventory figures may have changed
INVENTORY_EVENTS = (
    EventType.BATTERY_REGISTERED,
    EventType.BATTERY_STATUS_CHANGED,
    EventType.BATTERY_HEALTH_UPDATED,
    EventType.BATTERY_TRANSFERRED,
    EventType.BATTERY_RETIRED,
    EventType.SLOT_STATUS_CHANGED,
    EventType.PILLAR_CREATED,
    EventType.STATION_UPDATED,
)


# ============================================================================
# MESSAGE BASE CLASSES
# ============================================================================

@dataclass
class Message:
    """Base message class"""
    message_id: UUID = field(default_factory=uuid4)
    message_type: MessageType = MessageType.DOMAIN_EVENT
    timestamp: datetime = field(default_factory=datetime.utcnow)
    correlation_id: Optional[UUID] = None
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert message to dictionary"""
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        """Convert message to JSON string"""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        """Create message from dictionary"""
        data = dict(data)
        data['timestamp'] = datetime.fromisoformat(data['timestamp'])
        data['message_id'] = UUID(str(data['message_id']))
        data['message_type'] = MessageType(data.get('message_type', MessageType.DOMAIN_EVENT))
        if data.get('correlation_id'):
            data['correlation_id'] = UUID(str(data['correlation_id']))
        return cls(**data)


@dataclass
class DomainEvent(Message):
    """Domain event message"""
    event_type: EventType = EventType.STATION_UPDATED
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    version: int = 1

    def __post_init__(self):
        self.message_type = MessageType.DOMAIN_EVENT
        self.event_type = EventType(self.event_type)

    @property
    def station_id(self) -> Optional[str]:
        return self.data.get('station_id')

    @classmethod
    def from_domain(cls, event: domain.DomainEvent, source: str = "swaphub") -> 'DomainEvent':
        """Wrap an aggregate's domain event for the bus"""
        payload = event.to_dict()
        return cls(
            message_id=UUID(payload['event_id']),
            timestamp=event.timestamp,
            source=source,
            event_type=EventType(payload['event_type']),
            aggregate_id=payload['aggregate_id'],
            aggregate_type=payload['aggregate_type'],
            data=payload['data']
        )


# ============================================================================
# EVENT HANDLERS
# ============================================================================

class EventHandler(ABC):
    """Abstract base class for event handlers"""

    @abstractmethod
    def handle(self, event: DomainEvent) -> None:
        """Handle a domain event"""
        pass

    def can_handle(self, event: DomainEvent) -> bool:
        """Check if this handler can handle the event"""
        return True


# ============================================================================
# EVENT BUS (In-memory)
# ============================================================================

class EventBus:
    """
    In-memory event bus for intra-process event publishing

    Handlers run synchronously in the publishing thread, after the commit
    that produced the event.
    """

    def __init__(self):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Subscribe to events of a specific type"""
        with self._lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                self._logger.debug(f"Subscribed {handler.__class__.__name__} to {event_type.value}")

    def publish(self, event: DomainEvent) -> None:
        """Publish an event to all subscribers"""
        self._logger.debug(f"Publishing event: {event.event_type.value} (ID: {event.message_id})")

        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, []))

        for handler in handlers:
            if handler.can_handle(event):
                try:
                    handler.handle(event)
                except Exception as e:
                    self._logger.error(
                        f"Error handling event {event.event_type.value} with {handler.__class__.__name__}: {e}"
                    )


# ============================================================================
# MESSAGE QUEUE ABSTRACTIONS
# ============================================================================

class MessageQueue(ABC):
    """Abstract base class for message queues"""

    @abstractmethod
    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a topic"""
        pass

    @abstractmethod
    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to messages from a topic"""
        pass

    @abstractmethod
    def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe from a topic"""
        pass

    def close(self) -> None:
        pass


# ============================================================================
# REDIS MESSAGE QUEUE
# ============================================================================

class RedisMessageQueue(MessageQueue):
    """Redis-based message queue using Pub/Sub"""

    def __init__(self, redis_url: str = "redis://localhost:6379", **kwargs):
        self.redis_url = redis_url
        self._logger = logging.getLogger(self.__class__.__name__)

        # Redis connection
        self.redis_client = redis.Redis.from_url(redis_url, **kwargs)
        self.pubsub = self.redis_client.pubsub()

        # Subscription tracking
        self._subscriptions: Dict[str, str] = {}  # subscription_id -> topic
        self._callbacks: Dict[str, Callable[[Message], None]] = {}
        self._running = False
        self._thread: Optional[threading.Thread] = None

    def publish(self, topic: str, message: Message) -> bool:
        """Publish a message to a Redis channel"""
        try:
            result = self.redis_client.publish(topic, message.to_json())
            self._logger.debug(f"Published message to {topic}: {message.message_id}")
            return result >= 0
        except redis.RedisError as e:
            self._logger.error(f"Error publishing to Redis: {e}")
            raise

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        """Subscribe to a Redis channel"""
        subscription_id = str(uuid4())

        self._subscriptions[subscription_id] = topic
        self._callbacks[subscription_id] = callback
        self.pubsub.subscribe(topic)

        if not self._running:
            self._start_listener()

        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe from a Redis channel"""
        if subscription_id not in self._subscriptions:
            return False

        topic = self._subscriptions.pop(subscription_id)
        del self._callbacks[subscription_id]

        # Unsubscribe from Redis if no more subscribers for this topic
        if topic not in self._subscriptions.values():
            self.pubsub.unsubscribe(topic)
            self._logger.debug(f"Unsubscribed from {topic}")

        return True

    def _start_listener(self):
        """Start the Redis message listener in a separate thread"""
        if self._running:
            return

        self._running = True
        self._thread = threading.Thread(target=self._listen, daemon=True)
        self._thread.start()
        self._logger.info("Started Redis message listener")

    def _listen(self):
        while self._running:
            try:
                message = self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message['type'] == 'message':
                    self._handle_message(message)
            except redis.RedisError as e:
                self._logger.error(f"Error in Redis listener: {e}")
                time.sleep(1)  # Avoid tight loop on error

    def _handle_message(self, redis_message: Dict[str, Any]):
        """Decode a pub/sub payload and fan it out to the topic's callbacks"""
        topic = redis_message['channel']
        data = redis_message['data']
        if isinstance(topic, bytes):
            topic = topic.decode('utf-8')
        if isinstance(data, bytes):
            data = data.decode('utf-8')

        try:
            payload = json.loads(data)
            if payload.get('message_type') == MessageType.DOMAIN_EVENT.value:
                message = DomainEvent.from_dict(payload)
            else:
                message = Message.from_dict(payload)
        except (ValueError, KeyError, TypeError) as e:
            self._logger.error(f"Discarding malformed message on {topic}: {e}")
            return

        for subscription_id, callback_topic in list(self._subscriptions.items()):
            if callback_topic == topic:
                try:
                    self._callbacks[subscription_id](message)
                except Exception as e:
                    self._logger.error(f"Error in callback for subscription {subscription_id}: {e}")

    def close(self):
        """Close Redis connections"""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5.0)

        self.pubsub.close()
        self.redis_client.close()
        self._logger.info("Redis message queue closed")


# ============================================================================
# IN-MEMORY MESSAGE QUEUE (For Testing)
# ============================================================================

class InMemoryMessageQueue(MessageQueue):
    """In-memory message queue for testing"""

    def __init__(self):
        self._callbacks: Dict[str, Tuple[str, Callable[[Message], None]]] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    def publish(self, topic: str, message: Message) -> bool:
        """Publish message to in-memory topic"""
        self._messages.setdefault(topic, []).append(message)

        for subscription_id, (callback_topic, callback) in list(self._callbacks.items()):
            if callback_topic != topic:
                continue
            try:
                callback(message)
            except Exception as e:
                self._logger.error(f"Error in callback for topic {topic}: {e}")

        self._logger.debug(f"Published to {topic}: {message.message_id}")
        return True

    def subscribe(self, topic: str, callback: Callable[[Message], None]) -> str:
        subscription_id = str(uuid4())
        self._callbacks[subscription_id] = (topic, callback)
        self._logger.debug(f"Subscribed to {topic} with ID {subscription_id}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._callbacks.pop(subscription_id, None) is not None

    def get_messages(self, topic: str) -> List[Message]:
        """Get all messages for a topic (for testing)"""
        return self._messages.get(topic, []).copy()

    def clear(self):
        """Clear all messages and subscriptions (for testing)"""
        self._callbacks.clear()
        self._messages.clear()


# ============================================================================
# EVENT STORE
# ============================================================================

class EventStore:
    """
    MongoDB-backed audit trail of domain events

    Events are appended as published; nothing is rebuilt from them. Battery
    and slot statuses stay in the relational store.
    """

    def __init__(self, mongo_url: str = "mongodb://localhost:27017", database: str = "swaphub_events", **kwargs):
        self.mongo_url = mongo_url
        self._logger = logging.getLogger(self.__class__.__name__)

        self.client = pymongo.MongoClient(mongo_url, **kwargs)
        self.db = self.client[database]
        self.events_collection = self.db['events']

        self.events_collection.create_index([('aggregate_id', 1), ('timestamp', 1)])
        self.events_collection.create_index([('event_type', 1)])
        self.events_collection.create_index([('station_id', 1), ('timestamp', 1)])

    def save(self, event: DomainEvent) -> bool:
        """Append a domain event to the store"""
        try:
            result = self.events_collection.insert_one(self._event_to_document(event))
            self._logger.debug(f"Saved event {event.event_type.value} for aggregate {event.aggregate_id}")
            return result.acknowledged
        except PyMongoError as e:
            self._logger.error(f"Error saving event to store: {e}")
            return False

    def _event_to_document(self, event: DomainEvent) -> Dict[str, Any]:
        """Convert DomainEvent to MongoDB document"""
        return {
            '_id': str(event.message_id),
            'message_id': str(event.message_id),
            'event_type': event.event_type.value,
            'timestamp': event.timestamp,
            'aggregate_id': event.aggregate_id,
            'aggregate_type': event.aggregate_type,
            'station_id': event.station_id,
            'version': event.version,
            'data': json.loads(json.dumps(event.data, default=str)),
            'metadata': event.metadata,
            'correlation_id': str(event.correlation_id) if event.correlation_id else None,
            'source': event.source
        }

    def close(self):
        """Close MongoDB connection"""
        self.client.close()
        self._logger.info("Event store closed")


# ============================================================================
# MESSAGE BUS (Orchestrator)
# ============================================================================

class MessageBus:
    """
    Orchestrates message flow between different messaging components

    Routes committed domain events to the event store, the in-process event
    bus and the message queue. Queue delivery goes through an outbox with
    bounded retries; a message that still fails is dropped and logged.
    """

    EVENTS_TOPIC = "swaphub.events"

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        message_queue: Optional[MessageQueue] = None,
        event_store: Optional[EventStore] = None
    ):
        self.event_bus = event_bus or EventBus()
        self.message_queue = message_queue
        self.event_store = event_store
        self._logger = logging.getLogger(self.__class__.__name__)

        # Outbox for reliable messaging
        self._outbox: List[Tuple[str, Message]] = []
        self._outbox_lock = threading.Lock()
        self.dead_letters: List[Tuple[str, Message]] = []

        # Retry configuration
        self.max_retries = 3
        self.retry_delay = 0.2  # seconds

    def publish_domain_events(self, events: Iterable[domain.DomainEvent]) -> int:
        """Publish aggregate events that were drained after a commit"""
        count = 0
        for event in events:
            self.publish_event(DomainEvent.from_domain(event))
            count += 1
        return count

    def publish_event(self, event: DomainEvent) -> None:
        """Publish a domain event through all channels"""
        self._logger.debug(f"Publishing event {event.event_type.value} (ID: {event.message_id})")

        if self.event_store:
            self.event_store.save(event)

        self.event_bus.publish(event)

        if self.message_queue:
            self._add_to_outbox(self.EVENTS_TOPIC, event)
            self._process_outbox()

    def _add_to_outbox(self, topic: str, message: Message) -> None:
        with self._outbox_lock:
            self._outbox.append((topic, message))

    def _process_outbox(self) -> None:
        """Drain the outbox in order"""
        while True:
            with self._outbox_lock:
                if not self._outbox:
                    return
                topic, message = self._outbox.pop(0)

            if not self._publish_with_retry(topic, message):
                self._logger.error(f"Failed to publish message {message.message_id} after retries")
                with self._outbox_lock:
                    self.dead_letters.append((topic, message))

    def _publish_with_retry(self, topic: str, message: Message) -> bool:
        for attempt in range(self.max_retries):
            try:
                return self.message_queue.publish(topic, message)
            except (redis.RedisError, ConnectionError) as e:
                self._logger.warning(f"Attempt {attempt + 1} failed for message {message.message_id}: {e}")
                if attempt < self.max_retries - 1:
                    time.sleep(self.retry_delay * (2 ** attempt))  # Exponential backoff
        return False

    def subscribe_to_events(self, event_type: EventType, handler: EventHandler) -> None:
        self.event_bus.subscribe(event_type, handler)

    def close(self):
        """Close all messaging components"""
        if self.message_queue:
            self.message_queue.close()

        if self.event_store:
            self.event_store.close()

        self._logger.info("Message bus closed")


# ============================================================================
# EVENT HANDLER IMPLEMENTATIONS
# ============================================================================

class InventoryCacheInvalidator(EventHandler):
    """Drops a station's cached inventory whenever its batteries or slots change"""

    def __init__(self, cache: StationInventoryCache):
        self.cache = cache
        self._logger = logging.getLogger(self.__class__.__name__)

    def can_handle(self, event: DomainEvent) -> bool:
        return event.event_type in INVENTORY_EVENTS and event.station_id is not None

    def handle(self, event: DomainEvent) -> None:
        self.cache.invalidate(event.station_id)
        if event.event_type == EventType.BATTERY_TRANSFERRED:
            self.cache.invalidate(event.data.get('from_station_id'))

    def subscribe_all(self, event_bus: EventBus) -> None:
        for event_type in INVENTORY_EVENTS:
            event_bus.subscribe(event_type, self)


class AuditLogHandler(EventHandler):
    """Writes lifecycle transitions to the application log"""

    def __init__(self):
        self._logger = logging.getLogger(self.__class__.__name__)

    def handle(self, event: DomainEvent) -> None:
        data = event.data
        if event.event_type == EventType.TRANSACTION_RECORDED:
            self._logger.info(
                f"Swap #{data.get('sequence')} at station {event.station_id}: "
                f"returned {data['batteryReturned']['id']}, given {data['batteryGiven']['id']}"
            )
        else:
            self._logger.info(
                f"{event.aggregate_type} {event.aggregate_id}: "
                f"{data.get('old_status')} -> {data.get('new_status')}"
            )


# ============================================================================
# FACTORY
# ============================================================================

class MessageBrokerFactory:
    """Factory for creating message brokers"""

    @staticmethod
    def create_redis_broker(redis_url: str = "redis://localhost:6379", **kwargs) -> RedisMessageQueue:
        return RedisMessageQueue(redis_url, **kwargs)

    @staticmethod
    def create_in_memory_broker() -> InMemoryMessageQueue:
        return InMemoryMessageQueue()

    @staticmethod
    def create_event_store(mongo_url: str = "mongodb://localhost:27017", **kwargs) -> EventStore:
        return EventStore(mongo_url, **kwargs)

    @staticmethod
    def create_message_bus(
        redis_url: Optional[str] = None,
        mongo_url: Optional[str] = None,
        in_memory_queue: bool = False
    ) -> MessageBus:
        """Create a message bus; each external component is optional"""
        if redis_url:
            broker = MessageBrokerFactory.create_redis_broker(redis_url)
        elif in_memory_queue:
            broker = MessageBrokerFactory.create_in_memory_broker()
        else:
            broker = None

        event_store = MessageBrokerFactory.create_event_store(mongo_url) if mongo_url else None

        return MessageBus(
            event_bus=EventBus(),
            message_queue=broker,
            event_store=event_store
        )
