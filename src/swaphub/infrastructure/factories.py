# File: src/swaphub/infrastructure/factories.py
"""
Factory Pattern Implementation for SwapHub

1. RepositoryFactory - unit of work factories (in-memory or SQLAlchemy)
2. ServiceFactory - wires services around one shared set of locks, cache
   and message bus
3. StationBuilder - builder for seeding a station with pillars and batteries
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any, Tuple
import logging

import redis

from ..config import Settings
from ..domain.models import Location, Money, SlotStatus
from ..domain.aggregates import Battery, Pillar, Station
from ..domain.strategies import BatterySelectionStrategy
from .repositories import (
    UnitOfWork, InMemoryStore, InMemoryUnitOfWork, SQLAlchemyUnitOfWork,
    create_session_factory
)
from .locking import StationLockRegistry, LeaseRegistry, InFlightRegistry, RedisInFlightRegistry
from .cache import InMemoryTTLCache, StationInventoryCache
from .messaging import MessageBus, MessageBrokerFactory, InventoryCacheInvalidator, AuditLogHandler, EventType


# Lifecycle transitions written to the audit log
AUDITED_EVENTS = (
    EventType.BATTERY_STATUS_CHANGED,
    EventType.BOOKING_STATUS_CHANGED,
    EventType.TRANSACTION_RECORDED,
    EventType.SUPPORT_REQUEST_STATUS_CHANGED,
)


# ============================================================================
# REPOSITORY FACTORIES
# ============================================================================

class RepositoryFactory:
    """Factory for creating unit of work factories"""

    @staticmethod
    def create_in_memory_uow_factory(store: Optional[InMemoryStore] = None) -> Callable[[], UnitOfWork]:
        """Every unit of work shares the same committed store"""
        store = store or InMemoryStore()
        return lambda: InMemoryUnitOfWork(store)

    @staticmethod
    def create_sqlalchemy_uow(database_url: str, echo: bool = False) -> Callable[[], UnitOfWork]:
        session_factory = create_session_factory(database_url, echo=echo)
        return lambda: SQLAlchemyUnitOfWork(session_factory)

    @staticmethod
    def create_uow_factory(settings: Settings) -> Callable[[], UnitOfWork]:
        if settings.uses_database:
            return RepositoryFactory.create_sqlalchemy_uow(settings.database_url)
        return RepositoryFactory.create_in_memory_uow_factory()


# ============================================================================
# SERVICE FACTORIES
# ============================================================================

@dataclass
class Services:
    """Service container handed to commands and the application shell"""
    settings: Settings
    uow_factory: Callable[[], UnitOfWork]
    message_bus: MessageBus
    station_locks: StationLockRegistry
    leases: LeaseRegistry
    cache: StationInventoryCache
    batteries: Any
    inventory: Any
    swaps: Any
    memberships: Any
    support: Any
    feedback: Any
    commands: Any = None
    _closers: List[Callable[[], None]] = field(default_factory=list, repr=False)

    def close(self) -> None:
        self.message_bus.close()
        for closer in self._closers:
            closer()


class ServiceFactory:
    """Factory for creating application services"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        uow_factory: Optional[Callable[[], UnitOfWork]] = None,
        redis_client: Optional[redis.Redis] = None,
        message_bus: Optional[MessageBus] = None,
        selection_strategy: Optional[BatterySelectionStrategy] = None
    ):
        self.settings = settings or Settings()
        self.uow_factory = uow_factory
        self.redis_client = redis_client
        self.message_bus = message_bus
        self.selection_strategy = selection_strategy
        self.logger = logging.getLogger(self.__class__.__name__)

    def _redis(self) -> Optional[redis.Redis]:
        if self.redis_client is None and self.settings.redis_url:
            self.redis_client = redis.Redis.from_url(self.settings.redis_url)
        return self.redis_client

    def create_cache(self) -> StationInventoryCache:
        client = self._redis() or InMemoryTTLCache()
        return StationInventoryCache(client, ttl=self.settings.station_cache_ttl)

    def create_leases(self) -> LeaseRegistry:
        client = self._redis()
        if client is not None:
            return RedisInFlightRegistry(client, ttl_ms=self.settings.lease_ttl_ms)
        return InFlightRegistry()

    def create_message_bus(self, cache: StationInventoryCache) -> MessageBus:
        bus = self.message_bus or MessageBrokerFactory.create_message_bus(
            redis_url=self.settings.redis_url,
            mongo_url=self.settings.mongo_url
        )
        InventoryCacheInvalidator(cache).subscribe_all(bus.event_bus)
        audit = AuditLogHandler()
        for event_type in AUDITED_EVENTS:
            bus.subscribe_to_events(event_type, audit)
        return bus

    def create_services(self) -> Services:
        """Create every service with shared dependencies"""
        from ..application.battery_service import BatteryStore
        from ..application.inventory_service import InventoryService
        from ..application.swap_service import SwapService
        from ..application.membership_service import MembershipService
        from ..application.support_service import SupportService
        from ..application.feedback_service import FeedbackService
        from ..application.commands import CommandProcessor

        uow_factory = self.uow_factory or RepositoryFactory.create_uow_factory(self.settings)
        station_locks = StationLockRegistry()
        cache = self.create_cache()
        leases = self.create_leases()
        bus = self.create_message_bus(cache)

        services = Services(
            settings=self.settings,
            uow_factory=uow_factory,
            message_bus=bus,
            station_locks=station_locks,
            leases=leases,
            cache=cache,
            batteries=BatteryStore(uow_factory, bus, station_locks),
            inventory=InventoryService(uow_factory, bus, station_locks, cache),
            swaps=SwapService(
                uow_factory, bus, station_locks,
                selection_strategy=self.selection_strategy,
                swap_fee=Money(self.settings.swap_fee, self.settings.currency)
            ),
            memberships=MembershipService(
                uow_factory, bus, leases, recent_limit=self.settings.recent_stations_limit
            ),
            support=SupportService(uow_factory, bus, station_locks),
            feedback=FeedbackService(uow_factory, bus, station_locks)
        )
        services.commands = CommandProcessor(services)
        if self.redis_client is not None:
            services._closers.append(self.redis_client.close)

        self.logger.info(
            f"Services created ({'database' if self.settings.uses_database else 'in-memory'} storage, "
            f"{'redis' if self.redis_client is not None else 'local'} cache)"
        )
        return services


# ============================================================================
# BUILDERS
# ============================================================================

class StationBuilder:
    """
    Builder for a station with pillars and seated batteries

    Goes through the services, so every seeded record passes the same rules
    and events as a live write.
    """

    def __init__(self, services: Services):
        self.services = services
        self.reset()

    def reset(self):
        self._station: Optional[Tuple[str, str, Location, int]] = None
        self._pillars: List[Tuple[str, int]] = []
        self._batteries: List[Dict[str, Any]] = []
        return self

    def set_basic_info(self, name: str, code: str, location: Location, capacity: int = 0) -> 'StationBuilder':
        self._station = (name, code, location, capacity)
        return self

    def add_pillar(self, total_slots: int, name: Optional[str] = None) -> 'StationBuilder':
        number = len(self._pillars) + 1
        self._pillars.append((name or f"Pillar {number}", total_slots))
        return self

    def add_battery(
        self,
        serial: str,
        soh: float = 100.0,
        model: str = "LFP-48V",
        capacity_kwh: float = 2.0,
        voltage: float = 48.0,
        seated: bool = True,
        **kwargs
    ) -> 'StationBuilder':
        self._batteries.append(dict(
            serial=serial, soh=soh, model=model, capacity_kwh=capacity_kwh,
            voltage=voltage, seated=seated, **kwargs
        ))
        return self

    def build(self) -> Station:
        """Seated batteries fill empty slots in pillar order"""
        if self._station is None:
            raise ValueError("Station not initialized")

        name, code, location, capacity = self._station
        total_slots = sum(slots for _, slots in self._pillars)
        station = self.services.inventory.register_station(name, code, location, capacity or total_slots)

        pillars: List[Pillar] = [
            self.services.inventory.create_pillar(station.id, pillar_name, number, slots)
            for number, (pillar_name, slots) in enumerate(self._pillars, start=1)
        ]
        free_slots = [slot.id for pillar in pillars for slot in pillar.slots if slot.status == SlotStatus.EMPTY]

        for battery_args in self._batteries:
            seated = battery_args.pop("seated")
            battery: Battery = self.services.batteries.register(station_id=station.id, **battery_args)
            if seated:
                if not free_slots:
                    raise ValueError(f"No empty slot left for battery {battery.serial}")
                self.services.inventory.assign(free_slots.pop(0), battery.id)

        self.reset()
        return station
