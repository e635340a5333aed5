# File: src/swaphub/application/base.py
"""
Shared plumbing for application services

Every use case follows the same shape: open a unit of work, load the
aggregates, call domain methods, stage the writes, drain the aggregates'
events, commit, and only then publish the drained events.
"""

from typing import Callable, Iterable, List, Optional
import logging

from ..domain.aggregates import AggregateRoot
from ..domain.models import DomainEvent
from ..domain.errors import (
    BatteryNotFound, BookingNotFound, PillarNotFound, StationNotFound
)
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.locking import StationLockRegistry
from ..infrastructure.messaging import MessageBus


class EventCollector:
    """Events drained from aggregates during one unit of work"""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def collect(self, *aggregates: AggregateRoot) -> None:
        for aggregate in aggregates:
            self.events.extend(aggregate.clear_events())

    def add(self, event: DomainEvent) -> None:
        self.events.append(event)


class ApplicationService:
    """Base class for SwapHub application services"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        message_bus: Optional[MessageBus] = None,
        station_locks: Optional[StationLockRegistry] = None
    ):
        self.uow_factory = uow_factory
        self.message_bus = message_bus
        self.station_locks = station_locks or StationLockRegistry()
        self.logger = logging.getLogger(self.__class__.__name__)

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        """Called after commit; a failed publish never undoes the commit"""
        events = list(events)
        if not events or self.message_bus is None:
            return
        self.message_bus.publish_domain_events(events)

    # Loaders raising the matching NotFound kind

    @staticmethod
    def _load_station(uow: UnitOfWork, station_id: str):
        station = uow.stations.get(station_id)
        if station is None:
            raise StationNotFound(station_id)
        return station

    @staticmethod
    def _load_battery(uow: UnitOfWork, battery_id: str):
        battery = uow.batteries.get(battery_id)
        if battery is None:
            raise BatteryNotFound(battery_id)
        return battery

    @staticmethod
    def _load_pillar(uow: UnitOfWork, pillar_id: str):
        pillar = uow.pillars.get(pillar_id)
        if pillar is None:
            raise PillarNotFound(pillar_id)
        return pillar

    @staticmethod
    def _load_booking(uow: UnitOfWork, booking_id: str):
        booking = uow.bookings.get(booking_id)
        if booking is None:
            raise BookingNotFound(booking_id)
        return booking
