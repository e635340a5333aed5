# File: tests/support.py
"""
Shared fixtures for SwapHub tests

SwapHubTestCase wires a full service container over in-memory storage, an
in-memory message queue and the in-process cache, plus helpers for seeding
stations and driver batteries.
"""

import unittest
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from swaphub.config import Settings
from swaphub.domain.models import BatteryStatus, Location
from swaphub.infrastructure.factories import RepositoryFactory, ServiceFactory, StationBuilder
from swaphub.infrastructure.messaging import EventBus, InMemoryMessageQueue, MessageBus


class SwapHubTestCase(unittest.TestCase):
    """Base class with a ready service container"""

    def setUp(self):
        self.settings = Settings(swap_fee=Decimal("50000"), currency="VND")
        self.queue = InMemoryMessageQueue()
        self.message_bus = MessageBus(event_bus=EventBus(), message_queue=self.queue)
        self.services = ServiceFactory(
            self.settings,
            uow_factory=self.create_uow_factory(),
            message_bus=self.message_bus
        ).create_services()

    def tearDown(self):
        self.services.close()

    def create_uow_factory(self):
        return RepositoryFactory.create_in_memory_uow_factory()

    # Seeding helpers

    def create_station(
        self,
        code: str = "HCM-01",
        capacity: int = 0,
        pillars: Iterable[int] = (4,),
        batteries: Iterable[Tuple[str, float]] = ()
    ):
        """Batteries are (serial, soh) pairs, seated in pillar order"""
        builder = StationBuilder(self.services).set_basic_info(
            f"Station {code}", code, Location("12 Nguyen Hue", "Ho Chi Minh City"), capacity
        )
        for slots in pillars:
            builder.add_pillar(slots)
        for serial, soh in batteries:
            builder.add_battery(serial, soh=soh)
        return builder.build()

    def create_driver_battery(self, station_id: str, serial: str = "DRV-001", soh: float = 72.0):
        """A battery currently in a driver's vehicle"""
        battery = self.services.batteries.register(serial, "LFP-48V", 2.0, 48.0, station_id, soh=soh)
        return self.services.batteries.set_status(battery.id, BatteryStatus.IN_USE, actor="test")

    def request_swap(self, station_id: str, battery_id: str, user_id: str = "driver-1"):
        return self.services.swaps.request_swap({
            "userId": user_id,
            "station": station_id,
            "battery": battery_id
        })

    def battery_by_serial(self, serial: str):
        return self.services.batteries.get_by_serial(serial)

    def slot_of(self, battery_id: str) -> Optional[object]:
        with self.services.uow_factory() as uow:
            pillar = uow.pillars.find_by_battery(battery_id)
            return pillar.find_slot_by_battery(battery_id) if pillar else None
