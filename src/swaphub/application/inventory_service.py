# File: src/swaphub/application/inventory_service.py
"""
Slot/Pillar Aggregator and Station Inventory View

Slot mutations go through the Pillar aggregate, which recomputes its slot
stats inside the same call. Station inventory is derived from the current
slot and battery statuses and served through a read-through cache that is
invalidated by the events of every committed write.
"""

from typing import Callable, Dict, List, Optional, Any

from ..domain.models import Location, SlotStatus, PillarStatus, StationStatus
from ..domain.aggregates import Pillar, Station
from ..domain.inventory import StationInventory, build_station_inventory
from ..domain.errors import InvalidState, SlotNotFound
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.cache import StationInventoryCache
from ..infrastructure.locking import StationLockRegistry
from ..infrastructure.messaging import MessageBus
from .base import ApplicationService, EventCollector
from .dtos import PillarDTO, StationInventoryDTO


class InventoryService(ApplicationService):
    """Application service for stations, pillars and slots"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        message_bus: Optional[MessageBus] = None,
        station_locks: Optional[StationLockRegistry] = None,
        cache: Optional[StationInventoryCache] = None
    ):
        super().__init__(uow_factory, message_bus, station_locks)
        self.cache = cache or StationInventoryCache()

    # ------------------------------------------------------------------
    # Stations
    # ------------------------------------------------------------------

    def register_station(self, name: str, code: str, location: Location, capacity: int) -> Station:
        station = Station(name=name, code=code.strip().upper(), location=location, capacity=capacity)
        with self.uow_factory() as uow:
            if uow.stations.find_by_code(station.code) is not None:
                raise InvalidState(f"Station code {station.code} is already in use", {"code": station.code})
            uow.stations.add(station)

        self.logger.info(f"Registered station {station.code} ({station.name})")
        return station

    def get_station(self, station_id: str) -> Station:
        with self.uow_factory() as uow:
            return self._load_station(uow, station_id)

    def list_stations(self, skip: int = 0, limit: int = 100) -> List[Station]:
        with self.uow_factory() as uow:
            return uow.stations.get_all(skip, limit)

    def update_capacity(self, station_id: str, capacity: int) -> Station:
        """Capacity is a design target and may differ from the provisioned slots"""
        return self._mutate_station(station_id, lambda station: station.update_capacity(capacity))

    def set_station_status(self, station_id: str, status: StationStatus) -> Station:
        return self._mutate_station(station_id, lambda station: station.change_status(status))

    def _mutate_station(self, station_id: str, change) -> Station:
        collector = EventCollector()
        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                station = self._load_station(uow, station_id)
                change(station)
                uow.stations.update(station)
                collector.collect(station)

        self._publish(collector.events)
        return station

    # ------------------------------------------------------------------
    # Station inventory view
    # ------------------------------------------------------------------

    def compute_station_inventory(self, station_id: str) -> StationInventory:
        """Fresh derivation from the committed slot and battery statuses"""
        with self.uow_factory() as uow:
            station = self._load_station(uow, station_id)
            pillars = uow.pillars.find_by_station(station_id)
            batteries = uow.batteries.find_by_station(station_id)
        return build_station_inventory(station, pillars, batteries)

    def station_inventory(self, station_id: str) -> Dict[str, Any]:
        """Station inventory query shape, served through the cache"""
        return self.cache.get_or_load(station_id, lambda: self.compute_station_inventory(station_id))

    def station_inventory_dto(self, station_id: str) -> StationInventoryDTO:
        return StationInventoryDTO.model_validate(self.station_inventory(station_id))

    # ------------------------------------------------------------------
    # Pillars
    # ------------------------------------------------------------------

    def create_pillar(self, station_id: str, pillar_name: str, pillar_number: int, total_slots: int) -> Pillar:
        collector = EventCollector()
        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                station = self._load_station(uow, station_id)
                if any(p.pillar_number == pillar_number for p in uow.pillars.find_by_station(station_id)):
                    raise InvalidState(
                        f"Station {station.code} already has pillar {pillar_number}",
                        {"station_id": station_id, "pillar_number": pillar_number}
                    )

                pillar = Pillar.provision(station_id, station.code, pillar_name, pillar_number, total_slots)
                uow.pillars.add(pillar)
                collector.collect(pillar)

        self._publish(collector.events)
        return pillar

    def get_pillar(self, pillar_id: str) -> PillarDTO:
        with self.uow_factory() as uow:
            return PillarDTO.from_domain(self._load_pillar(uow, pillar_id))

    def list_pillars(self, station_id: str) -> List[PillarDTO]:
        with self.uow_factory() as uow:
            self._load_station(uow, station_id)
            return [PillarDTO.from_domain(p) for p in uow.pillars.find_by_station(station_id)]

    def set_pillar_status(self, pillar_id: str, status: PillarStatus) -> Pillar:
        return self._mutate_pillar(pillar_id, lambda uow, pillar: pillar.change_status(status))

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    def assign(self, slot_id: str, battery_id: str) -> Pillar:
        """Physically seat a battery; its usage status is unaffected"""
        def change(uow, pillar: Pillar) -> None:
            battery = self._load_battery(uow, battery_id)
            if battery.retired:
                raise InvalidState(f"Battery {battery.serial} is retired", {"battery_id": battery_id})
            if battery.station_id != pillar.station_id:
                raise InvalidState(
                    f"Battery {battery.serial} belongs to another station",
                    {"battery_id": battery_id, "station_id": battery.station_id}
                )
            holder = uow.pillars.find_by_battery(battery_id)
            if holder is not None:
                raise InvalidState(
                    f"Battery {battery.serial} is already seated in pillar {holder.pillar_code}",
                    {"battery_id": battery_id}
                )
            pillar.assign_battery(slot_id, battery_id)

        return self._mutate_slot(slot_id, change)

    def reserve(self, slot_id: str) -> Pillar:
        return self._mutate_slot(slot_id, lambda uow, pillar: pillar.reserve_slot(slot_id))

    def release(self, slot_id: str) -> Pillar:
        return self._mutate_slot(slot_id, lambda uow, pillar: pillar.release_slot(slot_id))

    def remove_battery(self, slot_id: str) -> str:
        removed: List[str] = []
        self._mutate_slot(slot_id, lambda uow, pillar: removed.append(pillar.remove_battery(slot_id)))
        return removed[0]

    def set_slot_status(self, slot_id: str, status: SlotStatus) -> Pillar:
        """Lock, maintenance or error; EMPTY or OCCUPIED reopens the slot"""
        if status.is_out_of_service:
            return self._mutate_slot(slot_id, lambda uow, pillar: pillar.set_slot_out_of_service(slot_id, status))
        if status in (SlotStatus.EMPTY, SlotStatus.OCCUPIED):
            return self._mutate_slot(slot_id, lambda uow, pillar: pillar.reopen_slot(slot_id))
        raise InvalidState(
            f"Slot status {status.value} is managed by assign, reserve and release",
            {"slot_id": slot_id}
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_pillar_for_slot(self, slot_id: str) -> Pillar:
        with self.uow_factory() as uow:
            pillar = uow.pillars.find_by_slot(slot_id)
        if pillar is None:
            raise SlotNotFound(slot_id)
        return pillar

    def _mutate_slot(self, slot_id: str, change) -> Pillar:
        pillar = self._find_pillar_for_slot(slot_id)
        return self._mutate_pillar(pillar.id, change)

    def _mutate_pillar(self, pillar_id: str, change) -> Pillar:
        with self.uow_factory() as uow:
            station_id = self._load_pillar(uow, pillar_id).station_id

        collector = EventCollector()
        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                pillar = self._load_pillar(uow, pillar_id)
                change(uow, pillar)
                uow.pillars.update(pillar)
                collector.collect(pillar)

        self._publish(collector.events)
        return pillar
