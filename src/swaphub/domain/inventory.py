# File: src/swaphub/domain/inventory.py
"""
Pure inventory derivations

Slot stats and battery counts are never stored; they are recomputed from
the current slot and battery statuses whenever somebody asks. Retired
batteries are excluded from every figure.
"""

from dataclasses import dataclass
from typing import Iterable, Dict, Any, List, TYPE_CHECKING

from .models import Slot, SlotStatus, SlotStats, BatteryStatus, BatteryCounts

if TYPE_CHECKING:
    from .aggregates import Battery, Pillar, Station


def compute_slot_stats(slots: Iterable[Slot]) -> SlotStats:
    total = empty = occupied = reserved = 0
    for slot in slots:
        total += 1
        if slot.status == SlotStatus.EMPTY:
            empty += 1
        elif slot.status == SlotStatus.OCCUPIED:
            occupied += 1
        elif slot.status == SlotStatus.RESERVED:
            reserved += 1
    return SlotStats(total=total, empty=empty, occupied=occupied, reserved=reserved)


def compute_battery_counts(batteries: Iterable['Battery']) -> BatteryCounts:
    """
    available = idle + full; is-booking batteries are held for a driver and
    count as in use.
    """
    available = charging = in_use = faulty = 0
    for battery in batteries:
        if battery.retired:
            continue
        if battery.status.is_available:
            available += 1
        elif battery.status == BatteryStatus.CHARGING:
            charging += 1
        elif battery.status in (BatteryStatus.IN_USE, BatteryStatus.IS_BOOKING):
            in_use += 1
        elif battery.status == BatteryStatus.FAULTY:
            faulty += 1
    return BatteryCounts(
        total=available + charging + in_use + faulty,
        available=available,
        charging=charging,
        in_use=in_use,
        faulty=faulty
    )


def average_soh(batteries: Iterable['Battery']) -> float:
    values = [b.soh for b in batteries if not b.retired]
    if not values:
        return 0.0
    return round(sum(values) / len(values), 1)


@dataclass(frozen=True)
class StationInventory:
    """Snapshot of one station's inventory"""
    station_id: str
    capacity: int
    soh_avg: float
    battery_counts: BatteryCounts
    slot_stats: SlotStats
    provisioned_slots: int

    @property
    def available_batteries(self) -> int:
        return self.battery_counts.available

    def to_dict(self) -> Dict[str, Any]:
        """Station inventory query shape"""
        return {
            "_id": self.station_id,
            "capacity": self.capacity,
            "sohAvg": self.soh_avg,
            "availableBatteries": self.available_batteries,
            "batteryCounts": self.battery_counts.to_dict(),
            "slotStats": self.slot_stats.to_dict(),
            "provisionedSlots": self.provisioned_slots
        }


def build_station_inventory(
    station: 'Station',
    pillars: List['Pillar'],
    batteries: List['Battery']
) -> StationInventory:
    """Combine pillar aggregates and the station's batteries into one view"""
    at_station = [b for b in batteries if b.station_id == station.id]
    slot_stats = compute_slot_stats(slot for pillar in pillars for slot in pillar.slots)
    return StationInventory(
        station_id=station.id,
        capacity=station.capacity,
        soh_avg=average_soh(at_station),
        battery_counts=compute_battery_counts(at_station),
        slot_stats=slot_stats,
        provisioned_slots=slot_stats.total
    )
