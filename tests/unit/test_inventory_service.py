# File: tests/unit/test_inventory_service.py
"""
Unit tests for InventoryService: stations, pillars, slot operations and the
cached station inventory view.
"""

import unittest

from swaphub.domain.models import Location, SlotStatus, PillarStatus, StationStatus, BatteryStatus
from swaphub.domain.errors import (
    InvalidRange, InvalidState, SlotEmpty, SlotNotFound, SlotNotReservable, SlotOccupied,
    StationNotFound, PillarNotFound
)
from tests.support import SwapHubTestCase


class TestStations(SwapHubTestCase):
    """Station registration and updates"""

    def test_register_station_normalizes_code(self):
        """Codes are stored upper-case and must be unique"""
        inventory = self.services.inventory
        station = inventory.register_station("Central", " hcm-01 ", Location("1 Le Loi", "HCM"), 10)
        self.assertEqual(station.code, "HCM-01")
        with self.assertRaises(InvalidState):
            inventory.register_station("Other", "HCM-01", Location("2 Le Loi", "HCM"), 5)

    def test_unknown_station(self):
        with self.assertRaises(StationNotFound):
            self.services.inventory.get_station("missing")

    def test_capacity_is_not_tied_to_slots(self):
        """Capacity may differ from the provisioned slot count"""
        station = self.create_station(capacity=20, pillars=(4,))
        view = self.services.inventory.station_inventory(station.id)
        self.assertEqual(view["capacity"], 20)
        self.assertEqual(view["provisionedSlots"], 4)

        self.services.inventory.update_capacity(station.id, 2)
        self.assertEqual(self.services.inventory.station_inventory(station.id)["capacity"], 2)

        with self.assertRaises(InvalidRange):
            self.services.inventory.update_capacity(station.id, -3)

    def test_station_status(self):
        station = self.create_station()
        updated = self.services.inventory.set_station_status(station.id, StationStatus.MAINTENANCE)
        self.assertEqual(updated.status, StationStatus.MAINTENANCE)
        self.assertEqual(len(self.services.inventory.list_stations()), 1)


class TestPillarsAndSlots(SwapHubTestCase):
    """Pillar provisioning and slot mutations through the service"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(3,), batteries=[("SEAT-1", 97.0)])
        self.inventory = self.services.inventory
        self.pillar = self.inventory.list_pillars(self.station.id)[0]
        self.slot_ids = [slot.id for slot in self.pillar.slots]

    def test_pillar_dto_shape(self):
        """Pillars come back as DTOs with slot stats"""
        data = self.pillar.to_dict()
        self.assertEqual(data["pillarCode"], "HCM-01-P01")
        self.assertEqual(data["slotStats"], {"total": 3, "empty": 2, "occupied": 1, "reserved": 0})

    def test_duplicate_pillar_number(self):
        """Pillar numbers are unique per station"""
        with self.assertRaises(InvalidState):
            self.inventory.create_pillar(self.station.id, "Again", 1, 4)

    def test_unknown_pillar(self):
        with self.assertRaises(PillarNotFound):
            self.inventory.get_pillar("missing")

    def test_assign_to_occupied_slot(self):
        """SlotOccupied for a slot that already holds a battery"""
        battery = self.services.batteries.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        with self.assertRaises(SlotOccupied):
            self.inventory.assign(self.slot_ids[0], battery.id)

    def test_assign_battery_from_other_station(self):
        """Only the station's own batteries can be seated"""
        other = self.create_station("HCM-02", pillars=(1,))
        battery = self.services.batteries.register("FOREIGN-1", "LFP-48V", 2.0, 48.0, other.id)
        with self.assertRaises(InvalidState):
            self.inventory.assign(self.slot_ids[1], battery.id)

    def test_assign_battery_twice(self):
        """A battery sits in at most one slot"""
        seated = self.battery_by_serial("SEAT-1")
        with self.assertRaises(InvalidState):
            self.inventory.assign(self.slot_ids[1], seated.id)

    def test_slot_stats_follow_every_mutation(self):
        """Stats stay consistent through assign, reserve, release and remove"""
        battery = self.services.batteries.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        slot_id = self.slot_ids[1]

        stats = self.inventory.assign(slot_id, battery.id).slot_stats
        self.assertEqual((stats.empty, stats.occupied, stats.reserved), (1, 2, 0))

        stats = self.inventory.reserve(slot_id).slot_stats
        self.assertEqual((stats.empty, stats.occupied, stats.reserved), (1, 1, 1))

        stats = self.inventory.release(slot_id).slot_stats
        self.assertEqual((stats.empty, stats.occupied, stats.reserved), (1, 2, 0))

        self.assertEqual(self.inventory.remove_battery(slot_id), battery.id)
        self.assertEqual(self.inventory.get_pillar(self.pillar.id).slot_stats.occupied, 1)

    def test_remove_from_empty_slot(self):
        with self.assertRaises(SlotEmpty):
            self.inventory.remove_battery(self.slot_ids[2])

    def test_unknown_slot(self):
        with self.assertRaises(SlotNotFound):
            self.inventory.reserve("missing")

    def test_out_of_service_slot(self):
        """Locked slots cannot be reserved and reopen to their natural status"""
        self.inventory.set_slot_status(self.slot_ids[0], SlotStatus.LOCKED)
        with self.assertRaises(SlotNotReservable):
            self.inventory.reserve(self.slot_ids[0])

        pillar = self.inventory.set_slot_status(self.slot_ids[0], SlotStatus.EMPTY)
        self.assertEqual(pillar.get_slot(self.slot_ids[0]).status, SlotStatus.OCCUPIED)

    def test_reserved_status_not_set_directly(self):
        """RESERVED is only reachable through reserve()"""
        with self.assertRaises(InvalidState):
            self.inventory.set_slot_status(self.slot_ids[1], SlotStatus.RESERVED)

    def test_inactive_pillar_slots_not_reservable(self):
        """Slots on a pillar that is not active cannot be reserved"""
        self.inventory.set_pillar_status(self.pillar.id, PillarStatus.MAINTENANCE)
        with self.assertRaises(SlotNotReservable):
            self.inventory.reserve(self.slot_ids[0])

    def test_failed_mutation_leaves_no_trace(self):
        """A rejected slot operation commits nothing"""
        battery = self.services.batteries.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        before = self.inventory.get_pillar(self.pillar.id).to_dict()
        with self.assertRaises(SlotOccupied):
            self.inventory.assign(self.slot_ids[0], battery.id)
        self.assertEqual(self.inventory.get_pillar(self.pillar.id).to_dict(), before)


class TestStationInventoryView(SwapHubTestCase):
    """Derived counts and the read-through cache"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station(
            "HCM-01", pillars=(4,), batteries=[("B-1", 98.0), ("B-2", 90.0), ("B-3", 82.0)]
        )
        self.inventory = self.services.inventory

    def test_counts_partition_total(self):
        """available + charging + inUse + faulty == total"""
        store = self.services.batteries
        store.set_status(self.battery_by_serial("B-2").id, BatteryStatus.CHARGING)
        store.mark_faulty(self.battery_by_serial("B-3").id, "overheating")
        self.create_driver_battery(self.station.id)

        counts = self.inventory.station_inventory(self.station.id)["batteryCounts"]
        self.assertEqual(counts, {"total": 4, "available": 1, "charging": 1, "inUse": 1, "faulty": 1})
        self.assertEqual(
            counts["available"] + counts["charging"] + counts["inUse"] + counts["faulty"], counts["total"]
        )

    def test_view_shape(self):
        """The query shape carries SOH average and available batteries"""
        view = self.inventory.station_inventory_dto(self.station.id)
        self.assertEqual(view.id, self.station.id)
        self.assertEqual(view.soh_avg, 90.0)
        self.assertEqual(view.available_count(), 3)
        self.assertEqual(view.slot_stats.occupied, 3)

    def test_cache_serves_until_a_write(self):
        """A cached view is replaced as soon as a write commits"""
        first = self.inventory.station_inventory(self.station.id)
        self.assertEqual(first["availableBatteries"], 3)

        self.services.batteries.mark_faulty(self.battery_by_serial("B-1").id)

        second = self.inventory.station_inventory(self.station.id)
        self.assertEqual(second["availableBatteries"], 2)
        self.assertEqual(second["batteryCounts"]["faulty"], 1)

    def test_retired_batteries_excluded(self):
        """Retired batteries disappear from counts and the SOH average"""
        self.services.inventory.remove_battery(self.slot_of(self.battery_by_serial("B-3").id).id)
        self.services.batteries.retire(self.battery_by_serial("B-3").id)

        view = self.inventory.station_inventory(self.station.id)
        self.assertEqual(view["batteryCounts"]["total"], 2)
        self.assertEqual(view["sohAvg"], 94.0)


if __name__ == '__main__':
    unittest.main()
