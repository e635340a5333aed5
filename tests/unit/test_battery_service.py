# File: tests/unit/test_battery_service.py
"""
Unit tests for BatteryStore: registration, status and health changes,
transfers and the per-battery audit trail.
"""

import unittest

from swaphub.domain.models import BatteryStatus
from swaphub.domain.errors import (
    BatteryNotFound, InvalidRange, InvalidState, InvalidTransition, StationNotFound
)
from tests.support import SwapHubTestCase


class TestBatteryStore(SwapHubTestCase):
    """BatteryStore over in-memory storage"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(2,), batteries=[("SEAT-1", 96.0)])
        self.store = self.services.batteries

    def test_register_and_lookup(self):
        """A registered battery is found by id and serial"""
        battery = self.store.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id, manufacturer="VinES")
        self.assertEqual(self.store.get(battery.id).manufacturer, "VinES")
        self.assertEqual(self.store.get_by_serial("LOOSE-1").id, battery.id)
        self.assertEqual(self.store.get_logs(battery.id)[0].action, "registered")

    def test_register_duplicate_serial(self):
        """Serials are unique"""
        with self.assertRaises(InvalidState):
            self.store.register("SEAT-1", "LFP-48V", 2.0, 48.0, self.station.id)

    def test_register_at_unknown_station(self):
        """The station must exist"""
        with self.assertRaises(StationNotFound):
            self.store.register("LOOSE-2", "LFP-48V", 2.0, 48.0, "missing")

    def test_get_unknown_battery(self):
        with self.assertRaises(BatteryNotFound):
            self.store.get("missing")

    def test_set_status_logs_change(self):
        """Every accepted change appends an audit entry"""
        battery = self.store.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        self.store.set_status(battery.id, BatteryStatus.CHARGING, actor="staff-1", reason="plugged in")

        logs = self.store.get_logs(battery.id)
        self.assertEqual([entry.action for entry in logs], ["registered", "status_changed"])
        self.assertEqual(logs[-1].actor, "staff-1")

    def test_set_status_noop_writes_nothing(self):
        """Setting the current status leaves no audit entry"""
        battery = self.store.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        self.store.set_status(battery.id, BatteryStatus.IDLE)
        self.assertEqual(len(self.store.get_logs(battery.id)), 1)

    def test_seated_battery_stays_at_rest(self):
        """A seated battery cannot be moved to in-use directly"""
        seated = self.battery_by_serial("SEAT-1")
        with self.assertRaises(InvalidState):
            self.store.set_status(seated.id, BatteryStatus.IN_USE)

    def test_faulty_routes_to_mark_faulty(self):
        """set_status(FAULTY) is the maintenance action"""
        seated = self.battery_by_serial("SEAT-1")
        battery = self.store.set_status(seated.id, BatteryStatus.FAULTY, reason="swollen cell")
        self.assertEqual(battery.status, BatteryStatus.FAULTY)
        self.assertEqual(self.store.get_logs(seated.id)[-1].action, "marked_faulty")

        with self.assertRaises(InvalidTransition):
            self.store.set_status(seated.id, BatteryStatus.IDLE)

        self.assertEqual(self.store.repair(seated.id, note="cell replaced").status, BatteryStatus.IDLE)

    def test_health_updates(self):
        """SOH goes down freely and up only with a reset"""
        seated = self.battery_by_serial("SEAT-1")
        self.assertEqual(self.store.set_health(seated.id, 94.5).soh, 94.5)
        with self.assertRaises(InvalidRange):
            self.store.set_health(seated.id, 99.0)
        self.assertEqual(self.store.set_health(seated.id, 100.0, reset=True).soh, 100.0)

    def test_retired_battery_is_hidden(self):
        """Retired batteries drop out of station listings and statistics"""
        battery = self.store.register("OLD-1", "LFP-48V", 2.0, 48.0, self.station.id, soh=40.0)
        self.store.retire(battery.id, note="end of life")

        serials = [b.serial for b in self.store.list_for_station(self.station.id)]
        self.assertNotIn("OLD-1", serials)
        self.assertIn("OLD-1", [b.serial for b in self.store.list_for_station(self.station.id, include_retired=True)])

        stats = self.store.statistics(self.station.id)
        self.assertEqual(stats["total"], 1)
        self.assertEqual(stats["retired"], 1)
        self.assertEqual(stats["averageSoh"], 96.0)

    def test_statistics_by_status(self):
        """byStatus covers every status"""
        self.create_driver_battery(self.station.id)
        stats = self.store.statistics(self.station.id)
        self.assertEqual(stats["byStatus"]["in-use"], 1)
        self.assertEqual(stats["byStatus"]["idle"], 1)
        self.assertEqual(stats["byStatus"]["faulty"], 0)

    def test_transfer_loose_battery(self):
        """Transfers move the battery and refresh both stations"""
        other = self.create_station("HCM-02", pillars=(1,))
        battery = self.store.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        self.services.inventory.station_inventory(self.station.id)

        moved = self.store.transfer(battery.id, other.id, actor="staff-1")

        self.assertEqual(moved.station_id, other.id)
        self.assertEqual(self.services.inventory.station_inventory(self.station.id)["batteryCounts"]["total"], 1)
        self.assertEqual(self.services.inventory.station_inventory(other.id)["batteryCounts"]["total"], 1)

    def test_transfer_seated_battery_rejected(self):
        """A battery must leave its slot before a transfer"""
        other = self.create_station("HCM-02", pillars=(1,))
        with self.assertRaises(InvalidState):
            self.store.transfer(self.battery_by_serial("SEAT-1").id, other.id)

    def test_transfer_to_unknown_station(self):
        battery = self.store.register("LOOSE-1", "LFP-48V", 2.0, 48.0, self.station.id)
        with self.assertRaises(StationNotFound):
            self.store.transfer(battery.id, "missing")

    def test_booked_battery_is_frozen(self):
        """A battery in a pending booking cannot be faulted or moved"""
        other = self.create_station("HCM-02", pillars=(1,))
        driver = self.create_driver_battery(self.station.id)
        booking = self.request_swap(self.station.id, driver.id)

        with self.assertRaises(InvalidState):
            self.store.mark_faulty(driver.id, "dropped")
        with self.assertRaises(InvalidState):
            self.store.transfer(driver.id, other.id)
        self.assertEqual(self.store.get(driver.id).status, BatteryStatus.IN_USE)

        self.services.swaps.cancel_booking(booking.id)
        self.assertEqual(self.store.mark_faulty(driver.id, "dropped").status, BatteryStatus.FAULTY)


if __name__ == '__main__':
    unittest.main()
