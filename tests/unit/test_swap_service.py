# File: tests/unit/test_swap_service.py
"""
Unit tests for SwapService: the booking lifecycle from request to completed
transaction, including the confirm/complete scenarios and the atomicity of
a rejected confirm.
"""

import unittest
from decimal import Decimal
from unittest.mock import patch

from swaphub.domain.models import BatteryStatus, BookingStatus, SlotStatus, StationStatus
from swaphub.domain.errors import (
    BookingNotFound, InvalidState, NoAvailableBattery, NoteRequired, SlotNotReservable
)
from swaphub.infrastructure.messaging import EventType
from tests.support import SwapHubTestCase


class TestSwapRequest(SwapHubTestCase):
    """Driver requests"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(2,), batteries=[("R-1", 98.0)])
        self.driver_battery = self.create_driver_battery(self.station.id)

    def test_request_creates_pending_booking(self):
        """Nothing is reserved until staff confirm"""
        booking = self.request_swap(self.station.id, self.driver_battery.id)
        self.assertEqual(booking.status, BookingStatus.PENDING)
        self.assertEqual(self.battery_by_serial("R-1").status, BatteryStatus.IDLE)

    def test_request_accepts_embedded_references(self):
        """station and battery may arrive as objects"""
        booking = self.services.swaps.request_swap({
            "userId": "driver-1",
            "station": {"_id": self.station.id, "name": "Station HCM-01"},
            "battery": {"id": self.driver_battery.id}
        })
        self.assertEqual(booking.station_id, self.station.id)
        self.assertEqual(booking.battery_id, self.driver_battery.id)

    def test_seated_battery_cannot_be_returned(self):
        """The returned battery must come from a vehicle"""
        with self.assertRaises(InvalidState):
            self.request_swap(self.station.id, self.battery_by_serial("R-1").id)

    def test_one_open_booking_per_battery(self):
        """A battery with a pending booking cannot be booked again"""
        self.request_swap(self.station.id, self.driver_battery.id)
        with self.assertRaises(InvalidState):
            self.request_swap(self.station.id, self.driver_battery.id)

    def test_open_booking_blocks_other_stations(self):
        """A battery already booked at one station cannot be booked at another"""
        other = self.create_station("HCM-02", pillars=(2,), batteries=[("R-9", 97.0)])
        booking = self.request_swap(self.station.id, self.driver_battery.id)

        with self.assertRaises(InvalidState):
            self.request_swap(other.id, self.driver_battery.id)

        self.services.swaps.cancel_booking(booking.id)
        moved = self.request_swap(other.id, self.driver_battery.id)
        self.assertEqual(moved.station_id, other.id)

    def test_station_in_maintenance_refuses(self):
        self.services.inventory.set_station_status(self.station.id, StationStatus.MAINTENANCE)
        with self.assertRaises(InvalidState):
            self.request_swap(self.station.id, self.driver_battery.id)

    def test_user_bookings(self):
        self.request_swap(self.station.id, self.driver_battery.id, user_id="driver-7")
        self.assertEqual(len(self.services.swaps.list_user_bookings("driver-7")), 1)
        self.assertEqual(len(self.services.swaps.list_bookings(self.station.id, BookingStatus.PENDING)), 1)


class TestConfirmAndComplete(SwapHubTestCase):
    """Staff confirm and complete"""

    def setUp(self):
        super().setUp()
        # Scenario A: one idle battery (SOH 98), battery X in use
        self.station = self.create_station("HCM-01", pillars=(2,), batteries=[("R-1", 98.0)])
        self.battery_x = self.create_driver_battery(self.station.id, "X-1", soh=70.0)
        self.booking = self.request_swap(self.station.id, self.battery_x.id)
        self.swaps = self.services.swaps

    def test_scenario_a_confirm(self):
        """Confirm reserves the idle battery and its slot"""
        booking = self.swaps.confirm_swap_request(self.booking.id, "staff-1")

        replacement = self.battery_by_serial("R-1")
        self.assertEqual(booking.status, BookingStatus.CONFIRMED)
        self.assertEqual(booking.replacement_battery_id, replacement.id)
        self.assertEqual(replacement.status, BatteryStatus.IS_BOOKING)
        self.assertEqual(self.services.batteries.get(self.battery_x.id).status, BatteryStatus.IN_USE)
        self.assertEqual(self.slot_of(replacement.id).status, SlotStatus.RESERVED)

    def test_scenario_b_complete(self):
        """Completing hands over the replacement and writes one transaction"""
        self.swaps.confirm_swap_request(self.booking.id, "staff-1")
        transaction = self.swaps.record_returned_battery(self.booking.id, "staff-1")

        replacement = self.battery_by_serial("R-1")
        returned = self.services.batteries.get(self.battery_x.id)
        self.assertEqual(replacement.status, BatteryStatus.IN_USE)
        self.assertEqual(returned.status, BatteryStatus.CHARGING)
        self.assertEqual(returned.cycle_count, 1)

        self.assertEqual(transaction.to_dict()["batteryGiven"]["sohAfter"], 98.0)
        self.assertEqual(transaction.battery_returned.soh, 70.0)
        self.assertEqual(transaction.cost.amount, Decimal("50000"))
        self.assertEqual(len(self.swaps.list_transactions(self.station.id)), 1)
        self.assertEqual(self.swaps.get_booking(self.booking.id).transaction_id, transaction.id)

    def test_complete_moves_returned_battery_into_freed_slot(self):
        """The returned battery takes the slot the replacement left"""
        self.swaps.confirm_swap_request(self.booking.id)
        slot_id = self.slot_of(self.battery_by_serial("R-1").id).id

        self.swaps.record_returned_battery(self.booking.id)

        self.assertIsNone(self.slot_of(self.battery_by_serial("R-1").id))
        slot = self.slot_of(self.battery_x.id)
        self.assertEqual(slot.id, slot_id)
        self.assertEqual(slot.status, SlotStatus.OCCUPIED)

    def test_scenario_c_all_faulty(self):
        """No idle or full battery means NoAvailableBattery"""
        station = self.create_station("HCM-02", capacity=10, pillars=(4,), batteries=[("F-1", 90.0), ("F-2", 85.0)])
        for serial in ("F-1", "F-2"):
            self.services.batteries.mark_faulty(self.battery_by_serial(serial).id, "test")
        self.assertEqual(self.services.inventory.station_inventory(station.id)["availableBatteries"], 0)

        driver = self.create_driver_battery(station.id, "X-2")
        booking = self.request_swap(station.id, driver.id)
        with self.assertRaises(NoAvailableBattery):
            self.swaps.confirm_swap_request(booking.id)

    def test_no_double_confirm(self):
        """A second confirm fails and changes nothing"""
        self.swaps.confirm_swap_request(self.booking.id)
        with self.assertRaises(InvalidState):
            self.swaps.confirm_swap_request(self.booking.id)

    def test_complete_requires_confirmed(self):
        with self.assertRaises(InvalidState):
            self.swaps.record_returned_battery(self.booking.id)

    def test_unknown_booking(self):
        with self.assertRaises(BookingNotFound):
            self.swaps.confirm_swap_request("missing")

    def test_highest_soh_is_chosen(self):
        """Replacement selection prefers the healthiest pack"""
        station = self.create_station("HCM-03", pillars=(3,), batteries=[("L-1", 80.0), ("L-2", 99.0), ("L-3", 91.0)])
        driver = self.create_driver_battery(station.id, "X-3")
        booking = self.swaps.confirm_swap_request(self.request_swap(station.id, driver.id).id)
        self.assertEqual(booking.replacement_battery_id, self.battery_by_serial("L-2").id)

    def test_out_of_service_slot_battery_skipped(self):
        """Batteries in locked slots are not handed out"""
        self.services.inventory.set_slot_status(self.slot_of(self.battery_by_serial("R-1").id).id, SlotStatus.LOCKED)
        with self.assertRaises(NoAvailableBattery):
            self.swaps.confirm_swap_request(self.booking.id)

    def test_returned_battery_never_handed_out(self):
        """A battery named as returned by an open booking is not a replacement candidate"""
        loose = self.services.batteries.register("X-IDLE", "LFP-48V", 2.0, 48.0, self.station.id, soh=99.5)
        first = self.request_swap(self.station.id, loose.id, user_id="driver-2")
        second_driver = self.create_driver_battery(self.station.id, "Y-1")
        second = self.request_swap(self.station.id, second_driver.id, user_id="driver-3")

        confirmed = self.swaps.confirm_swap_request(second.id)
        self.assertEqual(confirmed.replacement_battery_id, self.battery_by_serial("R-1").id)
        self.assertEqual(self.services.batteries.get(loose.id).status, BatteryStatus.IDLE)

        with self.assertRaises(NoAvailableBattery):
            self.swaps.confirm_swap_request(first.id)
        self.assertEqual(self.swaps.get_booking(first.id).status, BookingStatus.PENDING)

    def test_reserved_slot_battery_skipped(self):
        """A battery whose slot is reserved is never picked again"""
        self.swaps.confirm_swap_request(self.booking.id)
        held = self.battery_by_serial("R-1")
        # Drop the status outside the swap engine; the slot stays reserved
        with self.services.uow_factory() as uow:
            battery = uow.batteries.get(held.id)
            battery.change_status(BatteryStatus.IDLE, "test")
            uow.batteries.update(battery)

        self.services.batteries.register("R-2", "LFP-48V", 2.0, 48.0, self.station.id, soh=90.0)
        second_driver = self.create_driver_battery(self.station.id, "Y-1")
        second = self.swaps.confirm_swap_request(self.request_swap(self.station.id, second_driver.id).id)

        self.assertEqual(second.replacement_battery_id, self.battery_by_serial("R-2").id)

    def test_booked_batteries_only_move_through_swaps(self):
        """Manual status changes to a reserved replacement are rejected"""
        self.swaps.confirm_swap_request(self.booking.id)
        held = self.battery_by_serial("R-1")

        with self.assertRaises(InvalidState):
            self.services.batteries.set_status(held.id, BatteryStatus.IDLE)
        with self.assertRaises(InvalidState):
            self.services.batteries.set_status(self.battery_x.id, BatteryStatus.CHARGING)

        self.assertEqual(self.battery_by_serial("R-1").status, BatteryStatus.IS_BOOKING)
        self.assertEqual(self.slot_of(held.id).status, SlotStatus.RESERVED)

    def test_confirm_is_atomic(self):
        """A failure halfway through confirm leaves every record untouched"""
        before_inventory = self.services.inventory.station_inventory(self.station.id)

        with patch("swaphub.domain.aggregates.Pillar.reserve_slot", side_effect=SlotNotReservable("boom")):
            with self.assertRaises(SlotNotReservable):
                self.swaps.confirm_swap_request(self.booking.id)

        self.assertEqual(self.swaps.get_booking(self.booking.id).status, BookingStatus.PENDING)
        self.assertEqual(self.battery_by_serial("R-1").status, BatteryStatus.IDLE)
        self.assertEqual(self.slot_of(self.battery_by_serial("R-1").id).status, SlotStatus.OCCUPIED)
        self.assertEqual(self.services.inventory.compute_station_inventory(self.station.id).to_dict(), before_inventory)

    def test_events_published_after_commit(self):
        """Confirm publishes the booking transition on the queue"""
        self.queue.clear()
        self.swaps.confirm_swap_request(self.booking.id)
        types = [m.event_type for m in self.queue.get_messages(self.message_bus.EVENTS_TOPIC)]
        self.assertIn(EventType.BOOKING_STATUS_CHANGED, types)
        self.assertIn(EventType.SLOT_STATUS_CHANGED, types)

    def test_queue_subscribers_receive_swap_events(self):
        """Consumers subscribed to the events topic see each committed transition"""
        received = []
        subscription_id = self.queue.subscribe(self.message_bus.EVENTS_TOPIC, received.append)

        self.swaps.confirm_swap_request(self.booking.id)
        self.assertIn(EventType.BOOKING_STATUS_CHANGED, [m.event_type for m in received])

        self.assertTrue(self.queue.unsubscribe(subscription_id))
        count = len(received)
        self.swaps.record_returned_battery(self.booking.id)
        self.assertEqual(len(received), count)

    def test_transactions_keep_completion_order(self):
        """Per-station sequences follow the order of completion"""
        second_driver = self.create_driver_battery(self.station.id, "X-9")
        self.services.batteries.register("R-2", "LFP-48V", 2.0, 48.0, self.station.id, soh=95.0)
        second = self.request_swap(self.station.id, second_driver.id, user_id="driver-2")

        self.swaps.confirm_swap_request(second.id)
        self.swaps.confirm_swap_request(self.booking.id)
        self.swaps.record_returned_battery(second.id)
        self.swaps.record_returned_battery(self.booking.id)

        records = self.swaps.list_transactions(self.station.id)
        self.assertEqual([t.sequence for t in records], [1, 2])
        self.assertEqual([t.booking_id for t in records], [second.id, self.booking.id])


class TestCancelAndDispute(SwapHubTestCase):
    """Terminal transitions other than completion"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(2,), batteries=[("R-1", 98.0)])
        self.driver_battery = self.create_driver_battery(self.station.id)
        self.booking = self.request_swap(self.station.id, self.driver_battery.id)
        self.swaps = self.services.swaps

    def test_cancel_pending(self):
        """A pending booking can be cancelled and rebooked"""
        booking = self.swaps.cancel_booking(self.booking.id, "changed plans", actor="driver-1")
        self.assertEqual(booking.status, BookingStatus.CANCELLED)
        self.assertEqual(booking.cancel_reason, "changed plans")
        self.request_swap(self.station.id, self.driver_battery.id)

    def test_cancel_confirmed_rejected(self):
        self.swaps.confirm_swap_request(self.booking.id)
        with self.assertRaises(InvalidState):
            self.swaps.cancel_booking(self.booking.id)

    def test_dispute_confirmed(self):
        """Disputes need a note; the reservation stays in place"""
        self.swaps.confirm_swap_request(self.booking.id)
        with self.assertRaises(NoteRequired):
            self.swaps.dispute_booking(self.booking.id, "")

        booking = self.swaps.dispute_booking(self.booking.id, "Wrong connector", actor="staff-1")
        self.assertEqual(booking.status, BookingStatus.DISPUTED)
        self.assertEqual(self.battery_by_serial("R-1").status, BatteryStatus.IS_BOOKING)

        with self.assertRaises(InvalidState):
            self.swaps.record_returned_battery(self.booking.id)

    def test_dispute_pending_rejected(self):
        with self.assertRaises(InvalidState):
            self.swaps.dispute_booking(self.booking.id, "note")


if __name__ == '__main__':
    unittest.main()
