# File: src/swaphub/application/swap_service.py
"""
Booking/Swap Lifecycle Engine

The only component that moves batteries through is-booking and in-use and
that changes slot occupancy as part of a swap.

    pending --confirm--> confirmed --complete--> completed
       |                     |
       +--cancel--> cancelled +--dispute--> disputed

Confirm and complete each run as one unit of work under the station lock.
The commit path re-reads the booking, the batteries and the pillars under
the lock, so a snapshot taken before the lock is never trusted. Any failure
before commit leaves every record as it was.
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Any, Union

from ..domain.models import (
    BatteryStatus, BookingStatus, PillarStatus, SlotStatus, BatteryLogEntry, BatterySnapshot,
    Money, Transaction, TransactionRecordedEvent, BatteryTransferredEvent
)
from ..domain.aggregates import Battery, Booking, Pillar
from ..domain.strategies import BatterySelectionStrategy, HighestSohStrategy
from ..domain.errors import InvalidState, NoAvailableBattery
from ..infrastructure.repositories import UnitOfWork
from ..infrastructure.locking import StationLockRegistry
from ..infrastructure.messaging import MessageBus
from .base import ApplicationService, EventCollector
from .dtos import SwapRequestDTO


class SwapService(ApplicationService):
    """Application service for the swap booking lifecycle"""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        message_bus: Optional[MessageBus] = None,
        station_locks: Optional[StationLockRegistry] = None,
        selection_strategy: Optional[BatterySelectionStrategy] = None,
        swap_fee: Optional[Money] = None
    ):
        super().__init__(uow_factory, message_bus, station_locks)
        self.selection_strategy = selection_strategy or HighestSohStrategy()
        self.swap_fee = swap_fee or Money(0)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_booking(self, request_id: str) -> Booking:
        with self.uow_factory() as uow:
            return self._load_booking(uow, request_id)

    def list_bookings(self, station_id: str, status: Optional[BookingStatus] = None) -> List[Booking]:
        with self.uow_factory() as uow:
            return uow.bookings.find_by_station(station_id, status)

    def list_user_bookings(self, user_id: str) -> List[Booking]:
        with self.uow_factory() as uow:
            return uow.bookings.find_by_user(user_id)

    def list_transactions(self, station_id: str) -> List[Transaction]:
        """Completed swaps in completion order"""
        with self.uow_factory() as uow:
            return uow.transactions.list_for_station(station_id)

    def get_transaction_for_booking(self, request_id: str) -> Optional[Transaction]:
        with self.uow_factory() as uow:
            return uow.transactions.find_by_booking(request_id)

    # ------------------------------------------------------------------
    # Driver action
    # ------------------------------------------------------------------

    def request_swap(self, request: Union[SwapRequestDTO, Dict[str, Any]]) -> Booking:
        """Create a pending booking; nothing is reserved until staff confirm"""
        if not isinstance(request, SwapRequestDTO):
            request = SwapRequestDTO.model_validate(request)

        station_id = request.station_ref.id
        battery_id = request.battery_ref.id
        home_station_id = self._home_station(battery_id)
        collector = EventCollector()

        with self.station_locks.hold_all(station_id, home_station_id):
            with self.uow_factory() as uow:
                station = self._load_station(uow, station_id)
                if not station.accepts_swaps:
                    raise InvalidState(
                        f"Station {station.code} is {station.status.value}",
                        {"station_id": station_id}
                    )

                battery = self._load_battery(uow, battery_id)
                self._require_home(battery, home_station_id)
                self._check_returnable(uow, battery)

                booking = Booking.request(
                    user_id=request.user_id,
                    station_id=station_id,
                    battery_id=battery_id,
                    vehicle_id=request.vehicle_id,
                    scheduled_time=request.scheduled_time
                )
                uow.bookings.add(booking)
                collector.collect(booking)

        self.logger.info(f"Booking {booking.id} requested by {request.user_id} at station {station_id}")
        self._publish(collector.events)
        return booking

    def _check_returnable(self, uow: UnitOfWork, battery: Battery) -> None:
        if battery.retired:
            raise InvalidState(f"Battery {battery.serial} is retired", {"battery_id": battery.id})
        if battery.status in (BatteryStatus.FAULTY, BatteryStatus.IS_BOOKING):
            raise InvalidState(
                f"Battery {battery.serial} is {battery.status.value} and cannot be swapped",
                {"battery_id": battery.id}
            )
        if uow.pillars.find_by_battery(battery.id) is not None:
            raise InvalidState(
                f"Battery {battery.serial} is seated at a station, not in a vehicle",
                {"battery_id": battery.id}
            )
        if uow.bookings.find_open_by_battery(battery.id):
            raise InvalidState(
                f"Battery {battery.serial} already has an open booking",
                {"battery_id": battery.id}
            )

    # ------------------------------------------------------------------
    # Staff actions
    # ------------------------------------------------------------------

    def confirm_swap_request(self, request_id: str, staff_id: Optional[str] = None) -> Booking:
        """
        pending -> confirmed

        Picks the replacement, moves it to is-booking and reserves its slot,
        marks the returned battery in-use and confirms the booking, all in a
        single commit.
        """
        snapshot = self.get_booking(request_id)
        station_id = snapshot.station_id
        home_station_id = self._home_station(snapshot.battery_id)
        collector = EventCollector()

        with self.station_locks.hold_all(station_id, home_station_id):
            with self.uow_factory() as uow:
                booking = self._load_booking(uow, request_id)
                self._require_status(booking, BookingStatus.PENDING, "confirm")

                station = self._load_station(uow, station_id)
                if not station.accepts_swaps:
                    raise InvalidState(
                        f"Station {station.code} is {station.status.value}",
                        {"station_id": station_id}
                    )

                returned = self._load_battery(uow, booking.battery_id)
                self._require_home(returned, home_station_id)
                self._check_still_returnable(uow, booking, returned)
                pillars = uow.pillars.find_by_station(station_id)
                replacement = self._select_replacement(uow, booking, pillars, returned)

                reason = f"booking {booking.id}"
                replacement.change_status(BatteryStatus.IS_BOOKING, reason)
                uow.batteries.update(replacement)

                holder = self._pillar_holding(pillars, replacement.id)
                if holder is not None:
                    holder.reserve_slot(holder.find_slot_by_battery(replacement.id).id)
                    uow.pillars.update(holder)

                if returned.change_status(BatteryStatus.IN_USE, reason):
                    uow.batteries.update(returned)

                booking.confirm(replacement.id, staff_id)
                uow.bookings.update(booking)

                uow.battery_logs.add(BatteryLogEntry(replacement.id, "reserved", staff_id, reason))
                uow.battery_logs.add(BatteryLogEntry(returned.id, "awaiting_return", staff_id, reason))
                collector.collect(replacement, returned, booking, *pillars)

        self.logger.info(f"Booking {booking.id} confirmed with replacement {replacement.serial}")
        self._publish(collector.events)
        return booking

    def record_returned_battery(self, request_id: str, staff_id: Optional[str] = None) -> Transaction:
        """
        confirmed -> completed

        The replacement is handed over and leaves its slot, the returned
        battery is seated in the freed slot and starts charging, and the
        Transaction record is appended in the same commit.
        """
        snapshot = self.get_booking(request_id)
        station_id = snapshot.station_id
        home_station_id = self._home_station(snapshot.battery_id)
        collector = EventCollector()

        # The returned battery leaves its home pool for this station
        with self.station_locks.hold_all(station_id, home_station_id):
            with self.uow_factory() as uow:
                booking = self._load_booking(uow, request_id)
                self._require_status(booking, BookingStatus.CONFIRMED, "complete")

                replacement = self._load_battery(uow, booking.replacement_battery_id)
                returned = self._load_battery(uow, booking.battery_id)
                self._require_home(returned, home_station_id)
                pillars = uow.pillars.find_by_station(station_id)
                given = BatterySnapshot(replacement.id, replacement.model, replacement.soh)
                taken = BatterySnapshot(returned.id, returned.model, returned.soh)

                # Hand the replacement over
                replacement.change_status(BatteryStatus.IN_USE, f"handed over for booking {booking.id}")
                target_pillar = self._pillar_holding(pillars, replacement.id)
                if target_pillar is not None:
                    target_slot = target_pillar.find_slot_by_battery(replacement.id)
                    target_pillar.release_slot(target_slot.id)
                    target_pillar.remove_battery(target_slot.id)
                else:
                    target_pillar, target_slot = self._first_empty_slot(pillars)

                # Take the returned battery in
                previous_station = returned.station_id
                returned.return_to_station(station_id)
                returned.change_status(BatteryStatus.CHARGING, f"returned with booking {booking.id}")
                if previous_station != station_id:
                    collector.add(BatteryTransferredEvent(returned.id, previous_station, station_id))
                if target_slot is not None:
                    target_pillar.assign_battery(target_slot.id, returned.id)
                else:
                    self.logger.warning(f"No free slot at station {station_id} for battery {returned.serial}")

                transaction = Transaction(
                    booking_id=booking.id,
                    station_id=station_id,
                    driver_id=booking.user_id,
                    sequence=uow.transactions.next_sequence(station_id),
                    battery_returned=taken,
                    battery_given=given,
                    requested_at=booking.created_at,
                    confirmed_at=booking.confirmed_at,
                    completed_at=datetime.now(),
                    cost=self.swap_fee
                )
                uow.transactions.add(transaction)
                booking.complete(transaction.id, staff_id)

                uow.batteries.update(replacement)
                uow.batteries.update(returned)
                if target_pillar is not None:
                    uow.pillars.update(target_pillar)
                uow.bookings.update(booking)

                note = f"booking {booking.id}, transaction #{transaction.sequence}"
                uow.battery_logs.add(BatteryLogEntry(replacement.id, "swapped_out", staff_id, note))
                uow.battery_logs.add(BatteryLogEntry(returned.id, "swapped_in", staff_id, note))
                collector.collect(replacement, returned, booking, *pillars)
                collector.add(TransactionRecordedEvent(transaction))

        self.logger.info(
            f"Booking {booking.id} completed: transaction #{transaction.sequence} at station {station_id}"
        )
        self._publish(collector.events)
        return transaction

    def cancel_booking(self, request_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Booking:
        """Pending only; nothing was reserved so inventory is untouched"""
        return self._transition(request_id, lambda booking: booking.cancel(reason, actor))

    def dispute_booking(self, request_id: str, note: str, actor: Optional[str] = None) -> Booking:
        """Confirmed only; the reservation stays in place for follow-up"""
        return self._transition(request_id, lambda booking: booking.dispute(note, actor))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, request_id: str, change) -> Booking:
        station_id = self.get_booking(request_id).station_id
        collector = EventCollector()

        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                booking = self._load_booking(uow, request_id)
                change(booking)
                uow.bookings.update(booking)
                collector.collect(booking)

        self._publish(collector.events)
        return booking

    def _require_status(self, booking: Booking, expected: BookingStatus, action: str) -> None:
        if booking.status != expected:
            self.logger.warning(f"Rejected {action} of booking {booking.id}: status is {booking.status.value}")
            raise InvalidState(
                f"Cannot {action} booking {booking.id}: status is {booking.status.value}, expected {expected.value}",
                {"booking_id": booking.id, "status": booking.status.value}
            )

    def _select_replacement(
        self,
        uow: UnitOfWork,
        booking: Booking,
        pillars: List[Pillar],
        returned: Battery
    ) -> Battery:
        """
        Highest-SOH idle/full battery that is not in an unusable slot

        Batteries named by any open booking, as the returned battery or as a
        replacement, are never handed out, and neither are batteries whose
        slot is already reserved.
        """
        excluded = {returned.id}
        for open_booking in uow.bookings.find_open():
            excluded.add(open_booking.battery_id)
            if open_booking.replacement_battery_id:
                excluded.add(open_booking.replacement_battery_id)
        for pillar in pillars:
            for slot in pillar.slots:
                if slot.battery_id is None:
                    continue
                if (pillar.status != PillarStatus.ACTIVE or slot.status.is_out_of_service
                        or slot.status == SlotStatus.RESERVED):
                    excluded.add(slot.battery_id)

        candidates = uow.batteries.find_by_station(booking.station_id)
        replacement = self.selection_strategy.select(candidates, excluded)
        if replacement is None:
            self.logger.warning(f"No replacement battery at station {booking.station_id} for booking {booking.id}")
            raise NoAvailableBattery(
                f"No idle or full battery available at station {booking.station_id}",
                {"booking_id": booking.id, "station_id": booking.station_id}
            )
        return replacement

    def _home_station(self, battery_id: str) -> Optional[str]:
        """Station whose pool the battery belongs to, read before locking"""
        with self.uow_factory() as uow:
            battery = uow.batteries.get(battery_id)
            return battery.station_id if battery is not None else None

    @staticmethod
    def _require_home(battery: Battery, home_station_id: Optional[str]) -> None:
        if battery.station_id != home_station_id:
            raise InvalidState(
                f"Battery {battery.serial} changed station while the booking was processed",
                {"battery_id": battery.id}
            )

    def _check_still_returnable(self, uow: UnitOfWork, booking: Booking, returned: Battery) -> None:
        """Re-checked under the lock; another booking may have claimed the battery"""
        others = [b for b in uow.bookings.find_open_by_battery(returned.id) if b.id != booking.id]
        if others or returned.status == BatteryStatus.IS_BOOKING:
            self.logger.warning(f"Rejected confirm of booking {booking.id}: battery {returned.serial} is claimed")
            raise InvalidState(
                f"Battery {returned.serial} is held by another booking",
                {"booking_id": booking.id, "battery_id": returned.id}
            )

    @staticmethod
    def _pillar_holding(pillars: List[Pillar], battery_id: str) -> Optional[Pillar]:
        for pillar in pillars:
            if pillar.find_slot_by_battery(battery_id) is not None:
                return pillar
        return None

    @staticmethod
    def _first_empty_slot(pillars: List[Pillar]):
        for pillar in pillars:
            if pillar.status != PillarStatus.ACTIVE:
                continue
            for slot in pillar.slots:
                if slot.status == SlotStatus.EMPTY:
                    return pillar, slot
        return None, None
