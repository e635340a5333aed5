# File: src/swaphub/domain/aggregates.py
"""
Aggregate Roots for the Battery Swap Platform

Aggregates:
1. Battery - unit of physical inventory, owns its status table
2. Pillar - a rack of slots; slot stats are always derived from the slots
3. Station - capacity, location and operating status
4. Booking - the swap request state machine
5. SupportRequest - ticket lifecycle tied to a booking

Key Concepts:
- All modifications go through aggregate root methods
- Each successful mutation records a domain event
- Events are drained by the application layer and published after commit
"""

from typing import List, Optional, Dict, Any, Set
from datetime import datetime
import logging

from .models import (
    Entity, Slot, Location,
    BatteryStatus, SlotStatus, PillarStatus, StationStatus,
    BookingStatus, SupportStatus, SlotStats,
    DomainEvent, BatteryRegisteredEvent, BatteryStatusChangedEvent,
    BatteryHealthUpdatedEvent, BatteryTransferredEvent, BatteryRetiredEvent,
    SlotStatusChangedEvent, PillarCreatedEvent, StationUpdatedEvent,
    BookingStatusChangedEvent, SupportRequestStatusChangedEvent
)
from .errors import (
    InvalidState, InvalidTransition, InvalidRange, SlotNotFound,
    SlotNotReservable, NoteRequired
)
from .inventory import compute_slot_stats


MAX_SLOTS_PER_PILLAR = 64


# ============================================================================
# BASE AGGREGATE ROOT
# ============================================================================

class AggregateRoot(Entity):
    """
    Base class for all aggregate roots
    Provides domain event collection and versioning
    """

    def __init__(self, id: Optional[str] = None):
        super().__init__(id)
        self._version: int = 1
        self._changes: List[DomainEvent] = []
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def version(self) -> int:
        return self._version

    def _increment_version(self) -> None:
        self._version += 1

    def _add_domain_event(self, event: DomainEvent) -> None:
        self._changes.append(event)
        self._logger.debug(f"Added domain event: {event.__class__.__name__}")

    def clear_events(self) -> List[DomainEvent]:
        """Clear and return all domain events"""
        events = self._changes.copy()
        self._changes.clear()
        return events

    def _validate_invariants(self) -> None:
        """Validate aggregate invariants - overridden by subclasses"""
        pass


# ============================================================================
# BATTERY AGGREGATE
# ============================================================================

_AT_REST: Set[BatteryStatus] = {BatteryStatus.IDLE, BatteryStatus.FULL, BatteryStatus.CHARGING}

# Transitions reachable through Battery.change_status. FAULTY is entered only
# through mark_faulty() and left only through repair().
ALLOWED_TRANSITIONS: Dict[BatteryStatus, Set[BatteryStatus]] = {
    BatteryStatus.IDLE: _AT_REST | {BatteryStatus.IS_BOOKING, BatteryStatus.IN_USE},
    BatteryStatus.FULL: _AT_REST | {BatteryStatus.IS_BOOKING, BatteryStatus.IN_USE},
    BatteryStatus.CHARGING: _AT_REST | {BatteryStatus.IS_BOOKING, BatteryStatus.IN_USE},
    BatteryStatus.IS_BOOKING: _AT_REST | {BatteryStatus.IN_USE},
    BatteryStatus.IN_USE: _AT_REST | {BatteryStatus.IS_BOOKING},
    BatteryStatus.FAULTY: set(),
}


class Battery(AggregateRoot):
    """
    Aggregate Root: A swappable battery pack

    Identity is the serial number. The station reference is a back-reference:
    a battery belongs to exactly one station at a time. Batteries are never
    deleted; retire() freezes the status and removes them from every count.
    """

    def __init__(
        self,
        serial: str,
        model: str,
        capacity_kwh: float,
        voltage: float,
        station_id: Optional[str] = None,
        manufacturer: Optional[str] = None,
        status: BatteryStatus = BatteryStatus.IDLE,
        soh: float = 100.0,
        cycle_count: int = 0,
        retired: bool = False,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.serial = serial
        self.model = model
        self.capacity_kwh = capacity_kwh
        self.voltage = voltage
        self.station_id = station_id
        self.manufacturer = manufacturer
        self.status = status
        self.soh = soh
        self.cycle_count = cycle_count
        self.retired = retired
        self.created_at = created_at or datetime.now()
        self.updated_at = updated_at or self.created_at

        self._validate_invariants()

    @classmethod
    def register(cls, serial: str, model: str, capacity_kwh: float, voltage: float,
                 station_id: str, **kwargs) -> 'Battery':
        """Create a new battery and record the registration event"""
        battery = cls(serial=serial.strip(), model=model, capacity_kwh=capacity_kwh,
                      voltage=voltage, station_id=station_id, **kwargs)
        battery._add_domain_event(
            BatteryRegisteredEvent(battery.id, station_id, battery.serial, model)
        )
        return battery

    def _validate_invariants(self) -> None:
        if not self.serial or not self.serial.strip():
            raise ValueError("Battery serial cannot be empty")

        if self.capacity_kwh <= 0:
            raise InvalidRange(f"Capacity must be positive: {self.capacity_kwh}")

        if self.voltage <= 0:
            raise InvalidRange(f"Voltage must be positive: {self.voltage}")

        if not 0 <= self.soh <= 100:
            raise InvalidRange(f"SOH must be between 0 and 100: {self.soh}")

        if self.cycle_count < 0:
            raise InvalidRange("Cycle count cannot be negative")

    @property
    def is_available(self) -> bool:
        return not self.retired and self.status.is_available

    def _touch(self) -> None:
        self.updated_at = datetime.now()
        self._increment_version()

    def _ensure_not_retired(self) -> None:
        if self.retired:
            raise InvalidTransition(
                f"Battery {self.serial} is retired",
                {"battery_id": self.id}
            )

    def _set_status(self, new_status: BatteryStatus, reason: Optional[str]) -> None:
        old_status = self.status
        self.status = new_status
        self._touch()
        self._add_domain_event(
            BatteryStatusChangedEvent(self.id, self.station_id, old_status, new_status, reason)
        )
        self._logger.info(f"Battery {self.serial}: {old_status.value} -> {new_status.value}")

    def change_status(self, new_status: BatteryStatus, reason: Optional[str] = None) -> bool:
        """
        Move to a new usage status

        Returns False when the battery is already in the requested status.
        Raises InvalidTransition for anything outside ALLOWED_TRANSITIONS.
        """
        self._ensure_not_retired()

        if new_status == self.status:
            return False

        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Battery {self.serial} cannot go from {self.status.value} to {new_status.value}",
                {"battery_id": self.id, "from": self.status.value, "to": new_status.value}
            )

        self._set_status(new_status, reason)
        return True

    def mark_faulty(self, reason: Optional[str] = None) -> bool:
        """Explicit maintenance action; reachable from any status"""
        self._ensure_not_retired()
        if self.status == BatteryStatus.FAULTY:
            return False
        self._set_status(BatteryStatus.FAULTY, reason or "maintenance")
        return True

    def repair(self, reason: Optional[str] = None) -> None:
        """The only way out of FAULTY"""
        self._ensure_not_retired()
        if self.status != BatteryStatus.FAULTY:
            raise InvalidTransition(
                f"Battery {self.serial} is {self.status.value}, only faulty batteries can be repaired",
                {"battery_id": self.id}
            )
        self._set_status(BatteryStatus.IDLE, reason or "repair")

    def update_health(self, soh: float, reset: bool = False) -> None:
        """
        Record a new SOH reading

        SOH only decreases over a battery's life. An increase is accepted only
        as an explicit reset after cell replacement or maintenance.
        """
        self._ensure_not_retired()

        if soh is None or not 0 <= soh <= 100:
            raise InvalidRange(f"SOH must be between 0 and 100: {soh}", {"battery_id": self.id})

        if soh > self.soh and not reset:
            raise InvalidRange(
                f"SOH cannot increase from {self.soh} to {soh} without a maintenance reset",
                {"battery_id": self.id}
            )

        old_soh = self.soh
        self.soh = float(soh)
        self._touch()
        self._add_domain_event(
            BatteryHealthUpdatedEvent(self.id, self.station_id, old_soh, self.soh, reset)
        )

    def relocate(self, station_id: str) -> None:
        """Move the battery to another station's pool"""
        self._ensure_not_retired()
        if not (self.status.is_at_rest or self.status == BatteryStatus.FAULTY):
            raise InvalidState(
                f"Battery {self.serial} is {self.status.value} and cannot be transferred",
                {"battery_id": self.id}
            )
        if station_id == self.station_id:
            raise InvalidState(f"Battery {self.serial} is already at station {station_id}")

        old_station = self.station_id
        self.station_id = station_id
        self._touch()
        self._add_domain_event(BatteryTransferredEvent(self.id, old_station, station_id))

    def return_to_station(self, station_id: str) -> None:
        """A battery coming back from a vehicle joins the receiving station"""
        self.station_id = station_id
        self.cycle_count += 1
        self._touch()

    def retire(self) -> None:
        if self.retired:
            raise InvalidState(f"Battery {self.serial} is already retired", {"battery_id": self.id})
        if self.status in (BatteryStatus.IS_BOOKING, BatteryStatus.IN_USE):
            raise InvalidState(
                f"Battery {self.serial} is {self.status.value} and cannot be retired",
                {"battery_id": self.id}
            )
        self.retired = True
        self._touch()
        self._add_domain_event(BatteryRetiredEvent(self.id, self.station_id, self.status))
        self._logger.info(f"Battery {self.serial} retired")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "serial": self.serial,
            "model": self.model,
            "manufacturer": self.manufacturer,
            "capacity_kWh": self.capacity_kwh,
            "voltage": self.voltage,
            "station": self.station_id,
            "status": self.status.value,
            "soh": self.soh,
            "cycleCount": self.cycle_count,
            "retired": self.retired,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat()
        }


# ============================================================================
# PILLAR AGGREGATE
# ============================================================================

class Pillar(AggregateRoot):
    """
    Aggregate Root: A physical rack of slots at a station

    slot_stats is computed from the slots on every read, so it can never
    drift from the slot statuses.
    """

    def __init__(
        self,
        station_id: str,
        pillar_name: str,
        pillar_number: int,
        pillar_code: str,
        slots: Optional[List[Slot]] = None,
        status: PillarStatus = PillarStatus.ACTIVE,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.station_id = station_id
        self.pillar_name = pillar_name
        self.pillar_number = pillar_number
        self.pillar_code = pillar_code
        self.status = status
        self.created_at = created_at or datetime.now()
        self._slots: Dict[str, Slot] = {}
        for slot in sorted(slots or [], key=lambda s: s.slot_number):
            self._slots[slot.id] = slot

        self._validate_invariants()

    @classmethod
    def provision(
        cls,
        station_id: str,
        station_code: str,
        pillar_name: str,
        pillar_number: int,
        total_slots: int
    ) -> 'Pillar':
        """Create a pillar with ``total_slots`` empty slots and generated codes"""
        if not 1 <= total_slots <= MAX_SLOTS_PER_PILLAR:
            raise InvalidRange(
                f"A pillar holds between 1 and {MAX_SLOTS_PER_PILLAR} slots, got {total_slots}"
            )
        if pillar_number <= 0:
            raise InvalidRange("Pillar number must be positive")

        pillar_code = f"{station_code}-P{pillar_number:02d}"
        pillar = cls(station_id, pillar_name, pillar_number, pillar_code)
        for number in range(1, total_slots + 1):
            slot = Slot(pillar.id, number, f"{pillar_code}-S{number:02d}")
            pillar._slots[slot.id] = slot

        pillar._validate_invariants()
        pillar._add_domain_event(
            PillarCreatedEvent(pillar.id, station_id, pillar_code, total_slots)
        )
        pillar._logger.info(f"Provisioned pillar {pillar_code} with {total_slots} slots")
        return pillar

    def _validate_invariants(self) -> None:
        if not self.pillar_name or not self.pillar_name.strip():
            raise ValueError("Pillar name cannot be empty")

        numbers = [s.slot_number for s in self._slots.values()]
        if len(numbers) != len(set(numbers)):
            raise InvalidState(f"Pillar {self.pillar_code} has duplicate slot numbers")

        # Raises InvalidRange if the partition is broken
        compute_slot_stats(self._slots.values())

    @property
    def slots(self) -> List[Slot]:
        return list(self._slots.values())

    @property
    def total_slots(self) -> int:
        return len(self._slots)

    @property
    def slot_stats(self) -> SlotStats:
        return compute_slot_stats(self._slots.values())

    def get_slot(self, slot_id: str) -> Slot:
        slot = self._slots.get(slot_id)
        if slot is None:
            raise SlotNotFound(slot_id)
        return slot

    def has_slot(self, slot_id: str) -> bool:
        return slot_id in self._slots

    def find_slot_by_battery(self, battery_id: str) -> Optional[Slot]:
        for slot in self._slots.values():
            if slot.battery_id == battery_id:
                return slot
        return None

    def _record_slot_change(self, slot: Slot, old_status: SlotStatus, battery_id: Optional[str]) -> None:
        self._increment_version()
        self._validate_invariants()
        self._add_domain_event(
            SlotStatusChangedEvent(self.id, self.station_id, slot.id, old_status, slot.status, battery_id)
        )
        self._logger.debug(f"Slot {slot.slot_code}: {old_status.value} -> {slot.status.value}")

    def _ensure_active(self, action: str) -> None:
        if self.status != PillarStatus.ACTIVE:
            raise InvalidState(
                f"Cannot {action} on pillar {self.pillar_code} while it is {self.status.value}",
                {"pillar_id": self.id}
            )

    def assign_battery(self, slot_id: str, battery_id: str) -> Slot:
        self._ensure_active("assign a battery")
        slot = self.get_slot(slot_id)
        old_status = slot.status
        slot.assign(battery_id)
        self._record_slot_change(slot, old_status, battery_id)
        return slot

    def reserve_slot(self, slot_id: str) -> Slot:
        slot = self.get_slot(slot_id)
        if self.status != PillarStatus.ACTIVE:
            raise SlotNotReservable(
                f"Pillar {self.pillar_code} is {self.status.value}",
                {"slot_id": slot_id, "pillar_id": self.id}
            )
        old_status = slot.status
        slot.reserve()
        self._record_slot_change(slot, old_status, slot.battery_id)
        return slot

    def release_slot(self, slot_id: str) -> Slot:
        slot = self.get_slot(slot_id)
        old_status = slot.status
        slot.release()
        self._record_slot_change(slot, old_status, slot.battery_id)
        return slot

    def remove_battery(self, slot_id: str) -> str:
        slot = self.get_slot(slot_id)
        old_status = slot.status
        battery_id = slot.remove_battery()
        self._record_slot_change(slot, old_status, battery_id)
        return battery_id

    def set_slot_out_of_service(self, slot_id: str, status: SlotStatus) -> Slot:
        slot = self.get_slot(slot_id)
        old_status = slot.status
        slot.take_out_of_service(status)
        self._record_slot_change(slot, old_status, slot.battery_id)
        return slot

    def reopen_slot(self, slot_id: str) -> Slot:
        slot = self.get_slot(slot_id)
        old_status = slot.status
        slot.reopen()
        self._record_slot_change(slot, old_status, slot.battery_id)
        return slot

    def change_status(self, status: PillarStatus) -> None:
        if status == self.status:
            return
        if status != PillarStatus.ACTIVE and any(
            s.status == SlotStatus.RESERVED for s in self._slots.values()
        ):
            raise InvalidState(
                f"Pillar {self.pillar_code} has slots held for bookings",
                {"pillar_id": self.id}
            )
        self.status = status
        self._increment_version()


# ============================================================================
# STATION AGGREGATE
# ============================================================================

class Station(AggregateRoot):
    """
    Aggregate Root: A swap station

    ``capacity`` is the design limit. It is not reconciled with the slots
    actually provisioned, since pillars are added after the station exists.
    """

    def __init__(
        self,
        name: str,
        code: str,
        location: Location,
        capacity: int,
        status: StationStatus = StationStatus.ACTIVE,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.name = name
        self.code = code
        self.location = location
        self.capacity = capacity
        self.status = status
        self.created_at = created_at or datetime.now()
        self.updated_at = updated_at or self.created_at

        self._validate_invariants()

    def _validate_invariants(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Station name cannot be empty")

        if not self.code or not self.code.strip():
            raise ValueError("Station code cannot be empty")

        if self.capacity < 0:
            raise InvalidRange(f"Capacity cannot be negative: {self.capacity}")

    @property
    def accepts_swaps(self) -> bool:
        return self.status == StationStatus.ACTIVE

    def change_status(self, status: StationStatus) -> None:
        if status == self.status:
            return
        old_status = self.status
        self.status = status
        self.updated_at = datetime.now()
        self._increment_version()
        self._add_domain_event(
            StationUpdatedEvent(self.id, {"status": [old_status.value, status.value]})
        )
        self._logger.info(f"Station {self.code}: {old_status.value} -> {status.value}")

    def update_capacity(self, capacity: int) -> None:
        if capacity < 0:
            raise InvalidRange(f"Capacity cannot be negative: {capacity}")
        old_capacity = self.capacity
        self.capacity = capacity
        self.updated_at = datetime.now()
        self._increment_version()
        self._add_domain_event(
            StationUpdatedEvent(self.id, {"capacity": [old_capacity, capacity]})
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "_id": self.id,
            "name": self.name,
            "code": self.code,
            "capacity": self.capacity,
            "status": self.status.value
        }
        data.update(self.location.to_dict())
        return data


# ============================================================================
# BOOKING AGGREGATE
# ============================================================================

class Booking(AggregateRoot):
    """
    Aggregate Root: A driver's request to swap a battery at a station

    ``battery_id`` is the battery the driver will return. The replacement is
    chosen by staff at confirmation time.
    """

    def __init__(
        self,
        user_id: str,
        station_id: str,
        battery_id: str,
        scheduled_time: Optional[datetime] = None,
        vehicle_id: Optional[str] = None,
        status: BookingStatus = BookingStatus.PENDING,
        replacement_battery_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        confirmed_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        cancelled_at: Optional[datetime] = None,
        disputed_at: Optional[datetime] = None,
        confirmed_by: Optional[str] = None,
        completed_by: Optional[str] = None,
        cancel_reason: Optional[str] = None,
        dispute_note: Optional[str] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.user_id = user_id
        self.station_id = station_id
        self.battery_id = battery_id
        self.created_at = created_at or datetime.now()
        self.scheduled_time = scheduled_time or self.created_at
        self.vehicle_id = vehicle_id
        self.status = status
        self.replacement_battery_id = replacement_battery_id
        self.transaction_id = transaction_id
        self.confirmed_at = confirmed_at
        self.completed_at = completed_at
        self.cancelled_at = cancelled_at
        self.disputed_at = disputed_at
        self.confirmed_by = confirmed_by
        self.completed_by = completed_by
        self.cancel_reason = cancel_reason
        self.dispute_note = dispute_note

    @classmethod
    def request(cls, user_id: str, station_id: str, battery_id: str, **kwargs) -> 'Booking':
        booking = cls(user_id=user_id, station_id=station_id, battery_id=battery_id, **kwargs)
        booking._add_domain_event(
            BookingStatusChangedEvent(booking.id, station_id, None, BookingStatus.PENDING, user_id)
        )
        return booking

    def _require(self, expected: BookingStatus, action: str) -> None:
        if self.status != expected:
            raise InvalidState(
                f"Cannot {action} booking {self.id}: status is {self.status.value}, expected {expected.value}",
                {"booking_id": self.id, "status": self.status.value}
            )

    def _transition(self, new_status: BookingStatus, actor: Optional[str], **details) -> None:
        old_status = self.status
        self.status = new_status
        self._increment_version()
        self._add_domain_event(
            BookingStatusChangedEvent(self.id, self.station_id, old_status, new_status, actor, details)
        )
        self._logger.info(f"Booking {self.id}: {old_status.value} -> {new_status.value}")

    def confirm(self, replacement_battery_id: str, staff_id: Optional[str] = None) -> None:
        self._require(BookingStatus.PENDING, "confirm")
        self.replacement_battery_id = replacement_battery_id
        self.confirmed_at = datetime.now()
        self.confirmed_by = staff_id
        self._transition(BookingStatus.CONFIRMED, staff_id, replacement_battery_id=replacement_battery_id)

    def complete(self, transaction_id: str, staff_id: Optional[str] = None) -> None:
        self._require(BookingStatus.CONFIRMED, "complete")
        self.transaction_id = transaction_id
        self.completed_at = datetime.now()
        self.completed_by = staff_id
        self._transition(BookingStatus.COMPLETED, staff_id, transaction_id=transaction_id)

    def cancel(self, reason: Optional[str] = None, actor: Optional[str] = None) -> None:
        """Only pending bookings can be cancelled; nothing is reserved yet"""
        self._require(BookingStatus.PENDING, "cancel")
        self.cancel_reason = reason
        self.cancelled_at = datetime.now()
        self._transition(BookingStatus.CANCELLED, actor, reason=reason)

    def dispute(self, note: str, actor: Optional[str] = None) -> None:
        """Flag a confirmed swap for follow-up; inventory is left as is"""
        self._require(BookingStatus.CONFIRMED, "dispute")
        if not note or not note.strip():
            raise NoteRequired("A dispute needs a note", {"booking_id": self.id})
        self.dispute_note = note.strip()
        self.disputed_at = datetime.now()
        self._transition(BookingStatus.DISPUTED, actor, note=self.dispute_note)


# ============================================================================
# SUPPORT REQUEST AGGREGATE
# ============================================================================

class SupportRequest(AggregateRoot):
    """
    Aggregate Root: A support ticket raised against a booking

    in-progress -> resolved -> completed -> closed, with in-progress ->
    completed allowed directly. Closed is terminal.
    """

    def __init__(
        self,
        booking_id: str,
        user_id: str,
        title: str,
        description: str,
        images: Optional[List[str]] = None,
        status: SupportStatus = SupportStatus.IN_PROGRESS,
        resolve_note: Optional[str] = None,
        close_note: Optional[str] = None,
        created_at: Optional[datetime] = None,
        resolved_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        closed_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        if not title or not title.strip():
            raise ValueError("Support request title cannot be empty")

        self.booking_id = booking_id
        self.user_id = user_id
        self.title = title.strip()
        self.description = description
        self.images = list(images or [])
        self.status = status
        self.resolve_note = resolve_note
        self.close_note = close_note
        self.created_at = created_at or datetime.now()
        self.resolved_at = resolved_at
        self.completed_at = completed_at
        self.closed_at = closed_at

    @classmethod
    def open(cls, booking_id: str, user_id: str, title: str, description: str, **kwargs) -> 'SupportRequest':
        request = cls(booking_id, user_id, title, description, **kwargs)
        request._add_domain_event(
            SupportRequestStatusChangedEvent(request.id, booking_id, None, request.status)
        )
        return request

    def _transition(self, new_status: SupportStatus, note: Optional[str] = None) -> None:
        old_status = self.status
        self.status = new_status
        self._increment_version()
        self._add_domain_event(
            SupportRequestStatusChangedEvent(self.id, self.booking_id, old_status, new_status, note)
        )
        self._logger.info(f"Support request {self.id}: {old_status.value} -> {new_status.value}")

    def _invalid(self, action: str) -> InvalidState:
        return InvalidState(
            f"Cannot {action} support request {self.id} while it is {self.status.value}",
            {"request_id": self.id, "status": self.status.value}
        )

    def resolve(self, note: Optional[str] = None) -> None:
        if self.status != SupportStatus.IN_PROGRESS:
            raise self._invalid("resolve")
        self.resolve_note = note.strip() if note and note.strip() else None
        self.resolved_at = datetime.now()
        self._transition(SupportStatus.RESOLVED, self.resolve_note)

    def complete(self) -> None:
        if self.status not in (SupportStatus.IN_PROGRESS, SupportStatus.RESOLVED):
            raise self._invalid("complete")
        self.completed_at = datetime.now()
        self._transition(SupportStatus.COMPLETED)

    def close(self, note: Optional[str]) -> None:
        """Close a completed ticket; a non-blank note is mandatory"""
        if self.status != SupportStatus.COMPLETED:
            raise self._invalid("close")
        if note is None or not note.strip():
            raise NoteRequired("A close note is required", {"request_id": self.id})
        self.close_note = note.strip()
        self.closed_at = datetime.now()
        self._transition(SupportStatus.CLOSED, self.close_note)
