# File: src/swaphub/domain/models.py
"""
Domain Models for the Battery Swap Platform

This module contains:
1. Enums: battery, slot, pillar, station, booking and support statuses
2. Value Objects: Location, Money, SlotStats, BatteryCounts, Reference
3. Entities: Slot, BatteryLogEntry and the immutable Transaction and Feedback records
4. Domain Events: raised by aggregates whenever inventory or lifecycle state changes

Aggregate roots (Battery, Pillar, Station, Booking, SupportRequest) live in
aggregates.py and are built on the types defined here.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from decimal import Decimal
import uuid
from enum import Enum

from .errors import (
    InvalidRange, InvalidState, SlotOccupied, SlotEmpty, SlotNotReservable
)


# ============================================================================
# ENUMS
# ============================================================================

class BatteryStatus(Enum):
    """
    Usage status of a battery
    IS_BOOKING is the "reserved" status held during a confirmed swap
    """
    IDLE = "idle"                # Charged enough, sitting in a slot
    CHARGING = "charging"
    FULL = "full"
    FAULTY = "faulty"            # Out of circulation until repaired
    IN_USE = "in-use"            # In a driver's vehicle
    IS_BOOKING = "is-booking"    # Held for a confirmed booking

    @property
    def is_at_rest(self) -> bool:
        """Physically at a station and not committed to any swap"""
        return self in (BatteryStatus.IDLE, BatteryStatus.FULL, BatteryStatus.CHARGING)

    @property
    def is_available(self) -> bool:
        """Can be handed to a driver"""
        return self in (BatteryStatus.IDLE, BatteryStatus.FULL)


class SlotStatus(Enum):
    """Status of a single dock inside a pillar"""
    EMPTY = "empty"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    LOCKED = "locked"
    MAINTENANCE = "maintenance"
    ERROR = "error"

    @property
    def is_out_of_service(self) -> bool:
        return self in (SlotStatus.LOCKED, SlotStatus.MAINTENANCE, SlotStatus.ERROR)


class PillarStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class StationStatus(Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    INACTIVE = "inactive"


class BookingStatus(Enum):
    """
    Swap booking lifecycle
    pending -> confirmed -> completed, pending -> cancelled, confirmed -> disputed
    """
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"        # Reporting only, no resolution path

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.DISPUTED)

    @property
    def is_open(self) -> bool:
        """Pending or confirmed; the booking still holds its batteries"""
        return self in (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class SupportStatus(Enum):
    IN_PROGRESS = "in-progress"
    RESOLVED = "resolved"
    COMPLETED = "completed"
    CLOSED = "closed"


class MembershipKind(Enum):
    FAVORITE = "favorite"
    RECENT = "recent"


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class Location:
    """
    Value Object: Station address with optional coordinates
    """
    address: str
    city: str
    district: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise ValueError("Address cannot be empty")

        if not self.city or not self.city.strip():
            raise ValueError("City cannot be empty")

        if self.latitude is not None and not -90 <= self.latitude <= 90:
            raise ValueError(f"Latitude must be between -90 and 90: {self.latitude}")

        if self.longitude is not None and not -180 <= self.longitude <= 180:
            raise ValueError(f"Longitude must be between -180 and 180: {self.longitude}")

    def __str__(self) -> str:
        parts = [self.address, self.district, self.city]
        return ", ".join(p for p in parts if p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "city": self.city,
            "district": self.district,
            "coordinates": {"lat": self.latitude, "lng": self.longitude}
        }


@dataclass(frozen=True)
class Money:
    """
    Value Object: Monetary amount with currency
    """
    amount: Decimal
    currency: str = "VND"

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        if self.amount < Decimal('0'):
            raise ValueError("Money amount cannot be negative")

        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": str(self.amount), "currency": self.currency}


@dataclass(frozen=True)
class SlotStats:
    """
    Value Object: Partition of a pillar's slots by status
    Locked, maintenance and error slots count towards total only.
    """
    total: int
    empty: int
    occupied: int
    reserved: int

    def __post_init__(self):
        if min(self.total, self.empty, self.occupied, self.reserved) < 0:
            raise InvalidRange("Slot counts cannot be negative")

        if self.empty + self.occupied + self.reserved > self.total:
            raise InvalidRange(
                f"Slot partition exceeds total: {self.empty}+{self.occupied}+{self.reserved} > {self.total}"
            )

    @property
    def out_of_service(self) -> int:
        return self.total - self.empty - self.occupied - self.reserved

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "empty": self.empty,
            "occupied": self.occupied,
            "reserved": self.reserved
        }


@dataclass(frozen=True)
class BatteryCounts:
    """
    Value Object: Per-station battery totals
    available + charging + in_use + faulty always equals total.
    """
    total: int
    available: int
    charging: int
    in_use: int
    faulty: int

    def __post_init__(self):
        if min(self.total, self.available, self.charging, self.in_use, self.faulty) < 0:
            raise InvalidRange("Battery counts cannot be negative")

        if self.available + self.charging + self.in_use + self.faulty != self.total:
            raise InvalidRange(
                f"Battery counts do not add up to total {self.total}"
            )

    def to_dict(self) -> Dict[str, int]:
        return {
            "total": self.total,
            "available": self.available,
            "charging": self.charging,
            "inUse": self.in_use,
            "faulty": self.faulty
        }


@dataclass(frozen=True)
class Reference:
    """
    Value Object: A link to another record

    Collaborator payloads send stations and batteries either as a bare id
    string or as an embedded object. Both are parsed once, here, into an
    IdReference or an InlineReference; business logic only reads ``.id``.
    """
    id: str

    @property
    def is_inline(self) -> bool:
        return False

    @staticmethod
    def parse(value: Any) -> 'Reference':
        """Resolve a raw payload value into a reference"""
        if isinstance(value, Reference):
            return value

        if isinstance(value, str):
            if not value.strip():
                raise ValueError("Reference id cannot be empty")
            return IdReference(value.strip())

        if isinstance(value, dict):
            ref_id = value.get("_id") or value.get("id")
            if not ref_id:
                raise ValueError("Embedded reference has no '_id' or 'id'")
            return InlineReference(str(ref_id), dict(value))

        raise ValueError(f"Cannot build a reference from {type(value).__name__}")


@dataclass(frozen=True)
class IdReference(Reference):
    pass


@dataclass(frozen=True)
class InlineReference(Reference):
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_inline(self) -> bool:
        return True


# ============================================================================
# ENTITIES
# ============================================================================

class Entity:
    """
    Base class for domain entities
    Equality is by type and id
    """

    def __init__(self, id: Optional[str] = None):
        self._id = id or str(uuid.uuid4())

    @property
    def id(self) -> str:
        return self._id

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return False
        return self.id == other.id and type(self) == type(other)

    def __hash__(self) -> int:
        return hash((self.id, type(self).__name__))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id})"


class Slot(Entity):
    """
    Entity: A single physical dock inside a pillar

    ``occupied`` holds an at-rest battery, ``reserved`` holds a battery for an
    in-flight booking. A reserved slot remembers the status it had before the
    hold so that release() can put it back.
    """

    def __init__(
        self,
        pillar_id: str,
        slot_number: int,
        slot_code: str,
        status: SlotStatus = SlotStatus.EMPTY,
        battery_id: Optional[str] = None,
        prior_status: Optional[SlotStatus] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        if slot_number <= 0:
            raise InvalidRange("Slot number must be positive")

        self.pillar_id = pillar_id
        self.slot_number = slot_number
        self.slot_code = slot_code
        self.status = status
        self.battery_id = battery_id
        self.prior_status = prior_status

    @property
    def is_vacant(self) -> bool:
        return self.battery_id is None

    def assign(self, battery_id: str) -> None:
        """Physically place a battery in this slot"""
        if self.status != SlotStatus.EMPTY:
            raise SlotOccupied(
                f"Slot {self.slot_code} is {self.status.value}",
                {"slot_id": self.id, "status": self.status.value}
            )
        self.battery_id = battery_id
        self.status = SlotStatus.OCCUPIED

    def reserve(self) -> None:
        """Hold this slot for a booking"""
        if self.status.is_out_of_service:
            raise SlotNotReservable(
                f"Slot {self.slot_code} is {self.status.value}",
                {"slot_id": self.id, "status": self.status.value}
            )
        if self.status == SlotStatus.RESERVED:
            raise SlotNotReservable(
                f"Slot {self.slot_code} is already reserved",
                {"slot_id": self.id, "status": self.status.value}
            )
        self.prior_status = self.status
        self.status = SlotStatus.RESERVED

    def release(self) -> None:
        """Drop the booking hold and restore the previous status"""
        if self.status != SlotStatus.RESERVED:
            raise InvalidState(
                f"Slot {self.slot_code} is not reserved",
                {"slot_id": self.id, "status": self.status.value}
            )
        if self.prior_status is not None:
            self.status = self.prior_status
        else:
            self.status = SlotStatus.OCCUPIED if self.battery_id else SlotStatus.EMPTY
        self.prior_status = None

    def remove_battery(self) -> str:
        """Take the battery out; returns the removed battery id"""
        if self.battery_id is None:
            raise SlotEmpty(f"Slot {self.slot_code} is already vacant", {"slot_id": self.id})
        if self.status == SlotStatus.RESERVED:
            raise InvalidState(
                f"Slot {self.slot_code} is held for a booking",
                {"slot_id": self.id}
            )
        removed = self.battery_id
        self.battery_id = None
        self.status = SlotStatus.EMPTY
        return removed

    def take_out_of_service(self, status: SlotStatus) -> None:
        if not status.is_out_of_service:
            raise InvalidState(f"{status.value} is not an out-of-service status")
        if self.status == SlotStatus.RESERVED:
            raise InvalidState(f"Slot {self.slot_code} is held for a booking", {"slot_id": self.id})
        self.status = status

    def reopen(self) -> None:
        if not self.status.is_out_of_service:
            raise InvalidState(f"Slot {self.slot_code} is already in service", {"slot_id": self.id})
        self.status = SlotStatus.OCCUPIED if self.battery_id else SlotStatus.EMPTY


class BatteryLogEntry(Entity):
    """Entity: One line of a battery's audit trail"""

    def __init__(
        self,
        battery_id: str,
        action: str,
        actor: Optional[str] = None,
        note: Optional[str] = None,
        created_at: Optional[datetime] = None,
        id: Optional[str] = None
    ):
        super().__init__(id)
        self.battery_id = battery_id
        self.action = action
        self.actor = actor
        self.note = note
        self.created_at = created_at or datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "battery": self.battery_id,
            "action": self.action,
            "actor": self.actor,
            "note": self.note,
            "createdAt": self.created_at.isoformat()
        }


@dataclass(frozen=True)
class BatterySnapshot:
    """Battery identity and health at the moment of a swap"""
    battery_id: str
    model: str
    soh: float


@dataclass(frozen=True)
class Transaction:
    """
    Immutable record of a completed swap
    Written in the same commit that completes the booking; sequence orders
    completions per station.
    """
    booking_id: str
    station_id: str
    driver_id: str
    sequence: int
    battery_returned: BatterySnapshot
    battery_given: BatterySnapshot
    requested_at: datetime
    confirmed_at: datetime
    completed_at: datetime
    cost: Money
    status: str = "completed"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if self.sequence <= 0:
            raise InvalidRange("Transaction sequence must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.id,
            "bookingId": self.booking_id,
            "stationId": self.station_id,
            "userId": self.driver_id,
            "sequence": self.sequence,
            "batteryReturned": {
                "id": self.battery_returned.battery_id,
                "model": self.battery_returned.model,
                "sohBefore": self.battery_returned.soh
            },
            "batteryGiven": {
                "id": self.battery_given.battery_id,
                "model": self.battery_given.model,
                "sohAfter": self.battery_given.soh
            },
            "requestedAt": self.requested_at.isoformat(),
            "confirmedAt": self.confirmed_at.isoformat(),
            "transactionTime": self.completed_at.isoformat(),
            "cost": self.cost.to_dict(),
            "status": self.status
        }


@dataclass(frozen=True)
class Feedback:
    """
    A driver's rating of a completed swap
    One per booking; never edited once submitted.
    """
    MIN_RATING = 1
    MAX_RATING = 5

    booking_id: str
    station_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None
    images: Tuple[str, ...] = ()
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.MIN_RATING <= self.rating <= self.MAX_RATING:
            raise InvalidRange(
                f"Rating must be between {self.MIN_RATING} and {self.MAX_RATING}: {self.rating}",
                {"rating": self.rating}
            )
        comment = self.comment.strip() if self.comment else None
        object.__setattr__(self, 'comment', comment or None)
        object.__setattr__(self, 'images', tuple(self.images))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "booking": self.booking_id,
            "station": self.station_id,
            "user": self.user_id,
            "rating": self.rating,
            "comment": self.comment,
            "images": list(self.images),
            "createdAt": self.created_at.isoformat()
        }


@dataclass(frozen=True)
class Membership:
    """A station in one of a user's sets (favorites or recently viewed)"""
    user_id: str
    station_id: str
    kind: MembershipKind
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def id(self) -> str:
        return f"{self.kind.value}:{self.user_id}:{self.station_id}"


# ============================================================================
# DOMAIN EVENTS
# ============================================================================

class DomainEvent(ABC):
    """
    Base class for all domain events
    ``event_type`` matches an EventType value on the message bus.
    """
    event_type = "domain_event"
    aggregate_type = "Unknown"

    def __init__(self, aggregate_id: str, station_id: Optional[str] = None):
        self.event_id = str(uuid.uuid4())
        self.timestamp = datetime.now()
        self.version = "1.0"
        self.aggregate_id = aggregate_id
        self.station_id = station_id

    @abstractmethod
    def payload(self) -> Dict[str, Any]:
        pass

    def to_dict(self) -> Dict[str, Any]:
        data = {"station_id": self.station_id}
        data.update(self.payload())
        return {
            "event_type": self.event_type,
            "event_id": self.event_id,
            "timestamp": self.timestamp.isoformat(),
            "version": self.version,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "data": data
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at {self.timestamp}"


class BatteryRegisteredEvent(DomainEvent):
    event_type = "battery_registered"
    aggregate_type = "Battery"

    def __init__(self, battery_id: str, station_id: Optional[str], serial: str, model: str):
        super().__init__(battery_id, station_id)
        self.serial = serial
        self.model = model

    def payload(self) -> Dict[str, Any]:
        return {"serial": self.serial, "model": self.model}


class BatteryStatusChangedEvent(DomainEvent):
    """Raised on every successful battery status change"""
    event_type = "battery_status_changed"
    aggregate_type = "Battery"

    def __init__(
        self,
        battery_id: str,
        station_id: Optional[str],
        old_status: BatteryStatus,
        new_status: BatteryStatus,
        reason: Optional[str] = None
    ):
        super().__init__(battery_id, station_id)
        self.old_status = old_status
        self.new_status = new_status
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "reason": self.reason
        }


class BatteryHealthUpdatedEvent(DomainEvent):
    event_type = "battery_health_updated"
    aggregate_type = "Battery"

    def __init__(self, battery_id: str, station_id: Optional[str], old_soh: float, new_soh: float, reset: bool):
        super().__init__(battery_id, station_id)
        self.old_soh = old_soh
        self.new_soh = new_soh
        self.reset = reset

    def payload(self) -> Dict[str, Any]:
        return {"old_soh": self.old_soh, "new_soh": self.new_soh, "reset": self.reset}


class BatteryTransferredEvent(DomainEvent):
    event_type = "battery_transferred"
    aggregate_type = "Battery"

    def __init__(self, battery_id: str, from_station_id: Optional[str], to_station_id: str):
        super().__init__(battery_id, to_station_id)
        self.from_station_id = from_station_id

    def payload(self) -> Dict[str, Any]:
        return {"from_station_id": self.from_station_id}


class BatteryRetiredEvent(DomainEvent):
    event_type = "battery_retired"
    aggregate_type = "Battery"

    def __init__(self, battery_id: str, station_id: Optional[str], final_status: BatteryStatus):
        super().__init__(battery_id, station_id)
        self.final_status = final_status

    def payload(self) -> Dict[str, Any]:
        return {"final_status": self.final_status.value}


class SlotStatusChangedEvent(DomainEvent):
    """Raised on every slot mutation"""
    event_type = "slot_status_changed"
    aggregate_type = "Pillar"

    def __init__(
        self,
        pillar_id: str,
        station_id: str,
        slot_id: str,
        old_status: SlotStatus,
        new_status: SlotStatus,
        battery_id: Optional[str] = None
    ):
        super().__init__(pillar_id, station_id)
        self.slot_id = slot_id
        self.old_status = old_status
        self.new_status = new_status
        self.battery_id = battery_id

    def payload(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "old_status": self.old_status.value,
            "new_status": self.new_status.value,
            "battery_id": self.battery_id
        }


class PillarCreatedEvent(DomainEvent):
    event_type = "pillar_created"
    aggregate_type = "Pillar"

    def __init__(self, pillar_id: str, station_id: str, pillar_code: str, total_slots: int):
        super().__init__(pillar_id, station_id)
        self.pillar_code = pillar_code
        self.total_slots = total_slots

    def payload(self) -> Dict[str, Any]:
        return {"pillar_code": self.pillar_code, "total_slots": self.total_slots}


class StationUpdatedEvent(DomainEvent):
    event_type = "station_updated"
    aggregate_type = "Station"

    def __init__(self, station_id: str, changes: Dict[str, Any]):
        super().__init__(station_id, station_id)
        self.changes = changes

    def payload(self) -> Dict[str, Any]:
        return {"changes": self.changes}


class BookingStatusChangedEvent(DomainEvent):
    """Raised for every booking lifecycle transition"""
    event_type = "booking_status_changed"
    aggregate_type = "Booking"

    def __init__(
        self,
        booking_id: str,
        station_id: str,
        old_status: Optional[BookingStatus],
        new_status: BookingStatus,
        actor: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(booking_id, station_id)
        self.old_status = old_status
        self.new_status = new_status
        self.actor = actor
        self.details = details or {}

    def payload(self) -> Dict[str, Any]:
        return {
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "actor": self.actor,
            "details": self.details
        }


class TransactionRecordedEvent(DomainEvent):
    event_type = "transaction_recorded"
    aggregate_type = "Transaction"

    def __init__(self, transaction: Transaction):
        super().__init__(transaction.id, transaction.station_id)
        self.transaction = transaction

    def payload(self) -> Dict[str, Any]:
        return self.transaction.to_dict()


class FavoriteToggledEvent(DomainEvent):
    event_type = "favorite_toggled"
    aggregate_type = "Membership"

    def __init__(self, user_id: str, station_id: str, is_favorite: bool):
        super().__init__(user_id, station_id)
        self.is_favorite = is_favorite

    def payload(self) -> Dict[str, Any]:
        return {"user_id": self.aggregate_id, "is_favorite": self.is_favorite}


class FeedbackSubmittedEvent(DomainEvent):
    event_type = "feedback_submitted"
    aggregate_type = "Feedback"

    def __init__(self, feedback: Feedback):
        super().__init__(feedback.id, feedback.station_id)
        self.feedback = feedback

    def payload(self) -> Dict[str, Any]:
        return {
            "booking_id": self.feedback.booking_id,
            "user_id": self.feedback.user_id,
            "rating": self.feedback.rating
        }


class SupportRequestStatusChangedEvent(DomainEvent):
    event_type = "support_request_status_changed"
    aggregate_type = "SupportRequest"

    def __init__(
        self,
        request_id: str,
        booking_id: str,
        old_status: Optional[SupportStatus],
        new_status: SupportStatus,
        note: Optional[str] = None
    ):
        super().__init__(request_id)
        self.booking_id = booking_id
        self.old_status = old_status
        self.new_status = new_status
        self.note = note

    def payload(self) -> Dict[str, Any]:
        return {
            "booking_id": self.booking_id,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "note": self.note
        }
