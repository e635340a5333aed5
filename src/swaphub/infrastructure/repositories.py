# File: src/swaphub/infrastructure/repositories.py
"""
Repository Pattern and Unit of Work for the Battery Swap Platform

Repositories give the application layer a collection-like view of the
aggregates. Every write goes through a UnitOfWork, which is the single
commit point for a use case: either all staged changes become visible or
none do.

Storage Implementations:
- InMemory* - staged writes published under one store lock on commit
- SQLAlchemy* - one session transaction per unit of work
"""

from abc import ABC, abstractmethod
from typing import (
    Type, TypeVar, Generic, Optional, List, Dict, Any, Callable, Tuple
)
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
import copy
import logging
import threading

from sqlalchemy import (
    create_engine, Column, Integer, String, Boolean, Float,
    DateTime, ForeignKey, Text, DECIMAL, JSON, UniqueConstraint, func, or_
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import StaticPool

from ..domain.models import (
    Slot, Location, Money, Membership, BatteryLogEntry, Transaction, BatterySnapshot, Feedback,
    BatteryStatus, SlotStatus, PillarStatus, StationStatus, BookingStatus,
    SupportStatus, MembershipKind
)
from ..domain.aggregates import Battery, Pillar, Station, Booking, SupportRequest

T = TypeVar('T')
ID = TypeVar('ID')

OPEN_BOOKING_STATUSES = [status.value for status in BookingStatus if status.is_open]


# ============================================================================
# REPOSITORY INTERFACES
# ============================================================================

class Repository(ABC, Generic[T, ID]):
    """Base repository interface"""

    @abstractmethod
    def add(self, entity: T) -> T:
        pass

    @abstractmethod
    def get(self, id: ID) -> Optional[T]:
        pass

    @abstractmethod
    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        pass

    @abstractmethod
    def update(self, entity: T) -> T:
        pass

    @abstractmethod
    def delete(self, id: ID) -> bool:
        pass

    @abstractmethod
    def exists(self, id: ID) -> bool:
        pass

    @abstractmethod
    def count(self) -> int:
        pass


# ============================================================================
# UNIT OF WORK PATTERN
# ============================================================================

class UnitOfWork(ABC):
    """
    Unit of Work pattern for transaction management

    Leaving the ``with`` block normally commits; leaving it with an
    exception rolls everything back.
    """

    def __enter__(self) -> 'UnitOfWork':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._logger.debug(f"Rolling back unit of work: {exc_val}")
            self.rollback()
        else:
            self.commit()
        self.close()

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass

    def close(self):
        pass

    batteries: 'Repository[Battery, str]'
    battery_logs: 'Repository[BatteryLogEntry, str]'
    pillars: 'Repository[Pillar, str]'
    stations: 'Repository[Station, str]'
    bookings: 'Repository[Booking, str]'
    transactions: 'Repository[Transaction, str]'
    support_requests: 'Repository[SupportRequest, str]'
    feedback: 'Repository[Feedback, str]'
    memberships: 'Repository[Membership, str]'


# ============================================================================
# SQLALCHEMY ORM MODELS
# ============================================================================

Base = declarative_base()


class StationModel(Base):
    """SQLAlchemy model for Station"""
    __tablename__ = 'stations'

    id = Column(String(36), primary_key=True)
    code = Column(String(30), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)

    # Location
    address = Column(String(200), nullable=False)
    city = Column(String(60), nullable=False)
    district = Column(String(60))
    latitude = Column(Float)
    longitude = Column(Float)

    capacity = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default='active')

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    pillars = relationship('PillarModel', back_populates='station')


class PillarModel(Base):
    """SQLAlchemy model for Pillar"""
    __tablename__ = 'pillars'

    id = Column(String(36), primary_key=True)
    station_id = Column(String(36), ForeignKey('stations.id'), nullable=False, index=True)
    pillar_name = Column(String(100), nullable=False)
    pillar_number = Column(Integer, nullable=False)
    pillar_code = Column(String(40), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default='active')
    created_at = Column(DateTime, default=datetime.utcnow)

    station = relationship('StationModel', back_populates='pillars')
    slots = relationship(
        'SlotModel', back_populates='pillar',
        cascade='all, delete-orphan', order_by='SlotModel.slot_number'
    )

    __table_args__ = (
        UniqueConstraint('station_id', 'pillar_number', name='uq_pillar_station_number'),
    )


class SlotModel(Base):
    """SQLAlchemy model for Slot; slot status is part of the system of record"""
    __tablename__ = 'slots'

    id = Column(String(36), primary_key=True)
    pillar_id = Column(String(36), ForeignKey('pillars.id'), nullable=False, index=True)
    slot_number = Column(Integer, nullable=False)
    slot_code = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default='empty')
    prior_status = Column(String(20))
    battery_id = Column(String(36), index=True)

    pillar = relationship('PillarModel', back_populates='slots')

    __table_args__ = (
        UniqueConstraint('pillar_id', 'slot_number', name='uq_slot_pillar_number'),
    )


class BatteryModel(Base):
    """SQLAlchemy model for Battery; status is part of the system of record"""
    __tablename__ = 'batteries'

    id = Column(String(36), primary_key=True)
    serial = Column(String(60), nullable=False, unique=True, index=True)
    model = Column(String(60), nullable=False)
    manufacturer = Column(String(60))
    capacity_kwh = Column(Float, nullable=False)
    voltage = Column(Float, nullable=False)
    station_id = Column(String(36), ForeignKey('stations.id'), index=True)

    status = Column(String(20), nullable=False, default='idle')
    soh = Column(Float, nullable=False, default=100.0)
    cycle_count = Column(Integer, nullable=False, default=0)
    retired = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class BatteryLogModel(Base):
    """SQLAlchemy model for BatteryLogEntry"""
    __tablename__ = 'battery_logs'

    id = Column(String(36), primary_key=True)
    battery_id = Column(String(36), nullable=False, index=True)
    action = Column(String(40), nullable=False)
    actor = Column(String(36))
    note = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class BookingModel(Base):
    """SQLAlchemy model for Booking"""
    __tablename__ = 'bookings'

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    station_id = Column(String(36), ForeignKey('stations.id'), nullable=False, index=True)
    battery_id = Column(String(36), nullable=False, index=True)
    vehicle_id = Column(String(36))
    scheduled_time = Column(DateTime)
    status = Column(String(20), nullable=False, default='pending', index=True)
    replacement_battery_id = Column(String(36), index=True)
    transaction_id = Column(String(36))

    confirmed_by = Column(String(36))
    completed_by = Column(String(36))
    cancel_reason = Column(Text)
    dispute_note = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    confirmed_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    disputed_at = Column(DateTime)


class TransactionModel(Base):
    """SQLAlchemy model for the append-only Transaction record"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), nullable=False, unique=True)
    station_id = Column(String(36), nullable=False, index=True)
    driver_id = Column(String(36), nullable=False)
    sequence = Column(Integer, nullable=False)

    returned_battery_id = Column(String(36), nullable=False)
    returned_battery_model = Column(String(60))
    soh_before = Column(Float)
    given_battery_id = Column(String(36), nullable=False)
    given_battery_model = Column(String(60))
    soh_after = Column(Float)

    requested_at = Column(DateTime)
    confirmed_at = Column(DateTime)
    completed_at = Column(DateTime, nullable=False)

    cost_amount = Column(DECIMAL(12, 2), nullable=False)
    cost_currency = Column(String(3), default='VND')
    status = Column(String(20), default='completed')

    __table_args__ = (
        UniqueConstraint('station_id', 'sequence', name='uq_transaction_station_sequence'),
    )


class SupportRequestModel(Base):
    """SQLAlchemy model for SupportRequest"""
    __tablename__ = 'support_requests'

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    images = Column(JSON, default=list)
    status = Column(String(20), nullable=False, default='in-progress')
    resolve_note = Column(Text)
    close_note = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime)
    completed_at = Column(DateTime)
    closed_at = Column(DateTime)


class FeedbackModel(Base):
    """SQLAlchemy model for booking feedback, one row per booking"""
    __tablename__ = 'feedback'

    id = Column(String(36), primary_key=True)
    booking_id = Column(String(36), nullable=False, unique=True)
    station_id = Column(String(36), nullable=False, index=True)
    user_id = Column(String(36), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text)
    images = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)


class MembershipModel(Base):
    """SQLAlchemy model for favorite and recently viewed stations"""
    __tablename__ = 'memberships'

    id = Column(String(120), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    station_id = Column(String(36), nullable=False)
    kind = Column(String(20), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'station_id', 'kind', name='uq_membership'),
    )


# ============================================================================
# DOMAIN <-> ORM MAPPERS
# ============================================================================

class Mapper:
    """Maps between domain models and ORM models"""

    @staticmethod
    def station_to_orm(station: Station) -> StationModel:
        return StationModel(
            id=station.id,
            code=station.code,
            name=station.name,
            address=station.location.address,
            city=station.location.city,
            district=station.location.district,
            latitude=station.location.latitude,
            longitude=station.location.longitude,
            capacity=station.capacity,
            status=station.status.value,
            created_at=station.created_at,
            updated_at=station.updated_at
        )

    @staticmethod
    def station_to_domain(model: StationModel) -> Station:
        location = Location(
            address=model.address,
            city=model.city,
            district=model.district,
            latitude=model.latitude,
            longitude=model.longitude
        )
        return Station(
            id=model.id,
            name=model.name,
            code=model.code,
            location=location,
            capacity=model.capacity,
            status=StationStatus(model.status),
            created_at=model.created_at,
            updated_at=model.updated_at
        )

    @staticmethod
    def pillar_to_orm(pillar: Pillar) -> PillarModel:
        return PillarModel(
            id=pillar.id,
            station_id=pillar.station_id,
            pillar_name=pillar.pillar_name,
            pillar_number=pillar.pillar_number,
            pillar_code=pillar.pillar_code,
            status=pillar.status.value,
            created_at=pillar.created_at,
            slots=[
                SlotModel(
                    id=slot.id,
                    pillar_id=pillar.id,
                    slot_number=slot.slot_number,
                    slot_code=slot.slot_code,
                    status=slot.status.value,
                    prior_status=slot.prior_status.value if slot.prior_status else None,
                    battery_id=slot.battery_id
                )
                for slot in pillar.slots
            ]
        )

    @staticmethod
    def pillar_to_domain(model: PillarModel) -> Pillar:
        slots = [
            Slot(
                id=slot.id,
                pillar_id=model.id,
                slot_number=slot.slot_number,
                slot_code=slot.slot_code,
                status=SlotStatus(slot.status),
                battery_id=slot.battery_id,
                prior_status=SlotStatus(slot.prior_status) if slot.prior_status else None
            )
            for slot in model.slots
        ]
        return Pillar(
            id=model.id,
            station_id=model.station_id,
            pillar_name=model.pillar_name,
            pillar_number=model.pillar_number,
            pillar_code=model.pillar_code,
            slots=slots,
            status=PillarStatus(model.status),
            created_at=model.created_at
        )

    @staticmethod
    def battery_to_orm(battery: Battery) -> BatteryModel:
        return BatteryModel(
            id=battery.id,
            serial=battery.serial,
            model=battery.model,
            manufacturer=battery.manufacturer,
            capacity_kwh=battery.capacity_kwh,
            voltage=battery.voltage,
            station_id=battery.station_id,
            status=battery.status.value,
            soh=battery.soh,
            cycle_count=battery.cycle_count,
            retired=battery.retired,
            created_at=battery.created_at,
            updated_at=battery.updated_at
        )

    @staticmethod
    def battery_to_domain(model: BatteryModel) -> Battery:
        return Battery(
            id=model.id,
            serial=model.serial,
            model=model.model,
            manufacturer=model.manufacturer,
            capacity_kwh=model.capacity_kwh,
            voltage=model.voltage,
            station_id=model.station_id,
            status=BatteryStatus(model.status),
            soh=model.soh,
            cycle_count=model.cycle_count,
            retired=model.retired,
            created_at=model.created_at,
            updated_at=model.updated_at
        )

    @staticmethod
    def battery_log_to_orm(entry: BatteryLogEntry) -> BatteryLogModel:
        return BatteryLogModel(
            id=entry.id,
            battery_id=entry.battery_id,
            action=entry.action,
            actor=entry.actor,
            note=entry.note,
            created_at=entry.created_at
        )

    @staticmethod
    def battery_log_to_domain(model: BatteryLogModel) -> BatteryLogEntry:
        return BatteryLogEntry(
            id=model.id,
            battery_id=model.battery_id,
            action=model.action,
            actor=model.actor,
            note=model.note,
            created_at=model.created_at
        )

    @staticmethod
    def booking_to_orm(booking: Booking) -> BookingModel:
        return BookingModel(
            id=booking.id,
            user_id=booking.user_id,
            station_id=booking.station_id,
            battery_id=booking.battery_id,
            vehicle_id=booking.vehicle_id,
            scheduled_time=booking.scheduled_time,
            status=booking.status.value,
            replacement_battery_id=booking.replacement_battery_id,
            transaction_id=booking.transaction_id,
            confirmed_by=booking.confirmed_by,
            completed_by=booking.completed_by,
            cancel_reason=booking.cancel_reason,
            dispute_note=booking.dispute_note,
            created_at=booking.created_at,
            confirmed_at=booking.confirmed_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            disputed_at=booking.disputed_at
        )

    @staticmethod
    def booking_to_domain(model: BookingModel) -> Booking:
        return Booking(
            id=model.id,
            user_id=model.user_id,
            station_id=model.station_id,
            battery_id=model.battery_id,
            vehicle_id=model.vehicle_id,
            scheduled_time=model.scheduled_time,
            status=BookingStatus(model.status),
            replacement_battery_id=model.replacement_battery_id,
            transaction_id=model.transaction_id,
            confirmed_by=model.confirmed_by,
            completed_by=model.completed_by,
            cancel_reason=model.cancel_reason,
            dispute_note=model.dispute_note,
            created_at=model.created_at,
            confirmed_at=model.confirmed_at,
            completed_at=model.completed_at,
            cancelled_at=model.cancelled_at,
            disputed_at=model.disputed_at
        )

    @staticmethod
    def transaction_to_orm(record: Transaction) -> TransactionModel:
        return TransactionModel(
            id=record.id,
            booking_id=record.booking_id,
            station_id=record.station_id,
            driver_id=record.driver_id,
            sequence=record.sequence,
            returned_battery_id=record.battery_returned.battery_id,
            returned_battery_model=record.battery_returned.model,
            soh_before=record.battery_returned.soh,
            given_battery_id=record.battery_given.battery_id,
            given_battery_model=record.battery_given.model,
            soh_after=record.battery_given.soh,
            requested_at=record.requested_at,
            confirmed_at=record.confirmed_at,
            completed_at=record.completed_at,
            cost_amount=record.cost.amount,
            cost_currency=record.cost.currency,
            status=record.status
        )

    @staticmethod
    def transaction_to_domain(model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            booking_id=model.booking_id,
            station_id=model.station_id,
            driver_id=model.driver_id,
            sequence=model.sequence,
            battery_returned=BatterySnapshot(
                model.returned_battery_id, model.returned_battery_model, model.soh_before
            ),
            battery_given=BatterySnapshot(
                model.given_battery_id, model.given_battery_model, model.soh_after
            ),
            requested_at=model.requested_at,
            confirmed_at=model.confirmed_at,
            completed_at=model.completed_at,
            cost=Money(Decimal(str(model.cost_amount)), model.cost_currency),
            status=model.status
        )

    @staticmethod
    def support_request_to_orm(request: SupportRequest) -> SupportRequestModel:
        return SupportRequestModel(
            id=request.id,
            booking_id=request.booking_id,
            user_id=request.user_id,
            title=request.title,
            description=request.description,
            images=list(request.images),
            status=request.status.value,
            resolve_note=request.resolve_note,
            close_note=request.close_note,
            created_at=request.created_at,
            resolved_at=request.resolved_at,
            completed_at=request.completed_at,
            closed_at=request.closed_at
        )

    @staticmethod
    def support_request_to_domain(model: SupportRequestModel) -> SupportRequest:
        return SupportRequest(
            id=model.id,
            booking_id=model.booking_id,
            user_id=model.user_id,
            title=model.title,
            description=model.description,
            images=model.images or [],
            status=SupportStatus(model.status),
            resolve_note=model.resolve_note,
            close_note=model.close_note,
            created_at=model.created_at,
            resolved_at=model.resolved_at,
            completed_at=model.completed_at,
            closed_at=model.closed_at
        )

    @staticmethod
    def feedback_to_orm(feedback: Feedback) -> FeedbackModel:
        return FeedbackModel(
            id=feedback.id,
            booking_id=feedback.booking_id,
            station_id=feedback.station_id,
            user_id=feedback.user_id,
            rating=feedback.rating,
            comment=feedback.comment,
            images=list(feedback.images),
            created_at=feedback.created_at
        )

    @staticmethod
    def feedback_to_domain(model: FeedbackModel) -> Feedback:
        return Feedback(
            id=model.id,
            booking_id=model.booking_id,
            station_id=model.station_id,
            user_id=model.user_id,
            rating=model.rating,
            comment=model.comment,
            images=tuple(model.images or ()),
            created_at=model.created_at
        )

    @staticmethod
    def membership_to_orm(membership: Membership) -> MembershipModel:
        return MembershipModel(
            id=membership.id,
            user_id=membership.user_id,
            station_id=membership.station_id,
            kind=membership.kind.value,
            created_at=membership.created_at
        )

    @staticmethod
    def membership_to_domain(model: MembershipModel) -> Membership:
        return Membership(
            user_id=model.user_id,
            station_id=model.station_id,
            kind=MembershipKind(model.kind),
            created_at=model.created_at
        )


# ============================================================================
# IN-MEMORY REPOSITORIES
# ============================================================================

_DELETED = object()


class InMemoryStore:
    """
    Committed state shared by every in-memory unit of work
    Readers take copies; only commit() writes, and only under ``lock``.
    """

    def __init__(self):
        self.collections: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.lock = threading.RLock()

    def clear(self):
        with self.lock:
            self.collections.clear()


class InMemoryRepository(Repository[T, str]):
    """
    In-memory repository with staged writes

    add/update/delete are kept in ``_pending`` until the owning unit of work
    commits, so an aborted use case leaves the store untouched.
    """

    collection = "entities"

    def __init__(self, store: InMemoryStore):
        self._store = store
        self._pending: Dict[str, Any] = {}
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    def _storage(self) -> Dict[str, T]:
        return self._store.collections[self.collection]

    def add(self, entity: T) -> T:
        entity_id = getattr(entity, 'id')
        if self.exists(entity_id):
            raise KeyError(f"Entity {entity_id} already exists")
        self._pending[entity_id] = entity
        self._logger.debug(f"Staged new entity {entity_id}")
        return entity

    def get(self, id: str) -> Optional[T]:
        if id in self._pending:
            staged = self._pending[id]
            return None if staged is _DELETED else staged
        with self._store.lock:
            entity = self._storage.get(id)
            return copy.deepcopy(entity) if entity is not None else None

    def _values(self) -> List[T]:
        with self._store.lock:
            merged = {k: copy.deepcopy(v) for k, v in self._storage.items()}
        for entity_id, staged in self._pending.items():
            if staged is _DELETED:
                merged.pop(entity_id, None)
            else:
                merged[entity_id] = staged
        return list(merged.values())

    def _find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [e for e in self._values() if predicate(e)]

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        return self._values()[skip:skip + limit]

    def update(self, entity: T) -> T:
        entity_id = getattr(entity, 'id')
        if not self.exists(entity_id):
            raise KeyError(f"Entity {entity_id} not found")
        self._pending[entity_id] = entity
        self._logger.debug(f"Staged update for {entity_id}")
        return entity

    def delete(self, id: str) -> bool:
        if not self.exists(id):
            return False
        self._pending[id] = _DELETED
        return True

    def exists(self, id: str) -> bool:
        if id in self._pending:
            return self._pending[id] is not _DELETED
        with self._store.lock:
            return id in self._storage

    def count(self) -> int:
        return len(self._values())

    def apply_pending(self) -> int:
        """Publish staged writes; the caller holds the store lock"""
        applied = len(self._pending)
        for entity_id, staged in self._pending.items():
            if staged is _DELETED:
                self._storage.pop(entity_id, None)
            else:
                self._storage[entity_id] = copy.deepcopy(staged)
        self._pending.clear()
        return applied

    def discard_pending(self) -> None:
        self._pending.clear()


class InMemoryStationRepository(InMemoryRepository[Station]):
    collection = "stations"

    def find_by_code(self, code: str) -> Optional[Station]:
        matches = self._find(lambda s: s.code == code)
        return matches[0] if matches else None


class InMemoryPillarRepository(InMemoryRepository[Pillar]):
    collection = "pillars"

    def find_by_station(self, station_id: str) -> List[Pillar]:
        pillars = self._find(lambda p: p.station_id == station_id)
        return sorted(pillars, key=lambda p: p.pillar_number)

    def find_by_slot(self, slot_id: str) -> Optional[Pillar]:
        matches = self._find(lambda p: p.has_slot(slot_id))
        return matches[0] if matches else None

    def find_by_battery(self, battery_id: str) -> Optional[Pillar]:
        matches = self._find(lambda p: p.find_slot_by_battery(battery_id) is not None)
        return matches[0] if matches else None


class InMemoryBatteryRepository(InMemoryRepository[Battery]):
    collection = "batteries"

    def find_by_station(self, station_id: str, include_retired: bool = False) -> List[Battery]:
        return self._find(
            lambda b: b.station_id == station_id and (include_retired or not b.retired)
        )

    def find_by_serial(self, serial: str) -> Optional[Battery]:
        matches = self._find(lambda b: b.serial == serial)
        return matches[0] if matches else None

    def list_all(self) -> List[Battery]:
        return self._values()


class InMemoryBatteryLogRepository(InMemoryRepository[BatteryLogEntry]):
    collection = "battery_logs"

    def list_for_battery(self, battery_id: str) -> List[BatteryLogEntry]:
        entries = self._find(lambda e: e.battery_id == battery_id)
        return sorted(entries, key=lambda e: e.created_at)


class InMemoryBookingRepository(InMemoryRepository[Booking]):
    collection = "bookings"

    def find_by_station(self, station_id: str, status: Optional[BookingStatus] = None) -> List[Booking]:
        bookings = self._find(
            lambda b: b.station_id == station_id and (status is None or b.status == status)
        )
        return sorted(bookings, key=lambda b: b.created_at)

    def find_by_user(self, user_id: str) -> List[Booking]:
        return sorted(self._find(lambda b: b.user_id == user_id), key=lambda b: b.created_at)

    def find_open(self) -> List[Booking]:
        return sorted(self._find(lambda b: b.status.is_open), key=lambda b: b.created_at)

    def find_open_by_battery(self, battery_id: str) -> List[Booking]:
        """Open bookings returning or reserving the battery, at any station"""
        return [
            b for b in self.find_open()
            if battery_id in (b.battery_id, b.replacement_battery_id)
        ]


class InMemoryTransactionRepository(InMemoryRepository[Transaction]):
    """Append-only: transactions are never updated or deleted"""
    collection = "transactions"

    def update(self, entity: Transaction) -> Transaction:
        raise TypeError("Transactions are immutable")

    def delete(self, id: str) -> bool:
        raise TypeError("Transactions are append-only")

    def list_for_station(self, station_id: str) -> List[Transaction]:
        records = self._find(lambda t: t.station_id == station_id)
        return sorted(records, key=lambda t: t.sequence)

    def find_by_booking(self, booking_id: str) -> Optional[Transaction]:
        matches = self._find(lambda t: t.booking_id == booking_id)
        return matches[0] if matches else None

    def next_sequence(self, station_id: str) -> int:
        records = self._find(lambda t: t.station_id == station_id)
        return max((t.sequence for t in records), default=0) + 1


class InMemorySupportRequestRepository(InMemoryRepository[SupportRequest]):
    collection = "support_requests"

    def find_by_booking(self, booking_id: str) -> List[SupportRequest]:
        return self._find(lambda r: r.booking_id == booking_id)


class InMemoryFeedbackRepository(InMemoryRepository[Feedback]):
    collection = "feedback"

    def update(self, entity: Feedback) -> Feedback:
        raise TypeError("Feedback cannot be edited")

    def find_by_booking(self, booking_id: str) -> Optional[Feedback]:
        matches = self._find(lambda f: f.booking_id == booking_id)
        return matches[0] if matches else None

    def list_for_station(self, station_id: str) -> List[Feedback]:
        """Newest first"""
        entries = self._find(lambda f: f.station_id == station_id)
        return sorted(entries, key=lambda f: f.created_at, reverse=True)


class InMemoryMembershipRepository(InMemoryRepository[Membership]):
    collection = "memberships"

    def list_for_user(self, user_id: str, kind: MembershipKind) -> List[Membership]:
        """Most recent first"""
        memberships = self._find(lambda m: m.user_id == user_id and m.kind == kind)
        return sorted(memberships, key=lambda m: m.created_at, reverse=True)


# ============================================================================
# SQLALCHEMY REPOSITORIES
# ============================================================================

class SQLAlchemyRepository(Repository[T, str], ABC):
    """Base SQLAlchemy repository"""

    def __init__(self, session: Session):
        self.session = session
        self._logger = logging.getLogger(self.__class__.__name__)

    @property
    @abstractmethod
    def model_class(self) -> Type[Base]:
        pass

    @abstractmethod
    def to_domain(self, model: Base) -> T:
        pass

    @abstractmethod
    def to_orm(self, entity: T) -> Base:
        pass

    def add(self, entity: T) -> T:
        try:
            model = self.to_orm(entity)
            self.session.add(model)
            self.session.flush()
            self._logger.debug(f"Added entity: {model.id}")
            return entity
        except IntegrityError as e:
            self.session.rollback()
            self._logger.error(f"Integrity error adding entity: {e}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error adding entity: {e}")
            raise

    def get(self, id: str) -> Optional[T]:
        try:
            model = self.session.get(self.model_class, str(id))
            if model:
                return self.to_domain(model)
            return None
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting entity {id}: {e}")
            raise

    def get_all(self, skip: int = 0, limit: int = 100) -> List[T]:
        try:
            models = self.session.query(self.model_class).offset(skip).limit(limit).all()
            return [self.to_domain(model) for model in models]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error getting all entities: {e}")
            raise

    def update(self, entity: T) -> T:
        try:
            entity_id = getattr(entity, 'id')
            if self.session.get(self.model_class, str(entity_id)) is None:
                raise KeyError(f"Entity {entity_id} not found")

            self.session.merge(self.to_orm(entity))
            self.session.flush()
            self._logger.debug(f"Updated entity: {entity_id}")
            return entity
        except IntegrityError as e:
            self.session.rollback()
            self._logger.error(f"Integrity error updating entity: {e}")
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error updating entity: {e}")
            raise

    def delete(self, id: str) -> bool:
        try:
            model = self.session.get(self.model_class, str(id))
            if model:
                self.session.delete(model)
                self.session.flush()
                self._logger.debug(f"Deleted entity: {id}")
                return True
            return False
        except SQLAlchemyError as e:
            self.session.rollback()
            self._logger.error(f"Database error deleting entity {id}: {e}")
            raise

    def exists(self, id: str) -> bool:
        try:
            return self.session.query(self.model_class).filter(
                self.model_class.id == str(id)
            ).count() > 0
        except SQLAlchemyError as e:
            self._logger.error(f"Database error checking existence of {id}: {e}")
            raise

    def count(self) -> int:
        try:
            return self.session.query(self.model_class).count()
        except SQLAlchemyError as e:
            self._logger.error(f"Database error counting entities: {e}")
            raise

    def _find(self, *criteria, order_by=None) -> List[T]:
        try:
            query = self.session.query(self.model_class).filter(*criteria)
            if order_by is not None:
                query = query.order_by(order_by)
            return [self.to_domain(model) for model in query.all()]
        except SQLAlchemyError as e:
            self._logger.error(f"Database error in {self.__class__.__name__} query: {e}")
            raise

    def _find_one(self, *criteria) -> Optional[T]:
        matches = self._find(*criteria)
        return matches[0] if matches else None


class StationRepository(SQLAlchemyRepository[Station]):

    @property
    def model_class(self) -> Type[Base]:
        return StationModel

    def to_domain(self, model: StationModel) -> Station:
        return Mapper.station_to_domain(model)

    def to_orm(self, entity: Station) -> StationModel:
        return Mapper.station_to_orm(entity)

    def find_by_code(self, code: str) -> Optional[Station]:
        return self._find_one(StationModel.code == code)


class PillarRepository(SQLAlchemyRepository[Pillar]):

    @property
    def model_class(self) -> Type[Base]:
        return PillarModel

    def to_domain(self, model: PillarModel) -> Pillar:
        return Mapper.pillar_to_domain(model)

    def to_orm(self, entity: Pillar) -> PillarModel:
        return Mapper.pillar_to_orm(entity)

    def find_by_station(self, station_id: str) -> List[Pillar]:
        return self._find(PillarModel.station_id == station_id, order_by=PillarModel.pillar_number)

    def find_by_slot(self, slot_id: str) -> Optional[Pillar]:
        return self._find_one(PillarModel.slots.any(SlotModel.id == slot_id))

    def find_by_battery(self, battery_id: str) -> Optional[Pillar]:
        return self._find_one(PillarModel.slots.any(SlotModel.battery_id == battery_id))


class BatteryRepository(SQLAlchemyRepository[Battery]):

    @property
    def model_class(self) -> Type[Base]:
        return BatteryModel

    def to_domain(self, model: BatteryModel) -> Battery:
        return Mapper.battery_to_domain(model)

    def to_orm(self, entity: Battery) -> BatteryModel:
        return Mapper.battery_to_orm(entity)

    def find_by_station(self, station_id: str, include_retired: bool = False) -> List[Battery]:
        criteria = [BatteryModel.station_id == station_id]
        if not include_retired:
            criteria.append(BatteryModel.retired.is_(False))
        return self._find(*criteria)

    def find_by_serial(self, serial: str) -> Optional[Battery]:
        return self._find_one(BatteryModel.serial == serial)

    def list_all(self) -> List[Battery]:
        return self._find()


class BatteryLogRepository(SQLAlchemyRepository[BatteryLogEntry]):

    @property
    def model_class(self) -> Type[Base]:
        return BatteryLogModel

    def to_domain(self, model: BatteryLogModel) -> BatteryLogEntry:
        return Mapper.battery_log_to_domain(model)

    def to_orm(self, entity: BatteryLogEntry) -> BatteryLogModel:
        return Mapper.battery_log_to_orm(entity)

    def list_for_battery(self, battery_id: str) -> List[BatteryLogEntry]:
        return self._find(BatteryLogModel.battery_id == battery_id, order_by=BatteryLogModel.created_at)


class BookingRepository(SQLAlchemyRepository[Booking]):

    @property
    def model_class(self) -> Type[Base]:
        return BookingModel

    def to_domain(self, model: BookingModel) -> Booking:
        return Mapper.booking_to_domain(model)

    def to_orm(self, entity: Booking) -> BookingModel:
        return Mapper.booking_to_orm(entity)

    def find_by_station(self, station_id: str, status: Optional[BookingStatus] = None) -> List[Booking]:
        criteria = [BookingModel.station_id == station_id]
        if status is not None:
            criteria.append(BookingModel.status == status.value)
        return self._find(*criteria, order_by=BookingModel.created_at)

    def find_by_user(self, user_id: str) -> List[Booking]:
        return self._find(BookingModel.user_id == user_id, order_by=BookingModel.created_at)

    def find_open(self) -> List[Booking]:
        return self._find(BookingModel.status.in_(OPEN_BOOKING_STATUSES), order_by=BookingModel.created_at)

    def find_open_by_battery(self, battery_id: str) -> List[Booking]:
        return self._find(
            BookingModel.status.in_(OPEN_BOOKING_STATUSES),
            or_(BookingModel.battery_id == battery_id, BookingModel.replacement_battery_id == battery_id),
            order_by=BookingModel.created_at
        )


class TransactionRepository(SQLAlchemyRepository[Transaction]):
    """Append-only: transactions are never updated or deleted"""

    @property
    def model_class(self) -> Type[Base]:
        return TransactionModel

    def to_domain(self, model: TransactionModel) -> Transaction:
        return Mapper.transaction_to_domain(model)

    def to_orm(self, entity: Transaction) -> TransactionModel:
        return Mapper.transaction_to_orm(entity)

    def update(self, entity: Transaction) -> Transaction:
        raise TypeError("Transactions are immutable")

    def delete(self, id: str) -> bool:
        raise TypeError("Transactions are append-only")

    def list_for_station(self, station_id: str) -> List[Transaction]:
        return self._find(TransactionModel.station_id == station_id, order_by=TransactionModel.sequence)

    def find_by_booking(self, booking_id: str) -> Optional[Transaction]:
        return self._find_one(TransactionModel.booking_id == booking_id)

    def next_sequence(self, station_id: str) -> int:
        try:
            current = self.session.query(func.max(TransactionModel.sequence)).filter(
                TransactionModel.station_id == station_id
            ).scalar()
            return (current or 0) + 1
        except SQLAlchemyError as e:
            self._logger.error(f"Database error reading transaction sequence: {e}")
            raise


class SupportRequestRepository(SQLAlchemyRepository[SupportRequest]):

    @property
    def model_class(self) -> Type[Base]:
        return SupportRequestModel

    def to_domain(self, model: SupportRequestModel) -> SupportRequest:
        return Mapper.support_request_to_domain(model)

    def to_orm(self, entity: SupportRequest) -> SupportRequestModel:
        return Mapper.support_request_to_orm(entity)

    def find_by_booking(self, booking_id: str) -> List[SupportRequest]:
        return self._find(SupportRequestModel.booking_id == booking_id)


class FeedbackRepository(SQLAlchemyRepository[Feedback]):

    @property
    def model_class(self) -> Type[Base]:
        return FeedbackModel

    def to_domain(self, model: FeedbackModel) -> Feedback:
        return Mapper.feedback_to_domain(model)

    def to_orm(self, entity: Feedback) -> FeedbackModel:
        return Mapper.feedback_to_orm(entity)

    def update(self, entity: Feedback) -> Feedback:
        raise TypeError("Feedback cannot be edited")

    def find_by_booking(self, booking_id: str) -> Optional[Feedback]:
        return self._find_one(FeedbackModel.booking_id == booking_id)

    def list_for_station(self, station_id: str) -> List[Feedback]:
        """Newest first"""
        return self._find(FeedbackModel.station_id == station_id, order_by=FeedbackModel.created_at.desc())


class MembershipRepository(SQLAlchemyRepository[Membership]):

    @property
    def model_class(self) -> Type[Base]:
        return MembershipModel

    def to_domain(self, model: MembershipModel) -> Membership:
        return Mapper.membership_to_domain(model)

    def to_orm(self, entity: Membership) -> MembershipModel:
        return Mapper.membership_to_orm(entity)

    def list_for_user(self, user_id: str, kind: MembershipKind) -> List[Membership]:
        """Most recent first"""
        return self._find(
            MembershipModel.user_id == user_id,
            MembershipModel.kind == kind.value,
            order_by=MembershipModel.created_at.desc()
        )


# ============================================================================
# UNIT OF WORK IMPLEMENTATIONS
# ============================================================================

class InMemoryUnitOfWork(UnitOfWork):
    """Unit of Work over an InMemoryStore"""

    def __init__(self, store: InMemoryStore):
        self.store = store
        self._logger = logging.getLogger(self.__class__.__name__)
        self.batteries = InMemoryBatteryRepository(store)
        self.battery_logs = InMemoryBatteryLogRepository(store)
        self.pillars = InMemoryPillarRepository(store)
        self.stations = InMemoryStationRepository(store)
        self.bookings = InMemoryBookingRepository(store)
        self.transactions = InMemoryTransactionRepository(store)
        self.support_requests = InMemorySupportRequestRepository(store)
        self.feedback = InMemoryFeedbackRepository(store)
        self.memberships = InMemoryMembershipRepository(store)

    @property
    def _repositories(self) -> Tuple[InMemoryRepository, ...]:
        return (
            self.batteries, self.battery_logs, self.pillars, self.stations,
            self.bookings, self.transactions, self.support_requests, self.feedback,
            self.memberships
        )

    def commit(self):
        with self.store.lock:
            applied = sum(repo.apply_pending() for repo in self._repositories)
        if applied:
            self._logger.debug(f"Committed {applied} staged writes")

    def rollback(self):
        for repo in self._repositories:
            repo.discard_pending()
        self._logger.debug("Transaction rolled back")


class SQLAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work implementation with SQLAlchemy"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        self.session: Optional[Session] = None
        self._logger = logging.getLogger(self.__class__.__name__)

    def __enter__(self) -> 'SQLAlchemyUnitOfWork':
        self.session = self.session_factory()

        self.batteries = BatteryRepository(self.session)
        self.battery_logs = BatteryLogRepository(self.session)
        self.pillars = PillarRepository(self.session)
        self.stations = StationRepository(self.session)
        self.bookings = BookingRepository(self.session)
        self.transactions = TransactionRepository(self.session)
        self.support_requests = SupportRequestRepository(self.session)
        self.feedback = FeedbackRepository(self.session)
        self.memberships = MembershipRepository(self.session)

        return self

    def commit(self):
        try:
            self.session.commit()
            self._logger.debug("Transaction committed")
        except SQLAlchemyError as e:
            self._logger.error(f"Error committing transaction: {e}")
            self.session.rollback()
            raise

    def rollback(self):
        self.session.rollback()
        self._logger.debug("Transaction rolled back")

    def close(self):
        if self.session is not None:
            self.session.close()
            self.session = None


def create_session_factory(database_url: str, echo: bool = False) -> Callable[[], Session]:
    """Create the engine and schema, return a session factory"""
    kwargs: Dict[str, Any] = {"echo": echo}
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        # One shared connection, otherwise every session sees a fresh empty database
        kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})

    engine = create_engine(database_url, **kwargs)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
