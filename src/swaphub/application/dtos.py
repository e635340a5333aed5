# File: src/swaphub/application/dtos.py
"""
Data Transfer Objects (DTOs) for the Battery Swap Platform

This module defines the boundary contracts with collaborators:
1. Input DTOs - staff and driver actions ({requestId}, {userId, stationId}, ...)
2. Output DTOs - station inventory, pillar/slot, booking and transaction shapes
3. Error DTO - the typed error result returned instead of raising

Field names follow the collaborators' camelCase wire format through aliases;
Python code uses the snake_case attribute names.
"""

from typing import Dict, List, Optional, Any, Union
from datetime import datetime
import json

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from ..domain.models import Reference, Slot, BatteryCounts, Feedback
from ..domain.aggregates import Pillar, Booking, SupportRequest
from ..domain.errors import SwapHubError


# ============================================================================
# BASE DTO CLASSES
# ============================================================================

class BaseDTO(BaseModel):
    """Base DTO with common functionality"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        use_enum_values=True
    )

    def to_dict(self, exclude_none: bool = False, by_alias: bool = True, **kwargs) -> Dict[str, Any]:
        """Convert DTO to dictionary"""
        data = self.model_dump(by_alias=by_alias, mode="json", **kwargs)
        if exclude_none:
            data = {k: v for k, v in data.items() if v is not None}
        return data

    def to_json(self, **kwargs) -> str:
        """Convert DTO to JSON string"""
        return self.model_dump_json(by_alias=True, **kwargs)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BaseDTO':
        """Create DTO from dictionary"""
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, json_str: str) -> 'BaseDTO':
        """Create DTO from JSON string"""
        return cls.model_validate(json.loads(json_str))


def _not_blank(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must not be blank")
    return value.strip()


# ============================================================================
# STATION INVENTORY DTOs
# ============================================================================

class BatteryCountsDTO(BaseDTO):
    total: int = Field(ge=0)
    available: int = Field(ge=0)
    charging: int = Field(ge=0)
    in_use: int = Field(ge=0, alias="inUse")
    faulty: int = Field(ge=0)

    @model_validator(mode="after")
    def check_partition(self) -> 'BatteryCountsDTO':
        if self.available + self.charging + self.in_use + self.faulty != self.total:
            raise ValueError("battery counts do not add up to total")
        return self

    def to_domain(self) -> BatteryCounts:
        return BatteryCounts(self.total, self.available, self.charging, self.in_use, self.faulty)


class SlotStatsDTO(BaseDTO):
    total: int = Field(ge=0)
    empty: int = Field(ge=0)
    occupied: int = Field(ge=0)
    reserved: int = Field(ge=0)


class StationInventoryDTO(BaseDTO):
    """
    Station inventory query result

    Collaborator payloads may carry a stale ``availableBatteries`` next to
    ``batteryCounts``; the counts always win when present.
    """
    id: str = Field(alias="_id")
    capacity: int = Field(ge=0)
    soh_avg: Optional[float] = Field(default=None, alias="sohAvg")
    available_batteries: Optional[int] = Field(default=None, alias="availableBatteries")
    battery_counts: Optional[BatteryCountsDTO] = Field(default=None, alias="batteryCounts")
    slot_stats: Optional[SlotStatsDTO] = Field(default=None, alias="slotStats")
    provisioned_slots: Optional[int] = Field(default=None, alias="provisionedSlots")

    def available_count(self) -> int:
        if self.battery_counts is not None:
            return self.battery_counts.available
        return self.available_batteries or 0


# ============================================================================
# PILLAR / SLOT DTOs
# ============================================================================

class SlotDTO(BaseDTO):
    id: str
    slot_number: int = Field(alias="slotNumber")
    slot_code: str = Field(alias="slotCode")
    status: str
    battery: Optional[str] = None

    @classmethod
    def from_domain(cls, slot: Slot) -> 'SlotDTO':
        return cls(
            id=slot.id,
            slot_number=slot.slot_number,
            slot_code=slot.slot_code,
            status=slot.status.value,
            battery=slot.battery_id
        )


class PillarDTO(BaseDTO):
    """Pillar/slot query shape"""
    id: str
    station: str
    pillar_name: str = Field(alias="pillarName")
    pillar_number: int = Field(alias="pillarNumber")
    pillar_code: str = Field(alias="pillarCode")
    status: str
    total_slots: int = Field(alias="totalSlots")
    slot_stats: SlotStatsDTO = Field(alias="slotStats")
    slots: List[SlotDTO] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, pillar: Pillar) -> 'PillarDTO':
        return cls(
            id=pillar.id,
            station=pillar.station_id,
            pillar_name=pillar.pillar_name,
            pillar_number=pillar.pillar_number,
            pillar_code=pillar.pillar_code,
            status=pillar.status.value,
            total_slots=pillar.total_slots,
            slot_stats=SlotStatsDTO(**pillar.slot_stats.to_dict()),
            slots=[SlotDTO.from_domain(slot) for slot in pillar.slots]
        )


# ============================================================================
# BOOKING / SWAP DTOs
# ============================================================================

class SwapRequestDTO(BaseDTO):
    """
    Driver's swap request

    ``station`` and ``battery`` arrive either as id strings or as embedded
    objects; they are resolved into references here and nowhere else.
    """
    user_id: str = Field(alias="userId")
    station: Union[str, Dict[str, Any]]
    battery: Union[str, Dict[str, Any]]
    vehicle_id: Optional[str] = Field(default=None, alias="vehicleId")
    scheduled_time: Optional[datetime] = Field(default=None, alias="scheduledTime")

    @field_validator("station", "battery")
    @classmethod
    def validate_reference(cls, v):
        Reference.parse(v)
        return v

    @property
    def station_ref(self) -> Reference:
        return Reference.parse(self.station)

    @property
    def battery_ref(self) -> Reference:
        return Reference.parse(self.battery)


class ConfirmSwapRequestDTO(BaseDTO):
    """Staff confirm / complete action"""
    request_id: str = Field(alias="requestId")
    staff_id: Optional[str] = Field(default=None, alias="staffId")

    @field_validator("request_id")
    @classmethod
    def validate_request_id(cls, v):
        return _not_blank(v)


class CancelBookingDTO(BaseDTO):
    request_id: str = Field(alias="requestId")
    reason: Optional[str] = None


class DisputeBookingDTO(BaseDTO):
    request_id: str = Field(alias="requestId")
    note: str


class BookingDTO(BaseDTO):
    id: str = Field(alias="_id")
    user: str
    station: str
    battery: str
    vehicle: Optional[str] = None
    status: str
    scheduled_time: datetime = Field(alias="scheduledTime")
    replacement_battery: Optional[str] = Field(default=None, alias="replacementBattery")
    transaction: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    confirmed_at: Optional[datetime] = Field(default=None, alias="confirmedAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    cancel_reason: Optional[str] = Field(default=None, alias="cancelReason")
    dispute_note: Optional[str] = Field(default=None, alias="disputeNote")

    @classmethod
    def from_domain(cls, booking: Booking) -> 'BookingDTO':
        return cls(
            id=booking.id,
            user=booking.user_id,
            station=booking.station_id,
            battery=booking.battery_id,
            vehicle=booking.vehicle_id,
            status=booking.status.value,
            scheduled_time=booking.scheduled_time,
            replacement_battery=booking.replacement_battery_id,
            transaction=booking.transaction_id,
            created_at=booking.created_at,
            confirmed_at=booking.confirmed_at,
            completed_at=booking.completed_at,
            cancel_reason=booking.cancel_reason,
            dispute_note=booking.dispute_note
        )


# ============================================================================
# MEMBERSHIP DTOs
# ============================================================================

class ToggleFavoriteRequestDTO(BaseDTO):
    user_id: str = Field(alias="userId")
    station_id: str = Field(alias="stationId")

    @field_validator("user_id", "station_id")
    @classmethod
    def validate_ids(cls, v):
        return _not_blank(v)


class FavoriteStateDTO(BaseDTO):
    user_id: str = Field(alias="userId")
    station_id: str = Field(alias="stationId")
    is_favorite: bool = Field(alias="isFavorite")


# ============================================================================
# SUPPORT DTOs
# ============================================================================

class OpenSupportRequestDTO(BaseDTO):
    booking_id: str = Field(alias="bookingId")
    user_id: str = Field(alias="userId")
    title: str = Field(min_length=1, max_length=200)
    description: str = ""
    images: List[str] = Field(default_factory=list)


class CloseSupportRequestDTO(BaseDTO):
    """Close note emptiness is a domain rule (NoteRequired), not a schema rule"""
    request_id: str = Field(alias="requestId")
    close_note: Optional[str] = Field(default=None, alias="closeNote")


class SupportRequestDTO(BaseDTO):
    id: str = Field(alias="_id")
    booking: str
    user: str
    title: str
    description: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    status: str
    resolve_note: Optional[str] = Field(default=None, alias="resolveNote")
    close_note: Optional[str] = Field(default=None, alias="closeNote")
    created_at: datetime = Field(alias="createdAt")
    closed_at: Optional[datetime] = Field(default=None, alias="closedAt")

    @classmethod
    def from_domain(cls, request: SupportRequest) -> 'SupportRequestDTO':
        return cls(
            id=request.id,
            booking=request.booking_id,
            user=request.user_id,
            title=request.title,
            description=request.description,
            images=request.images,
            status=request.status.value,
            resolve_note=request.resolve_note,
            close_note=request.close_note,
            created_at=request.created_at,
            closed_at=request.closed_at
        )


# ============================================================================
# FEEDBACK DTOs
# ============================================================================

class SubmitFeedbackDTO(BaseDTO):
    """The rating range is a domain rule (InvalidRange), not a schema rule"""
    booking_id: str = Field(alias="bookingId")
    user_id: str = Field(alias="userId")
    rating: int
    comment: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    @field_validator("booking_id", "user_id")
    @classmethod
    def validate_ids(cls, v):
        return _not_blank(v)


class FeedbackDTO(BaseDTO):
    id: str = Field(alias="_id")
    booking: str
    station: str
    user: str
    rating: int
    comment: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    created_at: datetime = Field(alias="createdAt")

    @classmethod
    def from_domain(cls, feedback: Feedback) -> 'FeedbackDTO':
        return cls(
            id=feedback.id,
            booking=feedback.booking_id,
            station=feedback.station_id,
            user=feedback.user_id,
            rating=feedback.rating,
            comment=feedback.comment,
            images=list(feedback.images),
            created_at=feedback.created_at
        )


# ============================================================================
# ERROR DTO
# ============================================================================

class ErrorResponseDTO(BaseDTO):
    kind: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, error: SwapHubError) -> 'ErrorResponseDTO':
        return cls(kind=error.kind, message=error.message, details=error.details)
