# File: src/swaphub/domain/errors.py
"""
Domain errors for SwapHub

Every error carries a stable ``kind`` string. Callers (the command layer,
staff-facing clients) switch on the kind rather than on the class, so the
kinds must not change once published.
"""

from typing import Any, Dict, Optional


class SwapHubError(Exception):
    """Base exception for inventory and lifecycle errors"""
    kind = "SwapHubError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "details": self.details
        }


class NotFound(SwapHubError):
    """Raised when a referenced record does not exist"""
    kind = "NotFound"
    resource = "Record"

    def __init__(self, resource_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{self.resource} {resource_id} not found",
            {"resource": self.resource, "id": resource_id}
        )
        self.resource_id = resource_id


class BookingNotFound(NotFound):
    resource = "Booking"


class BatteryNotFound(NotFound):
    resource = "Battery"


class SlotNotFound(NotFound):
    resource = "Slot"


class PillarNotFound(NotFound):
    resource = "Pillar"


class StationNotFound(NotFound):
    resource = "Station"


class SupportRequestNotFound(NotFound):
    resource = "SupportRequest"


class InvalidState(SwapHubError):
    """Raised when an operation is attempted at the wrong lifecycle stage"""
    kind = "InvalidState"


class InvalidTransition(SwapHubError):
    """Raised for a battery status change outside the allowed table"""
    kind = "InvalidTransition"


class InvalidRange(SwapHubError):
    """Raised when SOH, capacity, slot counts or ratings are out of bounds"""
    kind = "InvalidRange"


class SlotOccupied(SwapHubError):
    kind = "SlotOccupied"


class SlotEmpty(SwapHubError):
    kind = "SlotEmpty"


class SlotNotReservable(SwapHubError):
    kind = "SlotNotReservable"


class NoAvailableBattery(SwapHubError):
    kind = "NoAvailableBattery"


class OperationInProgress(SwapHubError):
    """Raised when the same resource already has an operation in flight"""
    kind = "OperationInProgress"


class NoteRequired(SwapHubError):
    kind = "NoteRequired"
