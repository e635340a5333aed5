# File: src/swaphub/application/commands.py
"""
Command Pattern Implementation for SwapHub

Staff and driver actions are encapsulated as command objects and run by a
CommandProcessor. A command validates its own parameters, then calls the
matching application service. Domain errors raised by the service are
turned into a failed CommandResult carrying the error kind; they never
escape the processor.

Command Types:
1. Swap Commands - confirm, record returned battery, cancel, dispute
2. Membership Commands - toggle favorite station
3. Support Commands - close support request
4. Feedback Commands - rate a completed swap
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple
from datetime import datetime
from dataclasses import dataclass, field
import logging
import uuid

from ..domain.errors import SwapHubError
from .dtos import BookingDTO, FavoriteStateDTO, FeedbackDTO, SupportRequestDTO, ErrorResponseDTO


# ============================================================================
# COMMAND INTERFACES AND BASE CLASSES
# ============================================================================

class Command(ABC):
    """
    Abstract base class for all commands

    ``execute`` receives the service container (swaps, memberships,
    support, ...) and returns the result payload. Domain errors propagate
    to the processor.
    """

    def __init__(self, command_id: Optional[str] = None, executed_by: Optional[str] = None):
        self.command_id = command_id or str(uuid.uuid4())
        self.executed_at: Optional[datetime] = None
        self.executed_by = executed_by
        self.logger = logging.getLogger(self.__class__.__name__)

        self.metadata = {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "created_at": datetime.now().isoformat()
        }

    @abstractmethod
    def execute(self, services) -> Dict[str, Any]:
        pass

    @abstractmethod
    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate command parameters before execution

        Returns: (is_valid, error_messages)
        """
        pass

    def can_undo(self) -> bool:
        # Lifecycle transitions are forward-only
        return False

    def get_description(self) -> str:
        """Get human-readable command description"""
        return self.__class__.__name__.replace("Command", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "command_type": self.__class__.__name__,
            "metadata": self.metadata,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "executed_by": self.executed_by
        }


def _require(value: Optional[str], name: str, errors: List[str]) -> None:
    if not value or not str(value).strip():
        errors.append(f"{name} is required")


# ============================================================================
# COMMAND RESULT
# ============================================================================

@dataclass
class CommandResult:
    """Outcome of a processed command"""
    success: bool
    command_id: str
    command_type: str
    executed_at: datetime
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "command_id": self.command_id,
            "command_type": self.command_type,
            "executed_at": self.executed_at.isoformat(),
            "data": self.data,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "metadata": self.metadata
        }


# ============================================================================
# SWAP COMMANDS
# ============================================================================

class ConfirmSwapRequestCommand(Command):
    """
    Command: Staff confirms a pending swap request

    Selects and holds a replacement battery at the booking's station.
    """

    def __init__(self, request_id: str, executed_by: Optional[str] = None, **kwargs):
        super().__init__(executed_by=executed_by, **kwargs)
        self.request_id = request_id

    def execute(self, services) -> Dict[str, Any]:
        self.logger.info(f"Confirming swap request {self.request_id}")
        booking = services.swaps.confirm_swap_request(self.request_id, self.executed_by)
        return BookingDTO.from_domain(booking).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.request_id, "request_id", errors)
        return len(errors) == 0, errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["request_id"] = self.request_id
        return data


class RecordReturnedBatteryCommand(Command):
    """
    Command: Staff records the swap as done

    Hands over the held battery, seats the returned one and writes the
    transaction.
    """

    def __init__(self, request_id: str, executed_by: Optional[str] = None, **kwargs):
        super().__init__(executed_by=executed_by, **kwargs)
        self.request_id = request_id

    def execute(self, services) -> Dict[str, Any]:
        self.logger.info(f"Recording returned battery for {self.request_id}")
        transaction = services.swaps.record_returned_battery(self.request_id, self.executed_by)
        return transaction.to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.request_id, "request_id", errors)
        return len(errors) == 0, errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["request_id"] = self.request_id
        return data


class CancelBookingCommand(Command):

    def __init__(
        self,
        request_id: str,
        reason: Optional[str] = None,
        executed_by: Optional[str] = None,
        **kwargs
    ):
        super().__init__(executed_by=executed_by, **kwargs)
        self.request_id = request_id
        self.reason = reason

    def execute(self, services) -> Dict[str, Any]:
        booking = services.swaps.cancel_booking(self.request_id, self.reason, self.executed_by)
        return BookingDTO.from_domain(booking).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.request_id, "request_id", errors)
        return len(errors) == 0, errors


class DisputeBookingCommand(Command):
    """Command: Flag a booking as disputed (terminal)"""

    def __init__(self, request_id: str, note: str, executed_by: Optional[str] = None, **kwargs):
        super().__init__(executed_by=executed_by, **kwargs)
        self.request_id = request_id
        self.note = note

    def execute(self, services) -> Dict[str, Any]:
        booking = services.swaps.dispute_booking(self.request_id, self.note, self.executed_by)
        return BookingDTO.from_domain(booking).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.request_id, "request_id", errors)
        return len(errors) == 0, errors


# ============================================================================
# MEMBERSHIP COMMANDS
# ============================================================================

class ToggleFavoriteCommand(Command):
    """Command: Add or remove a station from a user's favorites"""

    def __init__(self, user_id: str, station_id: str, executed_by: Optional[str] = None, **kwargs):
        super().__init__(executed_by=executed_by or user_id, **kwargs)
        self.user_id = user_id
        self.station_id = station_id

    def execute(self, services) -> Dict[str, Any]:
        is_favorite = services.memberships.toggle_favorite(self.user_id, self.station_id)
        return FavoriteStateDTO(
            user_id=self.user_id, station_id=self.station_id, is_favorite=is_favorite
        ).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.user_id, "user_id", errors)
        _require(self.station_id, "station_id", errors)
        return len(errors) == 0, errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"user_id": self.user_id, "station_id": self.station_id})
        return data


# ============================================================================
# SUPPORT COMMANDS
# ============================================================================

class CloseSupportRequestCommand(Command):
    """
    Command: Close a completed support request

    An empty close note is a domain error (NoteRequired), not a validation
    failure, so it is left to the service.
    """

    def __init__(
        self,
        request_id: str,
        close_note: Optional[str] = None,
        executed_by: Optional[str] = None,
        **kwargs
    ):
        super().__init__(executed_by=executed_by, **kwargs)
        self.request_id = request_id
        self.close_note = close_note

    def execute(self, services) -> Dict[str, Any]:
        request = services.support.close(self.request_id, self.close_note)
        return SupportRequestDTO.from_domain(request).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.request_id, "request_id", errors)
        return len(errors) == 0, errors


# ============================================================================
# FEEDBACK COMMANDS
# ============================================================================

class SubmitFeedbackCommand(Command):
    """Command: Driver rates a completed swap"""

    def __init__(
        self,
        booking_id: str,
        user_id: str,
        rating: int,
        comment: Optional[str] = None,
        images: Optional[List[str]] = None,
        executed_by: Optional[str] = None,
        **kwargs
    ):
        super().__init__(executed_by=executed_by or user_id, **kwargs)
        self.booking_id = booking_id
        self.user_id = user_id
        self.rating = rating
        self.comment = comment
        self.images = list(images or [])

    def execute(self, services) -> Dict[str, Any]:
        feedback = services.feedback.submit_feedback(
            self.booking_id, self.user_id, self.rating, self.comment, self.images
        )
        return FeedbackDTO.from_domain(feedback).to_dict()

    def validate(self) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        _require(self.booking_id, "booking_id", errors)
        _require(self.user_id, "user_id", errors)
        if isinstance(self.rating, bool) or not isinstance(self.rating, int):
            errors.append("rating must be a whole number")
        return len(errors) == 0, errors

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"booking_id": self.booking_id, "rating": self.rating})
        return data


# ============================================================================
# COMMAND FACTORY
# ============================================================================

class CommandFactory:
    """Factory for creating commands from dictionary data"""

    COMMAND_CLASSES = {
        "confirm_swap_request": ConfirmSwapRequestCommand,
        "record_returned_battery": RecordReturnedBatteryCommand,
        "cancel_booking": CancelBookingCommand,
        "dispute_booking": DisputeBookingCommand,
        "toggle_favorite": ToggleFavoriteCommand,
        "close_support_request": CloseSupportRequestCommand,
        "submit_feedback": SubmitFeedbackCommand,
    }

    # camelCase wire names accepted alongside the snake_case ones
    FIELD_ALIASES = {
        "requestId": "request_id",
        "userId": "user_id",
        "stationId": "station_id",
        "staffId": "executed_by",
        "closeNote": "close_note",
        "bookingId": "booking_id",
    }

    @classmethod
    def create_command(cls, command_type: str, data: Dict[str, Any]) -> Command:
        """Raises ValueError for an unknown command type"""
        command_class = cls.COMMAND_CLASSES.get(command_type)
        if command_class is None:
            raise ValueError(f"Unknown command type: {command_type}")

        kwargs = {cls.FIELD_ALIASES.get(key, key): value for key, value in data.items()}
        return command_class(**kwargs)


# ============================================================================
# COMMAND PROCESSOR
# ============================================================================

class CommandProcessor:
    """
    Runs commands against the service container

    Keeps a bounded history of successful commands. Failures come back as
    CommandResult objects with ``error_kind`` set; only non-domain errors
    (persistence failures, bugs) propagate.
    """

    INVALID_REQUEST = "InvalidRequest"

    def __init__(self, services, max_history_size: int = 1000):
        self.services = services
        self.logger = logging.getLogger(self.__class__.__name__)
        self.command_history: List[Command] = []
        self.max_history_size = max_history_size

    def process(self, command: Command) -> CommandResult:
        self.logger.info(f"Processing command: {command.get_description()}")

        is_valid, errors = command.validate()
        if not is_valid:
            self.logger.warning(f"Rejected {command.get_description()}: {errors}")
            return self._failure(
                command, self.INVALID_REQUEST, "; ".join(errors), {"errors": errors}
            )

        try:
            data = command.execute(self.services)
        except SwapHubError as e:
            self.logger.warning(f"{command.get_description()} failed: {e.kind}: {e.message}")
            return self._failure(command, e.kind, e.message, ErrorResponseDTO.from_error(e).to_dict())

        command.executed_at = datetime.now()
        self._add_to_history(command)
        return CommandResult(
            success=True,
            command_id=command.command_id,
            command_type=command.__class__.__name__,
            executed_at=command.executed_at,
            data=data,
            metadata=command.metadata
        )

    def process_batch(self, commands: List[Command]) -> List[CommandResult]:
        """Each command runs in its own unit of work; a failure does not stop the batch"""
        return [self.process(command) for command in commands]

    def get_history(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        history = self.command_history.copy()
        if limit:
            history = history[-limit:]
        return [cmd.to_dict() for cmd in history]

    def clear_history(self):
        self.command_history.clear()

    def _add_to_history(self, command: Command):
        self.command_history.append(command)
        if len(self.command_history) > self.max_history_size:
            self.command_history = self.command_history[-self.max_history_size:]

    @staticmethod
    def _failure(
        command: Command,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None
    ) -> CommandResult:
        return CommandResult(
            success=False,
            command_id=command.command_id,
            command_type=command.__class__.__name__,
            executed_at=datetime.now(),
            data=data,
            error_kind=kind,
            error_message=message,
            metadata=command.metadata
        )
