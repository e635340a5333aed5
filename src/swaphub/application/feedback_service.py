# File: src/swaphub/application/feedback_service.py
"""
Booking Feedback Service

Drivers rate a swap once it is completed. One feedback per booking,
written under the lock of the booking's station.
"""

from typing import List, Optional, Union, Dict, Any

from ..domain.models import BookingStatus, Feedback, FeedbackSubmittedEvent
from ..domain.errors import InvalidState
from .base import ApplicationService, EventCollector
from .dtos import SubmitFeedbackDTO, FeedbackDTO


class FeedbackService(ApplicationService):
    """Application service for swap feedback"""

    def submit_feedback(
        self,
        booking_id: str,
        user_id: str,
        rating: int,
        comment: Optional[str] = None,
        images: Optional[List[str]] = None
    ) -> Feedback:
        with self.uow_factory() as uow:
            station_id = self._load_booking(uow, booking_id).station_id
        collector = EventCollector()

        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                booking = self._load_booking(uow, booking_id)
                if booking.status != BookingStatus.COMPLETED:
                    raise InvalidState(
                        f"Feedback needs a completed booking; {booking_id} is {booking.status.value}",
                        {"booking_id": booking_id, "status": booking.status.value}
                    )
                if booking.user_id != user_id:
                    raise InvalidState(
                        f"Booking {booking_id} belongs to another driver",
                        {"booking_id": booking_id, "user_id": user_id}
                    )
                if uow.feedback.find_by_booking(booking_id) is not None:
                    self.logger.warning(f"Rejected second feedback for booking {booking_id}")
                    raise InvalidState(
                        f"Feedback for booking {booking_id} was already submitted",
                        {"booking_id": booking_id}
                    )

                feedback = Feedback(
                    booking_id=booking_id,
                    station_id=booking.station_id,
                    user_id=user_id,
                    rating=rating,
                    comment=comment,
                    images=tuple(images or ())
                )
                uow.feedback.add(feedback)
                collector.add(FeedbackSubmittedEvent(feedback))

        self.logger.info(f"Feedback {feedback.rating}/{Feedback.MAX_RATING} for booking {booking_id}")
        self._publish(collector.events)
        return feedback

    def submit_from_dto(self, request: Union[SubmitFeedbackDTO, Dict[str, Any]]) -> FeedbackDTO:
        if not isinstance(request, SubmitFeedbackDTO):
            request = SubmitFeedbackDTO.model_validate(request)
        feedback = self.submit_feedback(
            request.booking_id, request.user_id, request.rating, request.comment, request.images
        )
        return FeedbackDTO.from_domain(feedback)

    def get_for_booking(self, booking_id: str) -> Optional[Feedback]:
        with self.uow_factory() as uow:
            self._load_booking(uow, booking_id)
            return uow.feedback.find_by_booking(booking_id)

    def list_for_station(self, station_id: str) -> List[Feedback]:
        """Newest first"""
        with self.uow_factory() as uow:
            self._load_station(uow, station_id)
            return uow.feedback.list_for_station(station_id)

    def average_rating(self, station_id: str) -> Optional[float]:
        entries = self.list_for_station(station_id)
        if not entries:
            return None
        return round(sum(f.rating for f in entries) / len(entries), 1)
