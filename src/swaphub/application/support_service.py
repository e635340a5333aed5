# File: src/swaphub/application/support_service.py
"""
Support Request Service

Tickets raised against a booking. The booking must exist when the ticket
is opened; after that the ticket lifecycle is independent of the booking.
"""

from typing import List, Optional

from ..domain.aggregates import SupportRequest
from ..domain.errors import SupportRequestNotFound
from .base import ApplicationService, EventCollector
from .dtos import OpenSupportRequestDTO, SupportRequestDTO


class SupportService(ApplicationService):
    """Application service for support requests"""

    def open_request(
        self,
        booking_id: str,
        user_id: str,
        title: str,
        description: str,
        images: Optional[List[str]] = None
    ) -> SupportRequest:
        collector = EventCollector()
        with self.uow_factory() as uow:
            self._load_booking(uow, booking_id)
            request = SupportRequest.open(booking_id, user_id, title, description, images=images)
            uow.support_requests.add(request)
            collector.collect(request)

        self.logger.info(f"Opened support request {request.id} for booking {booking_id}")
        self._publish(collector.events)
        return request

    def open_from_dto(self, dto: OpenSupportRequestDTO) -> SupportRequestDTO:
        request = self.open_request(dto.booking_id, dto.user_id, dto.title, dto.description, dto.images)
        return SupportRequestDTO.from_domain(request)

    def get(self, request_id: str) -> SupportRequest:
        with self.uow_factory() as uow:
            return self._load_request(uow, request_id)

    def list_for_booking(self, booking_id: str) -> List[SupportRequest]:
        with self.uow_factory() as uow:
            self._load_booking(uow, booking_id)
            return sorted(uow.support_requests.find_by_booking(booking_id), key=lambda r: r.created_at)

    def resolve(self, request_id: str, note: Optional[str] = None) -> SupportRequest:
        return self._mutate(request_id, lambda request: request.resolve(note))

    def complete(self, request_id: str) -> SupportRequest:
        return self._mutate(request_id, lambda request: request.complete())

    def close(self, request_id: str, note: Optional[str]) -> SupportRequest:
        """Terminal; raises NoteRequired when the note is blank"""
        return self._mutate(request_id, lambda request: request.close(note))

    def _mutate(self, request_id: str, change) -> SupportRequest:
        """Load, change and store one ticket while holding its lock"""
        collector = EventCollector()
        with self.station_locks.hold(f"support:{request_id}"):
            with self.uow_factory() as uow:
                request = self._load_request(uow, request_id)
                change(request)
                uow.support_requests.update(request)
                collector.collect(request)

        self._publish(collector.events)
        return request

    @staticmethod
    def _load_request(uow, request_id: str) -> SupportRequest:
        request = uow.support_requests.get(request_id)
        if request is None:
            raise SupportRequestNotFound(request_id)
        return request
