# File: tests/unit/test_feedback_service.py
"""
Unit tests for FeedbackService
"""

import unittest

from swaphub.application.commands import SubmitFeedbackCommand
from swaphub.application.dtos import SubmitFeedbackDTO
from swaphub.domain.models import Feedback
from swaphub.domain.errors import BookingNotFound, InvalidRange, InvalidState
from swaphub.infrastructure.messaging import EventType
from tests.support import SwapHubTestCase


class TestFeedback(SwapHubTestCase):
    """Ratings on completed swaps"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(4,), batteries=[("R-1", 98.0), ("R-2", 97.0)])
        self.booking = self.complete_swap("DRV-001", "driver-1")
        self.feedback = self.services.feedback

    def complete_swap(self, serial, user_id):
        battery = self.create_driver_battery(self.station.id, serial)
        booking = self.request_swap(self.station.id, battery.id, user_id=user_id)
        self.services.swaps.confirm_swap_request(booking.id, "staff-1")
        self.services.swaps.record_returned_battery(booking.id, "staff-1")
        return booking

    def test_submit_for_completed_booking(self):
        feedback = self.feedback.submit_feedback(
            self.booking.id, "driver-1", 5, "  Quick swap  ", ["https://img.example/1.jpg"]
        )
        self.assertEqual(feedback.station_id, self.station.id)
        self.assertEqual(feedback.comment, "Quick swap")
        self.assertEqual(feedback.images, ("https://img.example/1.jpg",))
        self.assertEqual(self.feedback.get_for_booking(self.booking.id).id, feedback.id)

    def test_open_bookings_cannot_be_rated(self):
        """Pending and confirmed bookings are rejected"""
        battery = self.create_driver_battery(self.station.id, "DRV-002")
        booking = self.request_swap(self.station.id, battery.id, user_id="driver-2")
        with self.assertRaises(InvalidState):
            self.feedback.submit_feedback(booking.id, "driver-2", 4)

        self.services.swaps.confirm_swap_request(booking.id)
        with self.assertRaises(InvalidState):
            self.feedback.submit_feedback(booking.id, "driver-2", 4)
        self.assertIsNone(self.feedback.get_for_booking(booking.id))

    def test_rating_out_of_range(self):
        for rating in (Feedback.MIN_RATING - 1, Feedback.MAX_RATING + 1):
            with self.assertRaises(InvalidRange):
                self.feedback.submit_feedback(self.booking.id, "driver-1", rating)
        self.assertIsNone(self.feedback.get_for_booking(self.booking.id))

    def test_one_feedback_per_booking(self):
        self.feedback.submit_feedback(self.booking.id, "driver-1", 4)
        with self.assertRaises(InvalidState):
            self.feedback.submit_feedback(self.booking.id, "driver-1", 1, "Changed my mind")
        self.assertEqual(self.feedback.get_for_booking(self.booking.id).rating, 4)

    def test_only_the_booking_driver(self):
        with self.assertRaises(InvalidState):
            self.feedback.submit_feedback(self.booking.id, "driver-9", 5)

    def test_unknown_booking(self):
        with self.assertRaises(BookingNotFound):
            self.feedback.submit_feedback("missing", "driver-1", 5)

    def test_station_listing_and_average(self):
        second = self.complete_swap("DRV-002", "driver-2")
        self.assertIsNone(self.feedback.average_rating(self.station.id))

        self.feedback.submit_feedback(self.booking.id, "driver-1", 5)
        self.feedback.submit_feedback(second.id, "driver-2", 2)

        listing = self.feedback.list_for_station(self.station.id)
        self.assertEqual({f.booking_id for f in listing}, {self.booking.id, second.id})
        self.assertGreaterEqual(listing[0].created_at, listing[1].created_at)
        self.assertEqual(self.feedback.average_rating(self.station.id), 3.5)

    def test_submission_published(self):
        self.queue.clear()
        self.feedback.submit_feedback(self.booking.id, "driver-1", 5)
        types = [m.event_type for m in self.queue.get_messages(self.message_bus.EVENTS_TOPIC)]
        self.assertIn(EventType.FEEDBACK_SUBMITTED, types)

    def test_submit_from_dto(self):
        dto = SubmitFeedbackDTO.model_validate({
            "bookingId": self.booking.id,
            "userId": "driver-1",
            "rating": 4,
            "comment": "Clean station"
        })
        result = self.feedback.submit_from_dto(dto).to_dict()
        self.assertEqual(result["booking"], self.booking.id)
        self.assertEqual(result["rating"], 4)
        self.assertEqual(result["images"], [])


class TestSubmitFeedbackCommand(SwapHubTestCase):
    """Feedback through the command processor"""

    def setUp(self):
        super().setUp()
        self.station = self.create_station("HCM-01", pillars=(2,), batteries=[("R-1", 98.0)])
        battery = self.create_driver_battery(self.station.id)
        self.booking = self.request_swap(self.station.id, battery.id)
        self.services.swaps.confirm_swap_request(self.booking.id)
        self.services.swaps.record_returned_battery(self.booking.id)

    def test_command_success(self):
        result = self.services.commands.process(SubmitFeedbackCommand(self.booking.id, "driver-1", 5))
        self.assertTrue(result.success)
        self.assertEqual(result.data["rating"], 5)

    def test_command_rating_out_of_range(self):
        result = self.services.commands.process(SubmitFeedbackCommand(self.booking.id, "driver-1", 9))
        self.assertFalse(result.success)
        self.assertEqual(result.error_kind, "InvalidRange")

    def test_command_rejects_non_integer_rating(self):
        command = SubmitFeedbackCommand(self.booking.id, "driver-1", "five")
        valid, errors = command.validate()
        self.assertFalse(valid)
        self.assertIn("rating must be a whole number", errors)


if __name__ == '__main__':
    unittest.main()
