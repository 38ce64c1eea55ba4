import os
import tempfile
import threading
import unittest
from datetime import date, timedelta
from unittest import mock

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from rental_engine.models.rental_models import AuditLog, AvailabilityReservation, NotificationQueue, RentalStatus
from rental_engine.services.errors import (
    ActionNotPermitted,
    EquipmentUnavailable,
    InvalidDateRange,
    InvalidRequestData,
    InvalidTransition,
    RequestNotFound,
    SlotConflict,
    StorageUnavailable,
    TokenInvalid,
)
from rental_engine.services.notifications import (
    PICKUP_CONFIRMED,
    PICKUP_READY,
    RENTAL_RETURNED,
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    RETURN_DUE,
    NotificationDispatcher,
)
from rental_engine.services.repository import SqlAlchemyRentalRepository
from rental_engine.tests.support import (
    ADMIN,
    FARMER,
    OTHER_FARMER,
    OTHER_OWNER,
    OWNER,
    build_orchestrator,
    build_test_database,
    seed_equipment,
)


class BookingFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.session_factory = build_test_database()
        self.equipment_id = seed_equipment(self.session_factory)
        self.orchestrator = build_orchestrator(self.session_factory)

    def tearDown(self):
        self.engine.dispose()

    def _create(self, start, end, farmer=FARMER):
        return self.orchestrator.create_request(farmer, self.equipment_id, start, end, "Farm road 1")

    def _rows(self, model, **filters):
        db = self.session_factory()
        try:
            stmt = select(model)
            for name, value in filters.items():
                stmt = stmt.where(getattr(model, name) == value)
            return db.execute(stmt).scalars().all()
        finally:
            db.close()

    def test_create_prices_request_and_numbers_it(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 10))

        self.assertEqual(created.Status, RentalStatus.PENDING)
        self.assertEqual(created.RequestNumber, f"EQR-{created.RentalRequestID:03d}")
        self.assertEqual(created.RentalDuration, 10)
        self.assertEqual(created.RentalCost, 9000)
        self.assertEqual(created.TotalAmount, 9500)
        self.assertEqual(created.FarmerID, FARMER.actor_id)
        self.assertEqual(self._rows(AvailabilityReservation), [])
        self.assertEqual([row.Action for row in self._rows(AuditLog)], ["CreateRequest"])

    def test_create_validates_input(self):
        with self.assertRaises(InvalidDateRange):
            self._create(date(2025, 6, 5), date(2025, 6, 1))
        with self.assertRaises(InvalidDateRange):
            self._create(date(2025, 4, 30), date(2025, 5, 2))
        with self.assertRaises(InvalidRequestData):
            self.orchestrator.create_request(FARMER, self.equipment_id, date(2025, 6, 1), date(2025, 6, 2), "  ")
        with self.assertRaises(ActionNotPermitted):
            self.orchestrator.create_request(OWNER, self.equipment_id, date(2025, 6, 1), date(2025, 6, 2), "Yard")
        with self.assertRaises(RequestNotFound):
            self.orchestrator.create_request(FARMER, 999, date(2025, 6, 1), date(2025, 6, 2), "Yard")

    def test_delisted_equipment_is_unavailable(self):
        delisted = seed_equipment(self.session_factory, IsAvailable=False)

        with self.assertRaises(EquipmentUnavailable):
            self.orchestrator.create_request(FARMER, delisted, date(2025, 6, 1), date(2025, 6, 2), "Yard")
        with self.assertRaises(EquipmentUnavailable):
            self.orchestrator.quote(delisted, date(2025, 6, 1), date(2025, 6, 2))

    def test_second_overlapping_approval_conflicts(self):
        first = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, first.RentalRequestID)

        second = self._create(date(2025, 6, 3), date(2025, 6, 7), farmer=OTHER_FARMER)
        self.assertEqual(second.Status, RentalStatus.PENDING)

        with self.assertRaises(SlotConflict):
            self.orchestrator.approve(OWNER, second.RentalRequestID)

        reloaded = self.orchestrator.get_request(second.RentalRequestID)
        self.assertEqual(reloaded.Status, RentalStatus.PENDING)
        self.assertIsNone(reloaded.PickupToken)
        self.assertEqual(len(self._rows(AvailabilityReservation, IsActive=True)), 1)
        self.assertEqual(self._rows(NotificationQueue, RentalRequestID=second.RentalRequestID), [])

    def test_full_handover_releases_range(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        approved = self.orchestrator.approve(OWNER, created.RentalRequestID, admin_notes="Deliver before 8am")
        self.assertEqual(approved.Status, RentalStatus.APPROVED)
        self.assertEqual(approved.DecidedBy, OWNER.actor_id)
        self.assertFalse(
            self.orchestrator.check_availability(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5))["isAvailable"]
        )

        active = self.orchestrator.mark_picked_up(approved.PickupToken)
        self.assertEqual(active.Status, RentalStatus.ACTIVE)
        self.assertIsNotNone(active.PickupConfirmedAt)
        self.assertIsNotNone(active.ReturnToken)

        returned = self.orchestrator.mark_returned(active.ReturnToken)
        self.assertEqual(returned.Status, RentalStatus.RETURNED)
        self.assertIsNotNone(returned.ReturnConfirmedAt)

        listing = self.orchestrator.check_availability(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5))
        self.assertTrue(listing["isAvailable"])
        self.assertTrue(listing["isListed"])
        kinds = [row.NotificationType for row in self._rows(NotificationQueue, RentalRequestID=created.RentalRequestID)]
        self.assertEqual(kinds, [REQUEST_APPROVED, PICKUP_READY, PICKUP_CONFIRMED, RENTAL_RETURNED])

        with self.assertRaises(TokenInvalid):
            self.orchestrator.mark_returned(active.ReturnToken)

    def test_reapproval_and_terminal_moves_fail(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, created.RentalRequestID)

        with self.assertRaises(InvalidTransition):
            self.orchestrator.approve(OWNER, created.RentalRequestID)
        with self.assertRaises(InvalidTransition):
            self.orchestrator.reject(OWNER, created.RentalRequestID, "Too late")

        rejected = self._create(date(2025, 7, 1), date(2025, 7, 2))
        self.orchestrator.reject(ADMIN, rejected.RentalRequestID, "Maintenance window")
        with self.assertRaises(InvalidTransition):
            self.orchestrator.approve(ADMIN, rejected.RentalRequestID)
        with self.assertRaises(InvalidTransition):
            self.orchestrator.cancel(FARMER, rejected.RentalRequestID)
        self.assertEqual(self.orchestrator.get_request(rejected.RentalRequestID).Status, RentalStatus.REJECTED)

    def test_reject_requires_reason_and_records_it(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))

        with self.assertRaises(InvalidRequestData):
            self.orchestrator.reject(OWNER, created.RentalRequestID, "   ")

        rejected = self.orchestrator.reject(OWNER, created.RentalRequestID, "Booked for repairs")
        self.assertEqual(rejected.Status, RentalStatus.REJECTED)
        self.assertEqual(rejected.RejectionReason, "Booked for repairs")

    def test_only_bound_parties_can_decide(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))

        with self.assertRaises(ActionNotPermitted):
            self.orchestrator.approve(OTHER_OWNER, created.RentalRequestID)
        with self.assertRaises(ActionNotPermitted):
            self.orchestrator.approve(FARMER, created.RentalRequestID)
        with self.assertRaises(ActionNotPermitted):
            self.orchestrator.cancel(OTHER_FARMER, created.RentalRequestID)
        self.assertEqual(self.orchestrator.get_request(created.RentalRequestID).Status, RentalStatus.PENDING)

    def test_cancel_pending_never_touches_index(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))

        cancelled = self.orchestrator.cancel(FARMER, created.RentalRequestID, reason="No longer needed")

        self.assertEqual(cancelled.Status, RentalStatus.CANCELLED)
        self.assertEqual(cancelled.CancelledBy, FARMER.actor_id)
        self.assertEqual(self._rows(AvailabilityReservation), [])
        notice = self._rows(NotificationQueue, NotificationType=REQUEST_CANCELLED)[0]
        self.assertEqual(notice.RecipientID, OWNER.actor_id)

    def test_cancel_approved_releases_reservation(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, created.RentalRequestID)

        self.orchestrator.cancel(OWNER, created.RentalRequestID)

        reservation = self._rows(AvailabilityReservation, RentalRequestID=created.RentalRequestID)[0]
        self.assertFalse(reservation.IsActive)
        self.assertIsNotNone(reservation.ReleasedAt)

        follow_up = self._create(date(2025, 6, 2), date(2025, 6, 4), farmer=OTHER_FARMER)
        self.assertEqual(self.orchestrator.approve(OWNER, follow_up.RentalRequestID).Status, RentalStatus.APPROVED)

    def test_approved_request_cannot_be_cancelled_once_started(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, created.RentalRequestID)
        on_start_day = build_orchestrator(self.session_factory, today=date(2025, 6, 1))

        with self.assertRaises(InvalidTransition):
            on_start_day.cancel(FARMER, created.RentalRequestID)
        self.assertEqual(self.orchestrator.get_request(created.RentalRequestID).Status, RentalStatus.APPROVED)

    def test_storage_failure_surfaces_as_retryable_error(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        lost = OperationalError("SELECT 1", {}, Exception("connection lost"))

        with mock.patch.object(SqlAlchemyRentalRepository, "add_reservation", side_effect=lost):
            with self.assertRaises(StorageUnavailable) as ctx:
                self.orchestrator.approve(OWNER, created.RentalRequestID)

        self.assertTrue(ctx.exception.retryable)
        self.assertNotIn("connection lost", ctx.exception.reason)
        self.assertEqual(self.orchestrator.get_request(created.RentalRequestID).Status, RentalStatus.PENDING)

    def test_quote_matches_created_price(self):
        quote = self.orchestrator.quote(self.equipment_id, date(2025, 6, 1), date(2025, 6, 10))
        created = self._create(date(2025, 6, 1), date(2025, 6, 10))

        self.assertEqual(quote["totalAmount"], created.TotalAmount)
        self.assertEqual(quote["weeks"], 1)
        self.assertEqual(quote["extraDays"], 3)

    def test_list_requests_filters_and_paginates(self):
        for offset in range(3):
            start = date(2025, 6, 1) + timedelta(days=offset * 10)
            self._create(start, start + timedelta(days=1))
        self._create(date(2025, 8, 1), date(2025, 8, 2), farmer=OTHER_FARMER)

        rows, pagination = self.orchestrator.list_requests(farmer_id=FARMER.actor_id, page=1, limit=2)
        self.assertEqual(len(rows), 2)
        self.assertEqual(pagination, {"page": 1, "limit": 2, "total": 3, "totalPages": 2})

        rows, _ = self.orchestrator.list_requests(status="pending", limit=500)
        self.assertEqual(len(rows), 4)

        with self.assertRaises(RequestNotFound):
            self.orchestrator.get_request(404)

    def test_unknown_status_filter_is_bad_input(self):
        with self.assertRaises(InvalidRequestData):
            self.orchestrator.list_requests(status="shipped")

    def test_owner_reads_are_scoped_to_own_equipment(self):
        other_equipment = seed_equipment(self.session_factory, OwnerID=OTHER_OWNER.actor_id, EquipmentName="Baler")
        mine = self._create(date(2025, 6, 1), date(2025, 6, 2))
        theirs = self.orchestrator.create_request(FARMER, other_equipment, date(2025, 6, 1), date(2025, 6, 2), "Yard")

        rows, pagination = self.orchestrator.list_requests(owner_id=OWNER.actor_id)
        self.assertEqual([row.RentalRequestID for row in rows], [mine.RentalRequestID])
        self.assertEqual(pagination["total"], 1)
        rows, _ = self.orchestrator.list_requests(owner_id=OWNER.actor_id, equipment_id=other_equipment)
        self.assertEqual(rows, [])

        self.assertEqual(self.orchestrator.get_request_for(OWNER, mine.RentalRequestID).RentalRequestID, mine.RentalRequestID)
        self.assertEqual(self.orchestrator.get_request_for(FARMER, theirs.RentalRequestID).EquipmentID, other_equipment)
        self.assertEqual(self.orchestrator.get_request_for(ADMIN, theirs.RentalRequestID).EquipmentID, other_equipment)
        with self.assertRaises(RequestNotFound):
            self.orchestrator.get_request_for(OWNER, theirs.RentalRequestID)
        with self.assertRaises(RequestNotFound):
            self.orchestrator.get_request_for(OTHER_FARMER, mine.RentalRequestID)

    def test_spent_codes_are_cleared_from_request(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        approved = self.orchestrator.approve(OWNER, created.RentalRequestID)

        self.orchestrator.mark_picked_up(approved.PickupToken)
        active = self.orchestrator.get_request(created.RentalRequestID)
        self.assertIsNone(active.PickupToken)
        self.assertIsNone(active.PickupQrCodeUrl)
        self.assertIsNotNone(active.ReturnToken)

        self.orchestrator.mark_returned(active.ReturnToken)
        returned = self.orchestrator.get_request(created.RentalRequestID)
        self.assertIsNone(returned.ReturnToken)
        self.assertIsNone(returned.ReturnQrCodeUrl)

    def test_cancel_clears_revoked_pickup_code(self):
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, created.RentalRequestID)

        cancelled = self.orchestrator.cancel(FARMER, created.RentalRequestID)

        self.assertIsNone(cancelled.PickupToken)
        self.assertIsNone(self.orchestrator.get_request(created.RentalRequestID).PickupQrCodeUrl)

    def test_list_available_equipment_reports_days(self):
        baler = seed_equipment(self.session_factory, OwnerID=OTHER_OWNER.actor_id, EquipmentName="Baler")
        seed_equipment(self.session_factory, EquipmentName="Retired plough", IsAvailable=False)
        created = self._create(date(2025, 6, 1), date(2025, 6, 5))
        self.orchestrator.approve(OWNER, created.RentalRequestID)

        rows, pagination = self.orchestrator.list_available_equipment(date(2025, 6, 4), date(2025, 6, 7))

        self.assertEqual(pagination, {"page": 1, "limit": 10, "total": 2, "totalPages": 1})
        self.assertEqual([row["equipmentID"] for row in rows], [self.equipment_id, baler])
        tractor, free = rows
        self.assertFalse(tractor["isAvailable"])
        self.assertEqual(tractor["unavailableDates"], ["2025-06-04", "2025-06-05"])
        self.assertEqual(tractor["availableDates"], ["2025-06-06", "2025-06-07"])
        self.assertEqual(tractor["dailyRate"], 1000)
        self.assertTrue(free["isAvailable"])
        self.assertEqual(len(free["availableDates"]), 4)

        second_page, _ = self.orchestrator.list_available_equipment(date(2025, 6, 4), date(2025, 6, 7), page=2, limit=1)
        self.assertEqual([row["equipmentID"] for row in second_page], [baler])

        with self.assertRaises(InvalidDateRange):
            self.orchestrator.list_available_equipment(date(2025, 6, 7), date(2025, 6, 4))


class ConcurrentApprovalTests(unittest.TestCase):
    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".sqlite")
        os.close(handle)
        self.engine, self.session_factory = build_test_database(f"sqlite+pysqlite:///{self.db_path}")
        self.equipment_id = seed_equipment(self.session_factory)
        self.orchestrator = build_orchestrator(self.session_factory)

    def tearDown(self):
        self.engine.dispose()
        os.remove(self.db_path)

    def test_exactly_one_overlapping_approval_wins(self):
        workers = 6
        request_ids = [
            self.orchestrator.create_request(
                FARMER,
                self.equipment_id,
                date(2025, 6, 1) + timedelta(days=offset),
                date(2025, 6, 10),
                "Farm road 1",
            ).RentalRequestID
            for offset in range(workers)
        ]
        barrier = threading.Barrier(workers)
        outcomes = []
        outcome_lock = threading.Lock()

        def approve(request_id):
            barrier.wait()
            try:
                self.orchestrator.approve(OWNER, request_id)
                result = "approved"
            except SlotConflict:
                result = "conflict"
            with outcome_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=approve, args=(request_id,)) for request_id in request_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(outcomes.count("approved"), 1)
        self.assertEqual(outcomes.count("conflict"), workers - 1)

    def test_concurrent_pickup_scans_consume_once(self):
        created = self.orchestrator.create_request(
            FARMER, self.equipment_id, date(2025, 6, 1), date(2025, 6, 2), "Farm road 1"
        )
        token = self.orchestrator.approve(OWNER, created.RentalRequestID).PickupToken
        barrier = threading.Barrier(4)
        outcomes = []
        outcome_lock = threading.Lock()

        def scan():
            barrier.wait()
            try:
                self.orchestrator.mark_picked_up(token)
                result = "active"
            except TokenInvalid:
                result = "rejected"
            with outcome_lock:
                outcomes.append(result)

        threads = [threading.Thread(target=scan) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["active", "rejected", "rejected", "rejected"])


class NotificationDispatcherTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.session_factory = build_test_database()
        self.equipment_id = seed_equipment(self.session_factory)
        self.orchestrator = build_orchestrator(self.session_factory)
        self.delivered = []

    def tearDown(self):
        self.engine.dispose()

    def _recording_sender(self, notification):
        self.delivered.append(notification.NotificationType)

    def test_failing_sender_keeps_transition_and_row(self):
        def broken_sender(notification):
            raise RuntimeError("smtp down")

        created = self.orchestrator.create_request(
            FARMER, self.equipment_id, date(2025, 6, 1), date(2025, 6, 5), "Farm road 1"
        )
        self.orchestrator.approve(OWNER, created.RentalRequestID)

        failing = NotificationDispatcher(self.session_factory, sender=broken_sender)
        self.assertEqual(failing.run(), {"sent": 0, "failed": 2})
        self.assertEqual(self.orchestrator.get_request(created.RentalRequestID).Status, RentalStatus.APPROVED)
        pending = failing.pending()
        self.assertEqual([row["attempts"] for row in pending], [1, 1])
        self.assertEqual(pending[0]["lastError"], "smtp down")

        working = NotificationDispatcher(self.session_factory, sender=self._recording_sender)
        self.assertEqual(working.run(), {"sent": 2, "failed": 0})
        self.assertEqual(self.delivered, [REQUEST_APPROVED, PICKUP_READY])
        self.assertEqual(working.pending(), [])

    def test_return_due_is_queued_once(self):
        created = self.orchestrator.create_request(
            FARMER, self.equipment_id, date(2025, 6, 1), date(2025, 6, 3), "Farm road 1"
        )
        approved = self.orchestrator.approve(OWNER, created.RentalRequestID)
        self.orchestrator.mark_picked_up(approved.PickupToken)

        dispatcher = NotificationDispatcher(
            self.session_factory,
            sender=self._recording_sender,
            today_provider=lambda: date(2025, 6, 2),
        )
        self.assertEqual(dispatcher.queue_return_due(days_ahead=1), 1)
        self.assertEqual(dispatcher.queue_return_due(days_ahead=1), 0)

        dispatcher.run()
        self.assertIn(RETURN_DUE, self.delivered)


if __name__ == "__main__":
    unittest.main()
