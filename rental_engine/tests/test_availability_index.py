import threading
import unittest
from datetime import date

from rental_engine.services.availability_index import AvailabilityIndex, EquipmentLockRegistry
from rental_engine.services.errors import InvalidDateRange, SlotConflict
from rental_engine.services.repository import SqlAlchemyRentalRepository
from rental_engine.tests.support import build_test_database, seed_equipment


class AvailabilityIndexTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.session_factory = build_test_database()
        self.equipment_id = seed_equipment(self.session_factory)
        self.db = self.session_factory()
        self.index = AvailabilityIndex(SqlAlchemyRentalRepository(self.db))

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_reserve_blocks_overlapping_ranges_only(self):
        self.index.reserve(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5), 1)

        self.assertTrue(self.index.has_conflict(self.equipment_id, date(2025, 6, 5), date(2025, 6, 7)))
        self.assertTrue(self.index.has_conflict(self.equipment_id, date(2025, 5, 28), date(2025, 6, 1)))
        self.assertFalse(self.index.has_conflict(self.equipment_id, date(2025, 6, 6), date(2025, 6, 9)))
        self.assertFalse(self.index.has_conflict(self.equipment_id + 1, date(2025, 6, 1), date(2025, 6, 5)))

        with self.assertRaises(SlotConflict):
            self.index.reserve(self.equipment_id, date(2025, 6, 3), date(2025, 6, 7), 2)

    def test_release_frees_range_and_is_idempotent(self):
        self.index.reserve(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5), 1)

        self.assertTrue(self.index.release(self.equipment_id, 1))
        self.assertFalse(self.index.release(self.equipment_id, 1))
        self.assertEqual(self.index.reserved_ranges(self.equipment_id), [])

        self.index.reserve(self.equipment_id, date(2025, 6, 3), date(2025, 6, 7), 2)
        self.assertEqual(
            self.index.reserved_ranges(self.equipment_id),
            [(date(2025, 6, 3), date(2025, 6, 7), 2)],
        )

    def test_conflicts_can_exclude_own_request(self):
        self.index.reserve(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5), 1)

        self.assertEqual(self.index.conflicts(self.equipment_id, date(2025, 6, 1), date(2025, 6, 5), 1), [])

    def test_inverted_range_is_rejected(self):
        with self.assertRaises(InvalidDateRange):
            self.index.conflicts(self.equipment_id, date(2025, 6, 5), date(2025, 6, 1))

    def test_day_listing_splits_available_and_unavailable_days(self):
        self.index.reserve(self.equipment_id, date(2025, 6, 2), date(2025, 6, 3), 7)

        listing = self.index.day_listing(self.equipment_id, date(2025, 6, 1), date(2025, 6, 4))

        self.assertFalse(listing["isAvailable"])
        self.assertEqual(listing["unavailableDates"], ["2025-06-02", "2025-06-03"])
        self.assertEqual(listing["availableDates"], ["2025-06-01", "2025-06-04"])
        self.assertEqual(listing["conflicts"][0]["rentalRequestID"], 7)


class EquipmentLockRegistryTests(unittest.TestCase):
    def test_same_equipment_shares_one_lock(self):
        registry = EquipmentLockRegistry()

        self.assertIs(registry.lock_for(3), registry.lock_for(3))
        self.assertIsNot(registry.lock_for(3), registry.lock_for(4))

    def test_hold_serializes_callers(self):
        registry = EquipmentLockRegistry()
        inside = []
        overlaps = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            with registry.hold(9):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(len(inside))
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(overlaps, [])


if __name__ == "__main__":
    unittest.main()
