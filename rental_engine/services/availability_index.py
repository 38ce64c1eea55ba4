from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta

from rental_engine.models.rental_models import AvailabilityReservation
from rental_engine.services.clock import utcnow
from rental_engine.services.errors import InvalidDateRange, SlotConflict
from rental_engine.services.repository import RentalRepository

AVAILABILITY_LOGGER = logging.getLogger("rental_engine.availability")


class EquipmentLockRegistry:
    """Hands out one mutex per equipment id; different equipment never contend."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def lock_for(self, equipment_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(int(equipment_id))
            if lock is None:
                lock = threading.Lock()
                self._locks[int(equipment_id)] = lock
            return lock

    @contextmanager
    def hold(self, equipment_id: int):
        lock = self.lock_for(equipment_id)
        with lock:
            yield


class AvailabilityIndex:
    def __init__(self, repository: RentalRepository):
        self.repository = repository

    def conflicts(
        self,
        equipment_id: int,
        start_date: date,
        end_date: date,
        exclude_request_id: int | None = None,
    ) -> list[AvailabilityReservation]:
        if end_date < start_date:
            raise InvalidDateRange("End date must be on or after the start date.")
        return self.repository.overlapping_reservations(equipment_id, start_date, end_date, exclude_request_id)

    def has_conflict(
        self,
        equipment_id: int,
        start_date: date,
        end_date: date,
        exclude_request_id: int | None = None,
    ) -> bool:
        return bool(self.conflicts(equipment_id, start_date, end_date, exclude_request_id))

    def reserved_ranges(self, equipment_id: int) -> list[tuple[date, date, int]]:
        return [
            (row.StartDate, row.EndDate, row.RentalRequestID)
            for row in self.repository.active_reservations(equipment_id)
        ]

    def reserve(self, equipment_id: int, start_date: date, end_date: date, request_id: int) -> AvailabilityReservation:
        # Caller holds the equipment lock for the whole unit of work.
        overlapping = self.conflicts(equipment_id, start_date, end_date)
        if overlapping:
            AVAILABILITY_LOGGER.warning(
                "Slot conflict equipment=%s request=%s range=%s..%s blocked_by=%s",
                equipment_id,
                request_id,
                start_date,
                end_date,
                [row.RentalRequestID for row in overlapping],
            )
            raise SlotConflict()
        reservation = AvailabilityReservation(
            EquipmentID=equipment_id,
            RentalRequestID=request_id,
            StartDate=start_date,
            EndDate=end_date,
            IsActive=True,
            CreatedAt=utcnow(),
        )
        self.repository.add_reservation(reservation)
        AVAILABILITY_LOGGER.info(
            "Reserved equipment=%s request=%s range=%s..%s", equipment_id, request_id, start_date, end_date
        )
        return reservation

    def release(self, equipment_id: int, request_id: int, at: datetime | None = None) -> bool:
        reservation = self.repository.get_active_reservation(equipment_id, request_id)
        if reservation is None:
            return False
        # Row is kept for history; inactive rows never block.
        reservation.IsActive = False
        reservation.ReleasedAt = at or utcnow()
        self.repository.flush()
        AVAILABILITY_LOGGER.info("Released equipment=%s request=%s", equipment_id, request_id)
        return True

    def day_listing(self, equipment_id: int, start_date: date, end_date: date) -> dict:
        overlapping = self.conflicts(equipment_id, start_date, end_date)
        unavailable: set[date] = set()
        for row in overlapping:
            day = max(row.StartDate, start_date)
            last = min(row.EndDate, end_date)
            while day <= last:
                unavailable.add(day)
                day += timedelta(days=1)

        available_dates: list[str] = []
        unavailable_dates: list[str] = []
        day = start_date
        while day <= end_date:
            (unavailable_dates if day in unavailable else available_dates).append(day.isoformat())
            day += timedelta(days=1)

        return {
            "equipmentID": equipment_id,
            "startDate": start_date,
            "endDate": end_date,
            "isAvailable": not overlapping,
            "conflicts": [
                {"rentalRequestID": row.RentalRequestID, "startDate": row.StartDate, "endDate": row.EndDate}
                for row in overlapping
            ],
            "availableDates": available_dates,
            "unavailableDates": unavailable_dates,
        }
