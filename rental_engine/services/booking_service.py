from __future__ import annotations

import json
import logging
from collections.abc import Callable
from contextlib import contextmanager
from datetime import date

from sqlalchemy.orm import sessionmaker

from rental_engine.models.rental_models import Equipment, HandoverDirection, RentalRequest, RentalStatus
from rental_engine.services.availability_index import AvailabilityIndex, EquipmentLockRegistry
from rental_engine.services.clock import utc_today, utcnow
from rental_engine.services.errors import (
    ActionNotPermitted,
    BookingError,
    EquipmentUnavailable,
    InvalidDateRange,
    InvalidRequestData,
    InvalidTransition,
    RequestNotFound,
    SlotConflict,
    StorageUnavailable,
    TRANSIENT_STORAGE_ERRORS,
)
from rental_engine.services.handover_tokens import (
    DEFAULT_APP_URL,
    DEFAULT_QR_SERVICE_URL,
    HandoverTokenService,
    clear_request_token,
)
from rental_engine.services.lifecycle import (
    TOKEN_PHASES,
    Actor,
    ActorRole,
    ensure_actor_allowed,
    normalize_status,
    transition,
)
from rental_engine.services.notifications import (
    PICKUP_CONFIRMED,
    PICKUP_READY,
    RENTAL_RETURNED,
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    REQUEST_REJECTED,
    emit_notification,
)
from rental_engine.services.rate_table import price
from rental_engine.services.rental_service import format_request_number
from rental_engine.services.repository import RentalRepository, SqlAlchemyRentalRepository

BOOKING_LOGGER = logging.getLogger("rental_engine.booking")
MAX_PAGE_SIZE = 100


def _page_window(page: int, limit: int) -> tuple[int, int]:
    return max(1, int(page or 1)), max(1, min(MAX_PAGE_SIZE, int(limit or 10)))


def _pagination(page: int, limit: int, total: int) -> dict:
    return {"page": page, "limit": limit, "total": total, "totalPages": (total + limit - 1) // limit}


class BookingOrchestrator:
    """Entry point for every booking operation.

    Each public method runs as one unit of work: the status change, the
    availability index mutation, token issuance, audit rows and outbox
    notifications commit together or not at all. Mutations of a request
    are serialized per equipment through an in-process lock, backed by
    ``SELECT ... FOR UPDATE`` on databases that support it.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        app_url: str = DEFAULT_APP_URL,
        qr_service_url: str = DEFAULT_QR_SERVICE_URL,
        lock_registry: EquipmentLockRegistry | None = None,
        today_provider: Callable[[], date] = utc_today,
    ):
        self.session_factory = session_factory
        self.app_url = app_url
        self.qr_service_url = qr_service_url
        self.locks = lock_registry or EquipmentLockRegistry()
        self.today_provider = today_provider

    # -- plumbing ---------------------------------------------------------

    @contextmanager
    def _unit_of_work(self):
        db = self.session_factory()
        try:
            yield SqlAlchemyRentalRepository(db)
            db.commit()
        except BookingError:
            db.rollback()
            raise
        except TRANSIENT_STORAGE_ERRORS as exc:
            db.rollback()
            BOOKING_LOGGER.error("Storage unavailable: %s", exc.__class__.__name__)
            raise StorageUnavailable() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _tokens(self, repository: RentalRepository) -> HandoverTokenService:
        return HandoverTokenService(repository, self.app_url, self.qr_service_url)

    @staticmethod
    def _require_request(repository: RentalRepository, request_id: int, for_update: bool = False) -> RentalRequest:
        rental_request = repository.get_request(request_id, for_update=for_update)
        if rental_request is None:
            raise RequestNotFound()
        return rental_request

    @staticmethod
    def _require_equipment(repository: RentalRepository, equipment_id: int, for_update: bool = False) -> Equipment:
        equipment = repository.get_equipment(equipment_id, for_update=for_update)
        if equipment is None:
            raise RequestNotFound("Equipment not found.")
        return equipment

    def _equipment_id_for_request(self, request_id: int) -> int:
        with self._unit_of_work() as repository:
            return int(self._require_request(repository, request_id).EquipmentID)

    def _equipment_id_for_token(self, token_value: str) -> int:
        with self._unit_of_work() as repository:
            token = self._tokens(repository).lookup(token_value)
            return int(self._require_request(repository, token.RentalRequestID).EquipmentID)

    def _validate_range(self, start_date: date, end_date: date) -> None:
        if start_date is None or end_date is None:
            raise InvalidDateRange("Start and end dates are required.")
        if end_date < start_date:
            raise InvalidDateRange("End date must be on or after the start date.")
        if start_date < self.today_provider():
            raise InvalidDateRange("Rental dates cannot be in the past.")

    @staticmethod
    def _ensure_manager(actor: Actor, equipment: Equipment) -> None:
        if actor.role == ActorRole.ADMIN:
            return
        if actor.role == ActorRole.OWNER and int(equipment.OwnerID) == int(actor.actor_id):
            return
        raise ActionNotPermitted("Only the owner of this equipment can manage handover codes.")

    # -- read side --------------------------------------------------------

    def quote(self, equipment_id: int, start_date: date, end_date: date) -> dict:
        self._validate_range(start_date, end_date)
        with self._unit_of_work() as repository:
            equipment = self._require_equipment(repository, equipment_id)
            if not equipment.IsActive or not equipment.IsAvailable:
                raise EquipmentUnavailable()
            _, breakdown = price(equipment, start_date, end_date)
            return {"equipmentID": equipment_id, "startDate": start_date, "endDate": end_date, **breakdown.to_dict()}

    def check_availability(self, equipment_id: int, start_date: date, end_date: date) -> dict:
        if end_date < start_date:
            raise InvalidDateRange("End date must be on or after the start date.")
        with self._unit_of_work() as repository:
            equipment = self._require_equipment(repository, equipment_id)
            listing = AvailabilityIndex(repository).day_listing(equipment_id, start_date, end_date)
            listing["isListed"] = bool(equipment.IsActive and equipment.IsAvailable)
            return listing

    def list_available_equipment(
        self, start_date: date, end_date: date, page: int = 1, limit: int = 10
    ) -> tuple[list[dict], dict]:
        if start_date is None or end_date is None:
            raise InvalidDateRange("Start and end dates are required.")
        if end_date < start_date:
            raise InvalidDateRange("End date must be on or after the start date.")
        page, limit = _page_window(page, limit)
        with self._unit_of_work() as repository:
            rows, total = repository.search_listed_equipment(offset=(page - 1) * limit, limit=limit)
            index = AvailabilityIndex(repository)
            data = []
            for equipment in rows:
                listing = index.day_listing(equipment.EquipmentID, start_date, end_date)
                data.append(
                    {
                        "equipmentID": equipment.EquipmentID,
                        "equipmentName": equipment.EquipmentName,
                        "ownerID": equipment.OwnerID,
                        "dailyRate": equipment.DailyRate,
                        "weeklyRate": equipment.WeeklyRate,
                        "monthlyRate": equipment.MonthlyRate,
                        "deliveryFee": equipment.DeliveryFee,
                        "securityDeposit": equipment.SecurityDeposit,
                        "isAvailable": listing["isAvailable"],
                        "availableDates": listing["availableDates"],
                        "unavailableDates": listing["unavailableDates"],
                    }
                )
        return data, _pagination(page, limit, total)

    def get_request(self, request_id: int) -> RentalRequest:
        with self._unit_of_work() as repository:
            return self._require_request(repository, request_id)

    def get_request_for(self, actor: Actor, request_id: int) -> RentalRequest:
        """Load a request only if the actor is one of its parties or an admin."""
        with self._unit_of_work() as repository:
            rental_request = self._require_request(repository, request_id)
            if actor.role == ActorRole.ADMIN:
                return rental_request
            if actor.role == ActorRole.FARMER and int(rental_request.FarmerID) == int(actor.actor_id):
                return rental_request
            equipment = repository.get_equipment(rental_request.EquipmentID)
            if actor.role == ActorRole.OWNER and equipment is not None and int(equipment.OwnerID) == int(actor.actor_id):
                return rental_request
        raise RequestNotFound()

    def list_requests(
        self,
        farmer_id: int | None = None,
        equipment_id: int | None = None,
        status: RentalStatus | str | None = None,
        page: int = 1,
        limit: int = 10,
        owner_id: int | None = None,
    ) -> tuple[list[RentalRequest], dict]:
        page, limit = _page_window(page, limit)
        wanted_status = None
        if status:
            try:
                wanted_status = normalize_status(status)
            except InvalidTransition as exc:
                raise InvalidRequestData(f"Unknown status filter: {status}") from exc
        with self._unit_of_work() as repository:
            rows, total = repository.search_requests(
                farmer_id=farmer_id,
                equipment_id=equipment_id,
                status=wanted_status,
                owner_id=owner_id,
                offset=(page - 1) * limit,
                limit=limit,
            )
        return rows, _pagination(page, limit, total)

    # -- lifecycle --------------------------------------------------------

    def create_request(
        self,
        actor: Actor,
        equipment_id: int,
        start_date: date,
        end_date: date,
        delivery_address: str,
        receiver_name: str | None = None,
        receiver_phone: str | None = None,
        additional_notes: str | None = None,
    ) -> RentalRequest:
        if actor.role != ActorRole.FARMER:
            raise ActionNotPermitted("Only farmers can request equipment.")
        self._validate_range(start_date, end_date)
        address = (delivery_address or "").strip()
        if not address:
            raise InvalidRequestData("A delivery address is required.")

        with self._unit_of_work() as repository:
            equipment = self._require_equipment(repository, equipment_id)
            if not equipment.IsActive or not equipment.IsAvailable:
                raise EquipmentUnavailable()
            total_amount, breakdown = price(equipment, start_date, end_date)

            now = utcnow()
            rental_request = RentalRequest(
                EquipmentID=equipment_id,
                FarmerID=actor.actor_id,
                StartDate=start_date,
                EndDate=end_date,
                RentalDuration=breakdown.days,
                RentalCost=breakdown.rental_cost,
                DeliveryFee=breakdown.delivery_fee,
                SecurityDeposit=breakdown.security_deposit,
                TotalAmount=total_amount,
                PriceBreakdown=json.dumps(breakdown.to_dict()),
                ReceiverName=receiver_name,
                ReceiverPhone=receiver_phone,
                DeliveryAddress=address,
                AdditionalNotes=additional_notes,
                Status=RentalStatus.PENDING,
                RequestNumber="TEMP",
                CreatedDate=now,
                UpdatedDate=now,
            )
            repository.add_request(rental_request)
            rental_request.RequestNumber = format_request_number(rental_request.RentalRequestID)

            if AvailabilityIndex(repository).has_conflict(equipment_id, start_date, end_date):
                BOOKING_LOGGER.warning(
                    "Request %s overlaps an existing reservation on equipment=%s; approval will be refused while it stands",
                    rental_request.RequestNumber,
                    equipment_id,
                )
            repository.add_audit(
                "RentalRequest",
                rental_request.RentalRequestID,
                "CreateRequest",
                f"Equipment {equipment_id} {start_date.isoformat()}..{end_date.isoformat()} total={total_amount}",
                actor.actor_id,
            )

        BOOKING_LOGGER.info(
            "Created request=%s farmer=%s equipment=%s total=%s",
            rental_request.RentalRequestID,
            actor.actor_id,
            equipment_id,
            total_amount,
        )
        return rental_request

    def approve(self, actor: Actor, request_id: int, admin_notes: str | None = None) -> RentalRequest:
        equipment_id = self._equipment_id_for_request(request_id)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            rental_request = self._require_request(repository, request_id, for_update=True)
            equipment = self._require_equipment(repository, equipment_id, for_update=True)
            ensure_actor_allowed(actor, rental_request, equipment, RentalStatus.APPROVED)

            now = utcnow()
            transition(rental_request, RentalStatus.APPROVED, now)
            try:
                AvailabilityIndex(repository).reserve(
                    equipment_id, rental_request.StartDate, rental_request.EndDate, request_id
                )
            except SlotConflict:
                # Rolled back with the unit of work; the request stays pending.
                BOOKING_LOGGER.warning("Approval of request=%s refused, slot already taken", request_id)
                raise
            rental_request.DecidedBy = actor.actor_id
            rental_request.DecidedAt = now
            if admin_notes:
                rental_request.AdminNotes = admin_notes

            tokens = self._tokens(repository)
            pickup = tokens.issue(rental_request, HandoverDirection.PICKUP, now)
            repository.add_audit("RentalRequest", request_id, "Approve", f"Approved by {actor.role.value} {actor.actor_id}", actor.actor_id)
            emit_notification(
                repository,
                rental_request,
                REQUEST_APPROVED,
                f"Your rental request {rental_request.RequestNumber} has been approved.",
            )
            emit_notification(
                repository,
                rental_request,
                PICKUP_READY,
                f"Pickup for {rental_request.RequestNumber} on {rental_request.StartDate.isoformat()}. "
                f"Pickup verification: {tokens.verification_url(pickup.Token, HandoverDirection.PICKUP)}",
            )

        BOOKING_LOGGER.info("Request=%s pending -> approved by %s=%s", request_id, actor.role.value, actor.actor_id)
        return rental_request

    def reject(self, actor: Actor, request_id: int, reason: str, admin_notes: str | None = None) -> RentalRequest:
        cleaned_reason = (reason or "").strip()
        if not cleaned_reason:
            raise InvalidRequestData("A rejection reason is required.")

        equipment_id = self._equipment_id_for_request(request_id)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            rental_request = self._require_request(repository, request_id, for_update=True)
            equipment = self._require_equipment(repository, equipment_id)
            ensure_actor_allowed(actor, rental_request, equipment, RentalStatus.REJECTED)

            now = utcnow()
            transition(rental_request, RentalStatus.REJECTED, now)
            rental_request.RejectionReason = cleaned_reason
            rental_request.DecidedBy = actor.actor_id
            rental_request.DecidedAt = now
            if admin_notes:
                rental_request.AdminNotes = admin_notes
            repository.add_audit("RentalRequest", request_id, "Reject", f"Rejected: {cleaned_reason}", actor.actor_id)
            emit_notification(
                repository,
                rental_request,
                REQUEST_REJECTED,
                f"Your rental request {rental_request.RequestNumber} has been rejected. Reason: {cleaned_reason}",
            )

        BOOKING_LOGGER.info("Request=%s pending -> rejected by %s=%s", request_id, actor.role.value, actor.actor_id)
        return rental_request

    def cancel(self, actor: Actor, request_id: int, reason: str | None = None) -> RentalRequest:
        equipment_id = self._equipment_id_for_request(request_id)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            rental_request = self._require_request(repository, request_id, for_update=True)
            equipment = self._require_equipment(repository, equipment_id)
            ensure_actor_allowed(actor, rental_request, equipment, RentalStatus.CANCELLED)

            current = normalize_status(rental_request.Status)
            if current == RentalStatus.APPROVED and self.today_provider() >= rental_request.StartDate:
                raise InvalidTransition("Approved requests can only be cancelled before the rental start date.")

            now = utcnow()
            previous = transition(rental_request, RentalStatus.CANCELLED, now)
            rental_request.CancelledBy = actor.actor_id
            rental_request.CancelledAt = now
            if previous == RentalStatus.APPROVED:
                AvailabilityIndex(repository).release(equipment_id, request_id, now)
                self._tokens(repository).revoke_outstanding(request_id, at=now)
                clear_request_token(rental_request, HandoverDirection.PICKUP)

            details = f"Cancelled from {previous.value}"
            if reason:
                details = f"{details}: {reason.strip()}"
            repository.add_audit("RentalRequest", request_id, "Cancel", details, actor.actor_id)
            emit_notification(
                repository,
                rental_request,
                REQUEST_CANCELLED,
                f"Rental request {rental_request.RequestNumber} has been cancelled.",
                recipient_id=equipment.OwnerID if actor.role == ActorRole.FARMER else rental_request.FarmerID,
            )

        BOOKING_LOGGER.info("Request=%s %s -> cancelled by %s=%s", request_id, previous.value, actor.role.value, actor.actor_id)
        return rental_request

    def reissue_token(
        self,
        actor: Actor,
        request_id: int,
        direction: HandoverDirection = HandoverDirection.PICKUP,
    ) -> RentalRequest:
        equipment_id = self._equipment_id_for_request(request_id)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            rental_request = self._require_request(repository, request_id, for_update=True)
            equipment = self._require_equipment(repository, equipment_id)
            self._ensure_manager(actor, equipment)

            phase = TOKEN_PHASES[direction]
            if normalize_status(rental_request.Status) != phase:
                raise InvalidTransition(f"A {direction.value} code can only be issued while the request is {phase.value}.")

            tokens = self._tokens(repository)
            token = tokens.issue(rental_request, direction)
            repository.add_audit("RentalRequest", request_id, "ReissueToken", f"New {direction.value} code issued", actor.actor_id)
            if direction == HandoverDirection.PICKUP:
                emit_notification(
                    repository,
                    rental_request,
                    PICKUP_READY,
                    f"New pickup code for {rental_request.RequestNumber}: "
                    f"{tokens.verification_url(token.Token, direction)}",
                )

        return rental_request

    def mark_picked_up(self, token_value: str) -> RentalRequest:
        equipment_id = self._equipment_id_for_token(token_value)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            tokens = self._tokens(repository)
            request_id = tokens.consume(token_value, HandoverDirection.PICKUP)
            rental_request = self._require_request(repository, request_id, for_update=True)

            now = utcnow()
            transition(rental_request, RentalStatus.ACTIVE, now)
            rental_request.PickupConfirmedAt = now
            return_token = tokens.issue(rental_request, HandoverDirection.RETURN, now)
            repository.add_audit("RentalRequest", request_id, "Pickup", "Pickup code scanned", None)
            emit_notification(
                repository,
                rental_request,
                PICKUP_CONFIRMED,
                f"Pickup confirmed for {rental_request.RequestNumber}. "
                f"Return verification: {tokens.verification_url(return_token.Token, HandoverDirection.RETURN)}",
            )

        BOOKING_LOGGER.info("Request=%s approved -> active via pickup code", request_id)
        return rental_request

    def mark_returned(self, token_value: str) -> RentalRequest:
        equipment_id = self._equipment_id_for_token(token_value)
        with self.locks.hold(equipment_id), self._unit_of_work() as repository:
            request_id = self._tokens(repository).consume(token_value, HandoverDirection.RETURN)
            rental_request = self._require_request(repository, request_id, for_update=True)

            now = utcnow()
            transition(rental_request, RentalStatus.RETURNED, now)
            rental_request.ReturnConfirmedAt = now
            AvailabilityIndex(repository).release(equipment_id, request_id, now)
            repository.add_audit("RentalRequest", request_id, "Return", "Return code scanned", None)
            emit_notification(
                repository,
                rental_request,
                RENTAL_RETURNED,
                f"Return confirmed for {rental_request.RequestNumber}. Thank you for using our service.",
            )

        BOOKING_LOGGER.info("Request=%s active -> returned via return code", request_id)
        return rental_request
