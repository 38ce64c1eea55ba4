from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from rental_engine.models.rental_models import (
    AuditLog,
    AvailabilityReservation,
    Equipment,
    HandoverDirection,
    HandoverToken,
    NotificationQueue,
    RentalRequest,
    RentalStatus,
)
from rental_engine.services.clock import utcnow


class RentalRepository(ABC):
    """Persistence boundary of the booking engine.

    One instance is bound to one unit of work; nothing here commits.
    """

    @abstractmethod
    def get_equipment(self, equipment_id: int, for_update: bool = False) -> Equipment | None: ...

    @abstractmethod
    def get_request(self, request_id: int, for_update: bool = False) -> RentalRequest | None: ...

    @abstractmethod
    def add_request(self, rental_request: RentalRequest) -> RentalRequest: ...

    @abstractmethod
    def search_requests(
        self,
        farmer_id: int | None = None,
        owner_id: int | None = None,
        equipment_id: int | None = None,
        status: RentalStatus | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[RentalRequest], int]: ...

    @abstractmethod
    def search_listed_equipment(self, offset: int = 0, limit: int = 10) -> tuple[list[Equipment], int]: ...

    @abstractmethod
    def requests_ending_between(self, status: RentalStatus, first_day: date, last_day: date) -> list[RentalRequest]: ...

    @abstractmethod
    def overlapping_reservations(
        self,
        equipment_id: int,
        start_date: date,
        end_date: date,
        exclude_request_id: int | None = None,
    ) -> list[AvailabilityReservation]: ...

    @abstractmethod
    def active_reservations(self, equipment_id: int) -> list[AvailabilityReservation]: ...

    @abstractmethod
    def get_active_reservation(self, equipment_id: int, request_id: int) -> AvailabilityReservation | None: ...

    @abstractmethod
    def add_reservation(self, reservation: AvailabilityReservation) -> AvailabilityReservation: ...

    @abstractmethod
    def get_token(self, token_value: str) -> HandoverToken | None: ...

    @abstractmethod
    def outstanding_tokens(self, request_id: int, direction: HandoverDirection | None = None) -> list[HandoverToken]: ...

    @abstractmethod
    def add_token(self, token: HandoverToken) -> HandoverToken: ...

    @abstractmethod
    def mark_token_consumed(self, token: HandoverToken, consumed_at: datetime) -> bool: ...

    @abstractmethod
    def add_notification(self, notification: NotificationQueue) -> None: ...

    @abstractmethod
    def has_notification(self, request_id: int, notification_type: str) -> bool: ...

    @abstractmethod
    def pending_notifications(self, limit: int = 100) -> list[NotificationQueue]: ...

    @abstractmethod
    def add_audit(self, entity_type: str, entity_id: int, action: str, details: str | None, user_id: int | None) -> None: ...

    @abstractmethod
    def flush(self) -> None: ...


class SqlAlchemyRentalRepository(RentalRepository):
    def __init__(self, db: Session):
        self.db = db

    def get_equipment(self, equipment_id: int, for_update: bool = False) -> Equipment | None:
        stmt = select(Equipment).where(Equipment.EquipmentID == equipment_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def get_request(self, request_id: int, for_update: bool = False) -> RentalRequest | None:
        stmt = select(RentalRequest).where(RentalRequest.RentalRequestID == request_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalars().first()

    def add_request(self, rental_request: RentalRequest) -> RentalRequest:
        self.db.add(rental_request)
        self.db.flush()
        return rental_request

    def search_requests(
        self,
        farmer_id: int | None = None,
        owner_id: int | None = None,
        equipment_id: int | None = None,
        status: RentalStatus | None = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[RentalRequest], int]:
        stmt = select(RentalRequest)
        if owner_id is not None:
            stmt = stmt.join(Equipment, Equipment.EquipmentID == RentalRequest.EquipmentID).where(
                Equipment.OwnerID == owner_id
            )
        if farmer_id is not None:
            stmt = stmt.where(RentalRequest.FarmerID == farmer_id)
        if equipment_id is not None:
            stmt = stmt.where(RentalRequest.EquipmentID == equipment_id)
        if status is not None:
            stmt = stmt.where(RentalRequest.Status == status)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        rows = self.db.execute(
            stmt.order_by(RentalRequest.CreatedDate.desc(), RentalRequest.RentalRequestID.desc())
            .offset(offset)
            .limit(limit)
        ).scalars().all()
        return list(rows), int(total)

    def search_listed_equipment(self, offset: int = 0, limit: int = 10) -> tuple[list[Equipment], int]:
        stmt = select(Equipment).where(Equipment.IsActive.is_(True)).where(Equipment.IsAvailable.is_(True))
        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar() or 0
        rows = self.db.execute(stmt.order_by(Equipment.EquipmentID).offset(offset).limit(limit)).scalars().all()
        return list(rows), int(total)

    def requests_ending_between(self, status: RentalStatus, first_day: date, last_day: date) -> list[RentalRequest]:
        stmt = (
            select(RentalRequest)
            .where(RentalRequest.Status == status)
            .where(RentalRequest.EndDate >= first_day)
            .where(RentalRequest.EndDate <= last_day)
            .order_by(RentalRequest.EndDate)
        )
        return list(self.db.execute(stmt).scalars().all())

    def overlapping_reservations(
        self,
        equipment_id: int,
        start_date: date,
        end_date: date,
        exclude_request_id: int | None = None,
    ) -> list[AvailabilityReservation]:
        stmt = (
            select(AvailabilityReservation)
            .where(AvailabilityReservation.EquipmentID == equipment_id)
            .where(AvailabilityReservation.IsActive.is_(True))
            .where(AvailabilityReservation.StartDate <= end_date)
            .where(AvailabilityReservation.EndDate >= start_date)
            .order_by(AvailabilityReservation.StartDate)
        )
        if exclude_request_id:
            stmt = stmt.where(AvailabilityReservation.RentalRequestID != exclude_request_id)
        return list(self.db.execute(stmt).scalars().all())

    def active_reservations(self, equipment_id: int) -> list[AvailabilityReservation]:
        stmt = (
            select(AvailabilityReservation)
            .where(AvailabilityReservation.EquipmentID == equipment_id)
            .where(AvailabilityReservation.IsActive.is_(True))
            .order_by(AvailabilityReservation.StartDate)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_active_reservation(self, equipment_id: int, request_id: int) -> AvailabilityReservation | None:
        stmt = (
            select(AvailabilityReservation)
            .where(AvailabilityReservation.EquipmentID == equipment_id)
            .where(AvailabilityReservation.RentalRequestID == request_id)
            .where(AvailabilityReservation.IsActive.is_(True))
        )
        return self.db.execute(stmt).scalars().first()

    def add_reservation(self, reservation: AvailabilityReservation) -> AvailabilityReservation:
        self.db.add(reservation)
        self.db.flush()
        return reservation

    def get_token(self, token_value: str) -> HandoverToken | None:
        return self.db.execute(
            select(HandoverToken).where(HandoverToken.Token == token_value)
        ).scalars().first()

    def outstanding_tokens(self, request_id: int, direction: HandoverDirection | None = None) -> list[HandoverToken]:
        stmt = (
            select(HandoverToken)
            .where(HandoverToken.RentalRequestID == request_id)
            .where(HandoverToken.ConsumedAt.is_(None))
            .where(HandoverToken.RevokedAt.is_(None))
        )
        if direction is not None:
            stmt = stmt.where(HandoverToken.Direction == direction)
        return list(self.db.execute(stmt).scalars().all())

    def add_token(self, token: HandoverToken) -> HandoverToken:
        self.db.add(token)
        self.db.flush()
        return token

    def mark_token_consumed(self, token: HandoverToken, consumed_at: datetime) -> bool:
        # Conditional update: of two racing consumers only one sees rowcount 1.
        result = self.db.execute(
            update(HandoverToken)
            .where(HandoverToken.TokenID == token.TokenID)
            .where(HandoverToken.ConsumedAt.is_(None))
            .where(HandoverToken.RevokedAt.is_(None))
            .values(ConsumedAt=consumed_at)
            .execution_options(synchronize_session=False)
        )
        self.db.expire(token, ["ConsumedAt"])
        return result.rowcount == 1

    def add_notification(self, notification: NotificationQueue) -> None:
        self.db.add(notification)

    def has_notification(self, request_id: int, notification_type: str) -> bool:
        found = self.db.execute(
            select(NotificationQueue.NotificationID)
            .where(NotificationQueue.RentalRequestID == request_id)
            .where(NotificationQueue.NotificationType == notification_type)
        ).first()
        return found is not None

    def pending_notifications(self, limit: int = 100) -> list[NotificationQueue]:
        stmt = (
            select(NotificationQueue)
            .where(NotificationQueue.SentAt.is_(None))
            .order_by(NotificationQueue.NotificationID)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_audit(self, entity_type: str, entity_id: int, action: str, details: str | None, user_id: int | None) -> None:
        self.db.add(
            AuditLog(
                EntityType=entity_type,
                EntityID=entity_id,
                Action=action,
                Details=details,
                UserID=user_id,
                CreatedAt=utcnow(),
            )
        )

    def flush(self) -> None:
        self.db.flush()
