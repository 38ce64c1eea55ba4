import enum

from sqlalchemy import BigInteger, Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_engine.db.base import Base


class RentalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ACTIVE = "active"
    RETURNED = "returned"
    COMPLETED = "completed"


class HandoverDirection(str, enum.Enum):
    PICKUP = "pickup"
    RETURN = "return"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Equipment(Base):
    __tablename__ = "Equipment"

    EquipmentID = Column(Integer, primary_key=True)
    OwnerID = Column(Integer, nullable=False, index=True)
    EquipmentName = Column(String(255), nullable=False)
    # Money columns hold currency minor units.
    DailyRate = Column(BigInteger, nullable=False)
    WeeklyRate = Column(BigInteger)
    MonthlyRate = Column(BigInteger)
    DeliveryFee = Column(BigInteger, nullable=False, default=0)
    SecurityDeposit = Column(BigInteger, nullable=False, default=0)
    IsAvailable = Column(Boolean, nullable=False, default=True)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RentalRequests = relationship("RentalRequest", back_populates="Equipment")


class RentalRequest(Base):
    __tablename__ = "RentalRequests"

    RentalRequestID = Column(Integer, primary_key=True)
    RequestNumber = Column(String(50), nullable=False, default="TEMP")
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False, index=True)
    FarmerID = Column(Integer, nullable=False, index=True)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    RentalDuration = Column(Integer, nullable=False)
    RentalCost = Column(BigInteger, nullable=False)
    DeliveryFee = Column(BigInteger, nullable=False, default=0)
    SecurityDeposit = Column(BigInteger, nullable=False, default=0)
    TotalAmount = Column(BigInteger, nullable=False)
    PriceBreakdown = Column(String(2000))
    ReceiverName = Column(String(255))
    ReceiverPhone = Column(String(50))
    DeliveryAddress = Column(String(1000), nullable=False)
    AdditionalNotes = Column(String(1000))
    Status = Column(
        Enum(RentalStatus, name="rental_status", native_enum=False, length=20, values_callable=_enum_values),
        nullable=False,
        default=RentalStatus.PENDING,
    )
    AdminNotes = Column(String(1000))
    RejectionReason = Column(String(1000))
    DecidedBy = Column(Integer)
    DecidedAt = Column(DateTime)
    CancelledBy = Column(Integer)
    CancelledAt = Column(DateTime)
    PickupToken = Column(String(128))
    PickupQrCodeUrl = Column(String(2000))
    ReturnToken = Column(String(128))
    ReturnQrCodeUrl = Column(String(2000))
    PickupConfirmedAt = Column(DateTime)
    ReturnConfirmedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Equipment = relationship("Equipment", back_populates="RentalRequests")
    Reservation = relationship("AvailabilityReservation", back_populates="RentalRequest", uselist=False)
    HandoverTokens = relationship("HandoverToken", back_populates="RentalRequest")


class AvailabilityReservation(Base):
    __tablename__ = "AvailabilityReservations"
    __table_args__ = (
        Index("IX_AvailabilityReservations_Equipment_Active", "EquipmentID", "IsActive", "StartDate"),
    )

    ReservationID = Column(Integer, primary_key=True)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    RentalRequestID = Column(Integer, ForeignKey("RentalRequests.RentalRequestID"), nullable=False, unique=True)
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedAt = Column(DateTime, server_default=func.now())
    ReleasedAt = Column(DateTime)

    RentalRequest = relationship("RentalRequest", back_populates="Reservation")


class HandoverToken(Base):
    __tablename__ = "HandoverTokens"

    TokenID = Column(Integer, primary_key=True)
    Token = Column(String(128), nullable=False, unique=True)
    RentalRequestID = Column(Integer, ForeignKey("RentalRequests.RentalRequestID"), nullable=False, index=True)
    Direction = Column(
        Enum(HandoverDirection, name="handover_direction", native_enum=False, length=10, values_callable=_enum_values),
        nullable=False,
    )
    IssuedAt = Column(DateTime, nullable=False)
    ConsumedAt = Column(DateTime)
    RevokedAt = Column(DateTime)
    QrCodeUrl = Column(String(2000))

    RentalRequest = relationship("RentalRequest", back_populates="HandoverTokens")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalRequestID = Column(Integer)
    RecipientID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
