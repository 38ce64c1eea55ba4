from datetime import date

from rental_engine.db.base import Base
from rental_engine.db.factory import build_engine, build_session_factory
from rental_engine.models.rental_models import Equipment
from rental_engine.services.booking_service import BookingOrchestrator
from rental_engine.services.clock import utcnow
from rental_engine.services.lifecycle import Actor, ActorRole

MEMORY_DB_URL = "sqlite+pysqlite:///:memory:"
TODAY = date(2025, 5, 1)

OWNER = Actor(actor_id=10, role=ActorRole.OWNER)
OTHER_OWNER = Actor(actor_id=11, role=ActorRole.OWNER)
FARMER = Actor(actor_id=20, role=ActorRole.FARMER)
OTHER_FARMER = Actor(actor_id=21, role=ActorRole.FARMER)
ADMIN = Actor(actor_id=1, role=ActorRole.ADMIN)


def build_test_database(db_url: str = MEMORY_DB_URL):
    engine = build_engine(db_url)
    Base.metadata.create_all(bind=engine)
    return engine, build_session_factory(engine)


def seed_equipment(session_factory, **overrides) -> int:
    now = utcnow()
    values = {
        "OwnerID": OWNER.actor_id,
        "EquipmentName": "Tractor 75HP",
        "DailyRate": 1000,
        "WeeklyRate": 6000,
        "MonthlyRate": None,
        "DeliveryFee": 500,
        "SecurityDeposit": 2000,
        "IsAvailable": True,
        "IsActive": True,
        "CreatedDate": now,
        "UpdatedDate": now,
    }
    values.update(overrides)
    db = session_factory()
    try:
        equipment = Equipment(**values)
        db.add(equipment)
        db.commit()
        return equipment.EquipmentID
    finally:
        db.close()


def build_orchestrator(session_factory, today: date = TODAY) -> BookingOrchestrator:
    return BookingOrchestrator(
        session_factory,
        app_url="http://rental.test",
        today_provider=lambda: today,
    )
