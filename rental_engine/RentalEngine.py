import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from dotenv import load_dotenv
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from rental_engine.db.base import Base
from rental_engine.db.deps import get_rental_db
from rental_engine.db.session import SessionLocalRental, engine_rental
from rental_engine.models.rental_models import HandoverDirection
from rental_engine.schemas.rentals import (
    ApproveRequest,
    CancelRequest,
    CreateRentalRequestDto,
    HandoverScanRequest,
    NotificationRunRequest,
    RejectRequest,
    ReissueTokenRequest,
)
from rental_engine.services.booking_service import BookingOrchestrator
from rental_engine.services.errors import BookingError
from rental_engine.services.handover_tokens import DEFAULT_APP_URL, DEFAULT_QR_SERVICE_URL
from rental_engine.services.lifecycle import Actor, ActorRole, normalize_role
from rental_engine.services.notifications import NotificationDispatcher, sender_from_env
from rental_engine.services.rental_service import serialize_rental_request

API_LOGGER = logging.getLogger("rental_engine.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _env_flag(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


APP_URL = (os.environ.get("RENTAL_ENGINE_APP_URL") or DEFAULT_APP_URL).strip()
QR_SERVICE_URL = (os.environ.get("RENTAL_ENGINE_QR_SERVICE_URL") or DEFAULT_QR_SERVICE_URL).strip()
AUTO_CREATE_TABLES = _env_flag("RENTAL_ENGINE_AUTO_CREATE_TABLES", "true")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if AUTO_CREATE_TABLES:
        Base.metadata.create_all(bind=engine_rental)
    yield


app = FastAPI(title="Equipment Rental Booking Engine", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:8081,http://localhost:8081",
)
_CORS_ALLOW_CREDENTIALS = _env_flag("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.booking_orchestrator = BookingOrchestrator(
    SessionLocalRental,
    app_url=APP_URL,
    qr_service_url=QR_SERVICE_URL,
)
app.state.notification_dispatcher = NotificationDispatcher(SessionLocalRental, sender_from_env())


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        API_LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def get_booking_orchestrator(request: Request) -> BookingOrchestrator:
    return request.app.state.booking_orchestrator


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.notification_dispatcher


def _require_actor_or_401(actor_id: str | None, actor_role: str | None) -> Actor:
    if not actor_id or not actor_role:
        raise HTTPException(status_code=401, detail="Missing actor identity.")
    try:
        identifier = int(str(actor_id).strip())
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid actor identity.") from exc
    return Actor(actor_id=identifier, role=normalize_role(actor_role))


def _require_admin_or_403(actor: Actor) -> Actor:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin rights required.")
    return actor


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        API_LOGGER.error("Health check failed: %s", exc.__class__.__name__)
        raise HTTPException(status_code=503, detail="db_unavailable") from exc


@app.get("/api/equipment/available")
def list_available_equipment(
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    rows, pagination = orchestrator.list_available_equipment(start_date, end_date, page=page, limit=limit)
    return {"data": rows, "pagination": pagination}


@app.get("/api/equipment/{equipment_id}/availability")
def get_equipment_availability(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return orchestrator.check_availability(equipment_id, start_date, end_date)


@app.get("/api/equipment/{equipment_id}/quote")
def get_equipment_quote(
    equipment_id: int,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return orchestrator.quote(equipment_id, start_date, end_date)


@app.post("/api/requests", status_code=201)
def create_rental_request(
    payload: CreateRentalRequestDto,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    rental_request = orchestrator.create_request(
        actor,
        payload.equipmentID,
        payload.startDate,
        payload.endDate,
        payload.deliveryAddress,
        receiver_name=payload.receiverName,
        receiver_phone=payload.receiverPhone,
        additional_notes=payload.additionalNotes,
    )
    return serialize_rental_request(rental_request)


@app.get("/api/requests")
def list_rental_requests(
    farmer_id: int | None = Query(None, alias="farmerID"),
    equipment_id: int | None = Query(None, alias="equipmentID"),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    owner_id = None
    if actor.role == ActorRole.FARMER:
        farmer_id = actor.actor_id
    elif actor.role == ActorRole.OWNER:
        owner_id = actor.actor_id
    rows, pagination = orchestrator.list_requests(
        farmer_id=farmer_id,
        equipment_id=equipment_id,
        status=status,
        page=page,
        limit=limit,
        owner_id=owner_id,
    )
    return {"data": [serialize_rental_request(row) for row in rows], "pagination": pagination}


@app.get("/api/requests/{request_id}")
def get_rental_request(
    request_id: int,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    return serialize_rental_request(orchestrator.get_request_for(actor, request_id))


@app.post("/api/requests/{request_id}/approve")
def approve_rental_request(
    request_id: int,
    payload: ApproveRequest | None = Body(None),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    admin_notes = payload.adminNotes if payload else None
    return serialize_rental_request(orchestrator.approve(actor, request_id, admin_notes=admin_notes))


@app.post("/api/requests/{request_id}/reject")
def reject_rental_request(
    request_id: int,
    payload: RejectRequest,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    rental_request = orchestrator.reject(actor, request_id, payload.reason, admin_notes=payload.adminNotes)
    return serialize_rental_request(rental_request)


@app.post("/api/requests/{request_id}/cancel")
def cancel_rental_request(
    request_id: int,
    payload: CancelRequest | None = Body(None),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    reason = payload.reason if payload else None
    return serialize_rental_request(orchestrator.cancel(actor, request_id, reason=reason))


@app.post("/api/requests/{request_id}/tokens")
def reissue_handover_token(
    request_id: int,
    payload: ReissueTokenRequest | None = Body(None),
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    actor = _require_actor_or_401(x_actor_id, x_actor_role)
    direction = HandoverDirection(payload.direction if payload else "pickup")
    return serialize_rental_request(orchestrator.reissue_token(actor, request_id, direction))


@app.post("/api/handover/pickup")
def scan_pickup_token(
    payload: HandoverScanRequest,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return serialize_rental_request(orchestrator.mark_picked_up(payload.token))


@app.post("/api/handover/return")
def scan_return_token(
    payload: HandoverScanRequest,
    orchestrator: BookingOrchestrator = Depends(get_booking_orchestrator),
):
    return serialize_rental_request(orchestrator.mark_returned(payload.token))


@app.post("/api/notifications/run")
def run_notifications(
    payload: NotificationRunRequest | None = Body(None),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    _require_admin_or_403(_require_actor_or_401(x_actor_id, x_actor_role))
    days_ahead = payload.returnDueDays if payload else 1
    queued = dispatcher.queue_return_due(days_ahead)
    result = dispatcher.run()
    return {"queuedReturnDue": queued, **result}


@app.get("/api/notifications/pending")
def get_pending_notifications(
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    x_actor_id: str | None = Header(None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(None, alias="X-Actor-Role"),
):
    _require_admin_or_403(_require_actor_or_401(x_actor_id, x_actor_role))
    return dispatcher.pending()
