from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from collections.abc import Callable
from datetime import date, timedelta

from sqlalchemy.orm import sessionmaker

from rental_engine.models.rental_models import NotificationQueue, RentalRequest, RentalStatus
from rental_engine.services.clock import utc_today, utcnow
from rental_engine.services.errors import TRANSIENT_STORAGE_ERRORS, StorageUnavailable
from rental_engine.services.repository import RentalRepository, SqlAlchemyRentalRepository

NOTIFICATION_LOGGER = logging.getLogger("rental_engine.notifications")

REQUEST_APPROVED = "RequestApproved"
REQUEST_REJECTED = "RequestRejected"
REQUEST_CANCELLED = "RequestCancelled"
PICKUP_READY = "PickupReady"
PICKUP_CONFIRMED = "PickupConfirmed"
RETURN_DUE = "ReturnDue"
RENTAL_RETURNED = "RentalReturned"


class NotificationDeliveryError(RuntimeError):
    pass


def emit_notification(
    repository: RentalRepository,
    rental_request: RentalRequest,
    notification_type: str,
    message: str,
    recipient_id: int | None = None,
) -> None:
    # Outbox row: committed together with the transition, delivered later.
    repository.add_notification(
        NotificationQueue(
            RentalRequestID=rental_request.RentalRequestID,
            RecipientID=recipient_id if recipient_id is not None else rental_request.FarmerID,
            NotificationType=notification_type,
            Payload=message[:2000],
            Attempts=0,
            CreatedAt=utcnow(),
        )
    )


def serialize_notification(notification: NotificationQueue) -> dict:
    return {
        "notificationID": notification.NotificationID,
        "rentalRequestID": notification.RentalRequestID,
        "recipientID": notification.RecipientID,
        "type": notification.NotificationType,
        "payload": notification.Payload,
        "attempts": notification.Attempts,
        "lastError": notification.LastError,
        "createdAt": notification.CreatedAt,
        "sentAt": notification.SentAt,
    }


def log_notification_sender(notification: NotificationQueue) -> None:
    NOTIFICATION_LOGGER.info(
        "Notification %s to recipient=%s for request=%s: %s",
        notification.NotificationType,
        notification.RecipientID,
        notification.RentalRequestID,
        notification.Payload,
    )


class WebhookNotificationSender:
    def __init__(self, url: str, token: str | None = None, timeout: int = 10):
        self.url = url
        self.token = token
        self.timeout = timeout

    def __call__(self, notification: NotificationQueue) -> None:
        body = json.dumps(
            {
                "notificationID": notification.NotificationID,
                "rentalRequestID": notification.RentalRequestID,
                "recipientID": notification.RecipientID,
                "type": notification.NotificationType,
                "message": notification.Payload,
            }
        ).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = urllib.request.Request(url=self.url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise NotificationDeliveryError(f"Notification webhook returned status {response.status}")
        except urllib.error.URLError as exc:
            raise NotificationDeliveryError(f"Notification webhook unreachable: {exc}") from exc


def sender_from_env() -> Callable[[NotificationQueue], None]:
    url = (os.environ.get("RENTAL_ENGINE_NOTIFY_WEBHOOK_URL") or "").strip()
    if not url:
        return log_notification_sender
    token = (os.environ.get("RENTAL_ENGINE_NOTIFY_WEBHOOK_TOKEN") or "").strip() or None
    return WebhookNotificationSender(url, token=token)


class NotificationDispatcher:
    def __init__(
        self,
        session_factory: sessionmaker,
        sender: Callable[[NotificationQueue], None] | None = None,
        batch_size: int = 100,
        today_provider: Callable[[], date] = utc_today,
    ):
        self.session_factory = session_factory
        self.sender = sender or log_notification_sender
        self.batch_size = max(1, int(batch_size))
        self.today_provider = today_provider

    def queue_return_due(self, days_ahead: int = 1) -> int:
        today = self.today_provider()
        last_day = today + timedelta(days=max(0, int(days_ahead)))
        db = self.session_factory()
        try:
            repository = SqlAlchemyRentalRepository(db)
            created = 0
            for rental_request in repository.requests_ending_between(RentalStatus.ACTIVE, today, last_day):
                if repository.has_notification(rental_request.RentalRequestID, RETURN_DUE):
                    continue
                emit_notification(
                    repository,
                    rental_request,
                    RETURN_DUE,
                    f"Rental {rental_request.RequestNumber} is due back on {rental_request.EndDate.isoformat()}.",
                )
                created += 1
            db.commit()
            return created
        except TRANSIENT_STORAGE_ERRORS as exc:
            db.rollback()
            raise StorageUnavailable() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def pending(self) -> list[dict]:
        db = self.session_factory()
        try:
            repository = SqlAlchemyRentalRepository(db)
            return [serialize_notification(row) for row in repository.pending_notifications(self.batch_size)]
        except TRANSIENT_STORAGE_ERRORS as exc:
            raise StorageUnavailable() from exc
        finally:
            db.close()

    def run(self) -> dict:
        db = self.session_factory()
        sent = 0
        failed = 0
        try:
            repository = SqlAlchemyRentalRepository(db)
            for notification in repository.pending_notifications(self.batch_size):
                notification.Attempts = int(notification.Attempts or 0) + 1
                try:
                    self.sender(notification)
                except Exception as exc:
                    # Delivery is best effort; the row stays queued for the next run.
                    NOTIFICATION_LOGGER.exception(
                        "Failed to deliver notification %s for request=%s",
                        notification.NotificationID,
                        notification.RentalRequestID,
                    )
                    notification.LastError = str(exc)[:500]
                    failed += 1
                    continue
                notification.SentAt = utcnow()
                notification.LastError = None
                sent += 1
            db.commit()
        except TRANSIENT_STORAGE_ERRORS as exc:
            db.rollback()
            raise StorageUnavailable() from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        return {"sent": sent, "failed": failed}
