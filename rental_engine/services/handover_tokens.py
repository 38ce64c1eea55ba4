from __future__ import annotations

import logging
import secrets
from datetime import datetime
from urllib.parse import quote, urlencode

from rental_engine.models.rental_models import HandoverDirection, HandoverToken, RentalRequest
from rental_engine.services.clock import utcnow
from rental_engine.services.errors import TokenInvalid
from rental_engine.services.lifecycle import TOKEN_PHASES, normalize_status
from rental_engine.services.repository import RentalRepository

TOKEN_LOGGER = logging.getLogger("rental_engine.tokens")
TOKEN_BYTES = 32
DEFAULT_APP_URL = "http://localhost:8000"
DEFAULT_QR_SERVICE_URL = "https://api.qrserver.com/v1/create-qr-code/"


def _normalize_direction(raw: HandoverDirection | str) -> HandoverDirection:
    if isinstance(raw, HandoverDirection):
        return raw
    try:
        return HandoverDirection((raw or "").strip().lower())
    except ValueError as exc:
        raise TokenInvalid(f"Unknown handover direction: {raw}") from exc


def clear_request_token(rental_request: RentalRequest, direction: HandoverDirection) -> None:
    # Spent or revoked codes must not be served back from the request row.
    if direction == HandoverDirection.PICKUP:
        rental_request.PickupToken = None
        rental_request.PickupQrCodeUrl = None
    else:
        rental_request.ReturnToken = None
        rental_request.ReturnQrCodeUrl = None


class HandoverTokenService:
    def __init__(
        self,
        repository: RentalRepository,
        app_url: str = DEFAULT_APP_URL,
        qr_service_url: str = DEFAULT_QR_SERVICE_URL,
    ):
        self.repository = repository
        self.app_url = (app_url or DEFAULT_APP_URL).rstrip("/")
        self.qr_service_url = qr_service_url or DEFAULT_QR_SERVICE_URL

    def verification_url(self, token_value: str, direction: HandoverDirection) -> str:
        return f"{self.app_url}/handover/{direction.value}/{quote(token_value)}"

    def qr_code_url(self, token_value: str, direction: HandoverDirection) -> str:
        params = urlencode(
            {
                "size": "300x300",
                "data": self.verification_url(token_value, direction),
                "format": "png",
                "margin": 10,
            }
        )
        return f"{self.qr_service_url}?{params}"

    def revoke_outstanding(
        self,
        request_id: int,
        direction: HandoverDirection | None = None,
        at: datetime | None = None,
    ) -> int:
        revoked = 0
        for token in self.repository.outstanding_tokens(request_id, direction):
            token.RevokedAt = at or utcnow()
            revoked += 1
        if revoked:
            self.repository.flush()
        return revoked

    def issue(self, rental_request: RentalRequest, direction: HandoverDirection | str, at: datetime | None = None) -> HandoverToken:
        direction = _normalize_direction(direction)
        issued_at = at or utcnow()
        # A reissued token supersedes the previous one.
        self.revoke_outstanding(rental_request.RentalRequestID, direction, issued_at)

        value = secrets.token_urlsafe(TOKEN_BYTES)
        token = HandoverToken(
            Token=value,
            RentalRequestID=rental_request.RentalRequestID,
            Direction=direction,
            IssuedAt=issued_at,
            QrCodeUrl=self.qr_code_url(value, direction),
        )
        self.repository.add_token(token)

        if direction == HandoverDirection.PICKUP:
            rental_request.PickupToken = value
            rental_request.PickupQrCodeUrl = token.QrCodeUrl
        else:
            rental_request.ReturnToken = value
            rental_request.ReturnQrCodeUrl = token.QrCodeUrl
        TOKEN_LOGGER.info("Issued %s token for request=%s", direction.value, rental_request.RentalRequestID)
        return token

    def lookup(self, token_value: str) -> HandoverToken:
        value = (token_value or "").strip()
        token = self.repository.get_token(value) if value else None
        if token is None:
            TOKEN_LOGGER.warning("Rejected unknown handover token")
            raise TokenInvalid()
        return token

    def consume(self, token_value: str, expected_direction: HandoverDirection | str | None = None) -> int:
        token = self.lookup(token_value)
        direction = _normalize_direction(token.Direction)
        request_id = token.RentalRequestID

        if token.ConsumedAt is not None or token.RevokedAt is not None:
            TOKEN_LOGGER.warning("Rejected spent %s token for request=%s", direction.value, request_id)
            raise TokenInvalid()
        if expected_direction is not None and direction != _normalize_direction(expected_direction):
            TOKEN_LOGGER.warning("Rejected %s token used for the wrong handover, request=%s", direction.value, request_id)
            raise TokenInvalid(f"This is a {direction.value} code.")

        rental_request = self.repository.get_request(request_id)
        if rental_request is None or normalize_status(rental_request.Status) != TOKEN_PHASES[direction]:
            TOKEN_LOGGER.warning("Rejected %s token outside its phase, request=%s", direction.value, request_id)
            raise TokenInvalid(f"This {direction.value} code cannot be used at this stage of the rental.")

        if not self.repository.mark_token_consumed(token, utcnow()):
            TOKEN_LOGGER.warning("Lost race consuming %s token for request=%s", direction.value, request_id)
            raise TokenInvalid()
        clear_request_token(rental_request, direction)
        TOKEN_LOGGER.info("Consumed %s token for request=%s", direction.value, request_id)
        return request_id
