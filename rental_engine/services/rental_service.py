from __future__ import annotations

import json

from rental_engine.models.rental_models import RentalRequest
from rental_engine.services.lifecycle import TERMINAL_STATES, normalize_status

REQUEST_NUMBER_PREFIX = "EQR"


def format_request_number(request_id: int, prefix: str = REQUEST_NUMBER_PREFIX) -> str:
    token = (prefix or REQUEST_NUMBER_PREFIX).upper()
    return f"{token}-{int(request_id):03d}"


def serialize_rental_request(rental_request: RentalRequest) -> dict:
    status = normalize_status(rental_request.Status)
    return {
        "rentalRequestID": rental_request.RentalRequestID,
        "requestNumber": rental_request.RequestNumber,
        "equipmentID": rental_request.EquipmentID,
        "farmerID": rental_request.FarmerID,
        "startDate": rental_request.StartDate,
        "endDate": rental_request.EndDate,
        "rentalDuration": rental_request.RentalDuration,
        "rentalCost": rental_request.RentalCost,
        "deliveryFee": rental_request.DeliveryFee,
        "securityDeposit": rental_request.SecurityDeposit,
        "totalAmount": rental_request.TotalAmount,
        "priceBreakdown": _parse_breakdown(rental_request.PriceBreakdown),
        "receiverName": rental_request.ReceiverName,
        "receiverPhone": rental_request.ReceiverPhone,
        "deliveryAddress": rental_request.DeliveryAddress,
        "additionalNotes": rental_request.AdditionalNotes,
        "status": status.value,
        "isTerminal": status in TERMINAL_STATES,
        "adminNotes": rental_request.AdminNotes,
        "rejectionReason": rental_request.RejectionReason,
        "decidedBy": rental_request.DecidedBy,
        "decidedAt": rental_request.DecidedAt,
        "cancelledBy": rental_request.CancelledBy,
        "cancelledAt": rental_request.CancelledAt,
        "pickupToken": rental_request.PickupToken,
        "pickupQrCodeUrl": rental_request.PickupQrCodeUrl,
        "returnToken": rental_request.ReturnToken,
        "returnQrCodeUrl": rental_request.ReturnQrCodeUrl,
        "pickupConfirmedAt": rental_request.PickupConfirmedAt,
        "returnConfirmedAt": rental_request.ReturnConfirmedAt,
        "createdDate": rental_request.CreatedDate,
        "updatedDate": rental_request.UpdatedDate,
    }


def _parse_breakdown(raw: str | None) -> dict:
    if not raw:
        return {}
    value = raw.strip()
    if not value.startswith("{"):
        return {}
    try:
        parsed = json.loads(value)
        return parsed if isinstance(parsed, dict) else {}
    except (ValueError, json.JSONDecodeError):
        return {}
