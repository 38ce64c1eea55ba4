from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime

from rental_engine.models.rental_models import Equipment, HandoverDirection, RentalRequest, RentalStatus
from rental_engine.services.clock import utcnow
from rental_engine.services.errors import ActionNotPermitted, InvalidTransition


class ActorRole(str, enum.Enum):
    FARMER = "farmer"
    OWNER = "owner"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    actor_id: int
    role: ActorRole


TERMINAL_STATES = frozenset(
    {RentalStatus.REJECTED, RentalStatus.CANCELLED, RentalStatus.RETURNED, RentalStatus.COMPLETED}
)
# Requests in these states hold a reservation in the availability index.
BLOCKING_STATES = frozenset({RentalStatus.APPROVED, RentalStatus.ACTIVE})
STATE_TRANSITIONS: dict[RentalStatus, frozenset[RentalStatus]] = {
    RentalStatus.PENDING: frozenset({RentalStatus.APPROVED, RentalStatus.REJECTED, RentalStatus.CANCELLED}),
    RentalStatus.APPROVED: frozenset({RentalStatus.ACTIVE, RentalStatus.CANCELLED}),
    RentalStatus.ACTIVE: frozenset({RentalStatus.RETURNED, RentalStatus.COMPLETED}),
    RentalStatus.REJECTED: frozenset(),
    RentalStatus.CANCELLED: frozenset(),
    RentalStatus.RETURNED: frozenset(),
    RentalStatus.COMPLETED: frozenset(),
}
# Transitions driven by a person rather than by a handover token.
TRANSITION_ACTORS: dict[tuple[RentalStatus, RentalStatus], frozenset[ActorRole]] = {
    (RentalStatus.PENDING, RentalStatus.APPROVED): frozenset({ActorRole.OWNER, ActorRole.ADMIN}),
    (RentalStatus.PENDING, RentalStatus.REJECTED): frozenset({ActorRole.OWNER, ActorRole.ADMIN}),
    (RentalStatus.PENDING, RentalStatus.CANCELLED): frozenset({ActorRole.FARMER, ActorRole.ADMIN}),
    (RentalStatus.APPROVED, RentalStatus.CANCELLED): frozenset({ActorRole.FARMER, ActorRole.OWNER, ActorRole.ADMIN}),
}
TOKEN_PHASES = {
    HandoverDirection.PICKUP: RentalStatus.APPROVED,
    HandoverDirection.RETURN: RentalStatus.ACTIVE,
}


def normalize_status(raw: RentalStatus | str | None) -> RentalStatus:
    if isinstance(raw, RentalStatus):
        return raw
    try:
        return RentalStatus((raw or "").strip().lower())
    except ValueError as exc:
        raise InvalidTransition(f"Unknown rental status: {raw}") from exc


def normalize_role(raw: ActorRole | str | None) -> ActorRole:
    if isinstance(raw, ActorRole):
        return raw
    try:
        return ActorRole((raw or "").strip().lower())
    except ValueError as exc:
        raise ActionNotPermitted(f"Unknown actor role: {raw}") from exc


def is_terminal(status: RentalStatus | str | None) -> bool:
    return normalize_status(status) in TERMINAL_STATES


def can_transition(current: RentalStatus | str, target: RentalStatus | str) -> bool:
    return normalize_status(target) in STATE_TRANSITIONS[normalize_status(current)]


def expected_token_direction(status: RentalStatus | str) -> HandoverDirection | None:
    current = normalize_status(status)
    for direction, phase in TOKEN_PHASES.items():
        if phase == current:
            return direction
    return None


def ensure_actor_allowed(
    actor: Actor,
    rental_request: RentalRequest,
    equipment: Equipment | None,
    target: RentalStatus,
) -> None:
    current = normalize_status(rental_request.Status)
    allowed_roles = TRANSITION_ACTORS.get((current, target))
    if allowed_roles is None:
        # Not a person-driven move; transition() reports it as invalid.
        return
    if actor.role not in allowed_roles:
        raise ActionNotPermitted(
            f"A {actor.role.value} cannot move a {current.value} request to {target.value}."
        )
    if actor.role == ActorRole.FARMER and int(rental_request.FarmerID) != int(actor.actor_id):
        raise ActionNotPermitted("Only the farmer who made this request can change it.")
    if actor.role == ActorRole.OWNER and (equipment is None or int(equipment.OwnerID) != int(actor.actor_id)):
        raise ActionNotPermitted("Only the owner of this equipment can decide on the request.")


def transition(rental_request: RentalRequest, target: RentalStatus, at: datetime | None = None) -> RentalStatus:
    current = normalize_status(rental_request.Status)
    if current in TERMINAL_STATES:
        raise InvalidTransition(f"Request is already {current.value}; no further changes are allowed.")
    if target not in STATE_TRANSITIONS[current]:
        raise InvalidTransition(f"Invalid state transition: {current.value} -> {target.value}")
    rental_request.Status = target
    rental_request.UpdatedDate = at or utcnow()
    return current
