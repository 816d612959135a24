"""Custody transitions.

Each event type has one function that validates the request against the current batch row
and returns the pointer changes it implies. The recorder calls ``plan_transition`` once
before publishing and the store calls it again inside the commit transaction against the
freshly read row.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from pack_trace.errors import AuthorizationError, ConflictError, ValidationError

from .payload import EventType
from .records import Actor, BatchRecord, EventRecord, Facility


DEFAULT_AUDITOR_ROLE = "AUDITOR"
DEFAULT_DISPENSING_FACILITY_TYPES: tuple[str, ...] = ("PHARMACY",)


@dataclass(frozen=True)
class TransitionPolicy:
    auditor_role: str = DEFAULT_AUDITOR_ROLE
    dispensing_facility_types: tuple[str, ...] = DEFAULT_DISPENSING_FACILITY_TYPES

    def can_dispense(self, facility: Facility | None) -> bool:
        if facility is None:
            return False
        allowed = {item.strip().upper() for item in self.dispensing_facility_types}
        return facility.facility_type.strip().upper() in allowed


@dataclass(frozen=True)
class TransitionContext:
    batch: BatchRecord
    actor: Actor
    policy: TransitionPolicy
    actor_facility: Facility | None = None
    to_facility_id: str | None = None
    to_facility: Facility | None = None
    handover_event: EventRecord | None = None

    @property
    def is_auditor(self) -> bool:
        return self.actor.is_auditor(self.policy.auditor_role)

    @property
    def is_owner(self) -> bool:
        owner = self.batch.current_owner_facility_id
        return owner is not None and owner == self.actor.facility_id


@dataclass(frozen=True)
class Transition:
    event_type: EventType
    from_facility_id: str | None
    to_facility_id: str | None
    owner_after: str | None
    pending_after: str | None
    handover_event_id: str | None = None
    records_handover: bool = False

    @property
    def terminal(self) -> bool:
        return self.event_type.is_terminal


def ensure_not_terminal(batch: BatchRecord) -> None:
    if batch.terminal_event_type is not None:
        raise ConflictError(
            "BATCH_LOCKED",
            f"batch {batch.batch_id} is locked after {batch.terminal_event_type.value}",
            context={"batch_id": batch.batch_id, "terminal_event_type": batch.terminal_event_type.value},
        )


def plan_transition(event_type: EventType, ctx: TransitionContext) -> Transition:
    ensure_not_terminal(ctx.batch)
    if not ctx.actor.facility_id:
        raise AuthorizationError(
            "ACTOR_FACILITY_REQUIRED",
            "assign this actor to a facility before recording custody events",
        )
    if event_type is not EventType.RECEIVED and ctx.batch.pending_receipt_to_facility_id:
        raise ConflictError(
            "PENDING_RECEIPT",
            f"awaiting receipt confirmation from facility {ctx.batch.pending_receipt_to_facility_id}",
        )
    handler = _HANDLERS.get(event_type)
    if handler is None:
        raise ValidationError("UNSUPPORTED_EVENT_TYPE", f"no transition for {event_type!r}")
    return handler(ctx)


def _manufactured(ctx: TransitionContext) -> Transition:
    owner = ctx.batch.current_owner_facility_id
    if owner is not None and not (ctx.is_owner or ctx.is_auditor):
        raise AuthorizationError(
            "NOT_CURRENT_OWNER",
            "only the current owner facility or an auditor can record manufacture of an owned batch",
        )
    return Transition(
        event_type=EventType.MANUFACTURED,
        from_facility_id=ctx.actor.facility_id,
        to_facility_id=None,
        owner_after=owner or ctx.actor.facility_id,
        pending_after=None,
    )


def _handover(ctx: TransitionContext) -> Transition:
    owner = ctx.batch.current_owner_facility_id
    if not ctx.to_facility_id:
        raise ValidationError("DESTINATION_REQUIRED", "toFacilityId is required for handover events")
    if ctx.to_facility is None:
        raise ValidationError("DESTINATION_NOT_FOUND", f"destination facility {ctx.to_facility_id} does not exist")
    if owner is None:
        raise ConflictError("BATCH_UNASSIGNED", "batch has no owner; record MANUFACTURED first")
    if not (ctx.is_owner or ctx.is_auditor):
        raise AuthorizationError(
            "NOT_CURRENT_OWNER",
            "only the current owner facility or an auditor can initiate a handover",
        )
    if ctx.to_facility_id == owner:
        raise ValidationError("HANDOVER_TO_OWNER", f"facility {owner} already owns this batch")
    return Transition(
        event_type=EventType.HANDOVER,
        from_facility_id=owner,
        to_facility_id=ctx.to_facility_id,
        owner_after=owner,
        pending_after=ctx.to_facility_id,
        records_handover=True,
    )


def _received(ctx: TransitionContext) -> Transition:
    pending = ctx.batch.pending_receipt_to_facility_id
    if not pending:
        raise ConflictError("NO_PENDING_RECEIPT", "batch has no handover awaiting receipt")
    if ctx.actor.facility_id != pending and not ctx.is_auditor:
        raise AuthorizationError(
            "NOT_HANDOVER_RECIPIENT",
            f"only facility {pending} or an auditor can confirm this receipt",
        )
    handover = ctx.handover_event
    if (
        handover is None
        or handover.event_id != ctx.batch.last_handover_event_id
        or handover.event_type is not EventType.HANDOVER
        or handover.to_facility_id != pending
    ):
        raise ConflictError("HANDOVER_REFERENCE_INVALID", "pending receipt does not reference a valid handover event")
    return Transition(
        event_type=EventType.RECEIVED,
        from_facility_id=handover.from_facility_id,
        to_facility_id=pending,
        owner_after=pending,
        pending_after=None,
        handover_event_id=handover.event_id,
    )


def _dispensed(ctx: TransitionContext) -> Transition:
    owner = ctx.batch.current_owner_facility_id
    if owner is None and not ctx.is_auditor:
        raise ConflictError("BATCH_UNASSIGNED", "batch has no owner to dispense from")
    if not (ctx.is_owner or ctx.is_auditor):
        raise AuthorizationError(
            "NOT_CURRENT_OWNER",
            "only the current owner facility or an auditor can dispense a batch",
        )
    if not ctx.is_auditor and not ctx.policy.can_dispense(ctx.actor_facility):
        facility_type = ctx.actor_facility.facility_type if ctx.actor_facility else "UNKNOWN"
        raise AuthorizationError(
            "FACILITY_CANNOT_DISPENSE",
            f"facility type {facility_type} is not permitted to dispense",
        )
    return Transition(
        event_type=EventType.DISPENSED,
        from_facility_id=owner or ctx.actor.facility_id,
        to_facility_id=None,
        owner_after=None,
        pending_after=None,
    )


def _recalled(ctx: TransitionContext) -> Transition:
    if not ctx.is_auditor:
        raise AuthorizationError("AUDITOR_REQUIRED", "only an auditor can recall a batch")
    return Transition(
        event_type=EventType.RECALLED,
        from_facility_id=ctx.actor.facility_id,
        to_facility_id=None,
        owner_after=ctx.batch.current_owner_facility_id,
        pending_after=None,
    )


_HANDLERS: dict[EventType, Callable[[TransitionContext], Transition]] = {
    EventType.MANUFACTURED: _manufactured,
    EventType.HANDOVER: _handover,
    EventType.RECEIVED: _received,
    EventType.DISPENSED: _dispensed,
    EventType.RECALLED: _recalled,
}
