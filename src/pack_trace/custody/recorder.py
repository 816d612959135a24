"""Custody event recorder.

One ``record`` call is one unit of work: claim the idempotency key, resolve the batch, plan
the transition, publish to the consensus log (falling back to a local-only record), then
commit the event, the batch pointers and the key in a single store transaction. The key is
released on every failure path.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Any, Callable, Mapping
import uuid

from pack_trace.consensus.publisher import (
    FALLBACK_WARNING,
    MAX_MESSAGE_BYTES,
    ConsensusPublisher,
    PublishOutcome,
    ensure_message_fits,
    event_memo,
    has_sequence_number,
)
from pack_trace.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PackTraceError,
    UpstreamUnavailableError,
    ValidationError,
    reason_code,
)
from pack_trace.identifier.codec import GS1Identity, encode

from .db import canonical_json
from .hashing import payload_hash, prev_link
from .idempotency import IdempotencyClaim, normalize_key
from .payload import CustodyEventPayload, EventType, WireBatch, utc_timestamp
from .records import Actor, BatchRecord, EventRecord, Facility
from .state_machine import Transition, TransitionContext, TransitionPolicy, ensure_not_terminal, plan_transition
from .store import CustodyStore, EventDraft, IdempotencyBinding


logger = logging.getLogger("pack_trace.custody.recorder")

NO_LOG_WARNING = "No consensus log is configured for this batch; event recorded locally only."


@dataclass(frozen=True)
class CustodyEventRequest:
    event_type: EventType
    batch_id: str | None = None
    gtin: str | None = None
    lot: str | None = None
    expiry: str | None = None
    to_facility_id: str | None = None
    metadata: Mapping[str, Any] | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CustodyEventRequest":
        if not isinstance(payload, Mapping):
            raise ValidationError("INVALID_REQUEST", "request body must be a JSON object")
        event_type = EventType.parse(payload.get("type"))
        batch_id = str(payload.get("batchId") or "").strip() or None
        gs1 = payload.get("gs1")
        gtin = lot = expiry = None
        if gs1 is not None:
            if not isinstance(gs1, Mapping):
                raise ValidationError("INVALID_REQUEST", "gs1 must be an object with gtin, lot and expiryIsoDate")
            identity = encode(
                gtin=str(gs1.get("gtin") or ""),
                lot=str(gs1.get("lot") or ""),
                expiry=str(gs1.get("expiryIsoDate") or gs1.get("expiry") or ""),
            )
            gtin, lot, expiry = identity.identity
        if not batch_id and not gtin:
            raise ValidationError(
                "BATCH_REFERENCE_REQUIRED",
                "provide either a batchId or a gs1 payload to resolve the batch",
            )
        metadata = payload.get("metadata")
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("INVALID_METADATA", "metadata must be an object")
        to_facility_id = str(payload.get("toFacilityId") or "").strip() or None
        return cls(
            event_type=event_type,
            batch_id=batch_id,
            gtin=gtin,
            lot=lot,
            expiry=expiry,
            to_facility_id=to_facility_id,
            metadata=dict(metadata) if metadata else None,
        )

    def fingerprint(self, actor: Actor) -> str:
        return payload_hash(
            canonical_json(
                {
                    "actor": {"id": actor.actor_id, "role": actor.role, "facility": actor.facility_id},
                    "type": self.event_type.value,
                    "batch_id": self.batch_id,
                    "gs1": [self.gtin, self.lot, self.expiry],
                    "to": self.to_facility_id,
                    "meta": self.metadata,
                }
            )
        )


@dataclass(frozen=True)
class RecordResult:
    event_id: str
    external_tx_ref: str
    sequence_number: int | None
    running_hash: str | None
    payload_hash: str
    delivered: bool
    warning: str | None = None
    idempotent: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "externalTxRef": self.external_tx_ref,
            "sequenceNumber": self.sequence_number,
            "runningHash": self.running_hash,
            "payloadHash": self.payload_hash,
            "delivered": self.delivered,
            "warning": self.warning,
            "idempotent": self.idempotent,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, idempotent: bool = False) -> "RecordResult":
        return cls(
            event_id=str(payload["id"]),
            external_tx_ref=str(payload["externalTxRef"]),
            sequence_number=payload.get("sequenceNumber"),
            running_hash=payload.get("runningHash"),
            payload_hash=str(payload["payloadHash"]),
            delivered=bool(payload.get("delivered")),
            warning=payload.get("warning"),
            idempotent=idempotent,
        )


class EventRecorder:
    def __init__(
        self,
        store: CustodyStore,
        publisher: ConsensusPublisher | None,
        *,
        default_log_id: str | None = None,
        policy: TransitionPolicy | None = None,
        publish_timeout_seconds: float = 10.0,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.default_log_id = default_log_id
        self.policy = policy or TransitionPolicy()
        self.publish_timeout_seconds = float(publish_timeout_seconds)
        self.max_message_bytes = int(max_message_bytes)
        self._clock = clock

    async def create_facility(
        self,
        actor: Actor,
        *,
        name: str,
        facility_type: str,
        country: str | None = None,
        gs1_company_prefix: str | None = None,
        facility_id: str | None = None,
    ) -> Facility:
        if not actor.is_auditor(self.policy.auditor_role):
            raise AuthorizationError("AUDITOR_REQUIRED", "only an auditor can register facilities")
        if not str(name or "").strip():
            raise ValidationError("FACILITY_NAME_REQUIRED", "facility name is required")
        if not str(facility_type or "").strip():
            raise ValidationError("FACILITY_TYPE_REQUIRED", "facility type is required")
        return await self.store.create_facility(
            name=name.strip(),
            facility_type=facility_type,
            country=country,
            gs1_company_prefix=gs1_company_prefix,
            facility_id=facility_id,
        )

    async def create_batch(
        self,
        actor: Actor,
        *,
        gtin: str,
        lot: str,
        expiry: str,
        quantity: int | str,
        product_name: str = "",
        external_log_id: str | None = None,
    ) -> tuple[BatchRecord, GS1Identity]:
        if not actor.facility_id:
            raise AuthorizationError(
                "ACTOR_FACILITY_REQUIRED",
                "assign this actor to a facility before creating batches",
            )
        identity = encode(gtin=gtin, lot=lot, expiry=expiry)
        try:
            quantity_value = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError("INVALID_QUANTITY", "quantity must be a whole number") from None
        if quantity_value <= 0:
            raise ValidationError("INVALID_QUANTITY", "quantity must be greater than zero")
        batch = await self.store.create_batch(
            gtin=identity.gtin14,
            lot=identity.lot,
            expiry=identity.expiry_iso,
            quantity=quantity_value,
            product_name=str(product_name or "").strip(),
            created_by=actor.actor_id,
            external_log_id=external_log_id,
        )
        return batch, identity

    async def record(
        self,
        actor: Actor,
        request: CustodyEventRequest,
        *,
        idempotency_key: str | None = None,
    ) -> RecordResult:
        key = normalize_key(idempotency_key)
        claim: IdempotencyClaim | None = None
        if key:
            claim = await self.store.claim_idempotency_key(key, request.fingerprint(actor))
            if claim.is_replay:
                logger.info("Custody idempotent replay key=%s event_id=%s", key, claim.event_id)
                return RecordResult.from_payload(claim.result or {}, idempotent=True)
        try:
            return await self._record(actor, request, key, claim)
        except (Exception, asyncio.CancelledError):
            if key and claim is not None and claim.claim_token:
                await self.store.release_idempotency_key(key, claim.claim_token)
            raise

    async def _record(
        self,
        actor: Actor,
        request: CustodyEventRequest,
        key: str | None,
        claim: IdempotencyClaim | None,
    ) -> RecordResult:
        event_type = request.event_type
        batch = await self._resolve_batch(request)
        ensure_not_terminal(batch)
        handover = None
        if event_type is EventType.RECEIVED:
            handover = await self.store.get_event(batch.last_handover_event_id)
        ctx = TransitionContext(
            batch=batch,
            actor=actor,
            policy=self.policy,
            actor_facility=await self.store.get_facility(actor.facility_id),
            to_facility_id=request.to_facility_id,
            to_facility=await self.store.get_facility(request.to_facility_id),
            handover_event=handover,
        )
        try:
            transition = plan_transition(event_type, ctx)
        except PackTraceError as exc:
            logger.info(
                "Custody transition rejected batch_id=%s type=%s reason=%s detail=%s",
                batch.batch_id,
                event_type.value,
                exc.code,
                exc.detail,
            )
            raise

        predecessor = handover if event_type is EventType.RECEIVED else await self.store.latest_event(batch.batch_id)
        payload = CustodyEventPayload(
            type=event_type,
            batch=WireBatch(gtin=batch.gtin, lot=batch.lot, exp=batch.expiry),
            actor_facility_id=str(actor.facility_id),
            actor_role=actor.role,
            to_facility_id=transition.to_facility_id,
            ts=utc_timestamp(self._clock() if self._clock else None),
            prev=prev_link(predecessor.payload_hash) if predecessor else None,
            meta=request.metadata,
        )
        message = payload.serialize()
        ensure_message_fits(message, self.max_message_bytes)

        log_id = batch.external_log_id or self.default_log_id
        outcome = await self._publish(message, log_id=log_id, memo=event_memo(batch.batch_id, event_type.value))
        event_id = str(uuid.uuid4())
        result = RecordResult(
            event_id=event_id,
            external_tx_ref=outcome.tx_ref,
            sequence_number=outcome.sequence_number,
            running_hash=outcome.running_hash,
            payload_hash=outcome.payload_hash,
            delivered=outcome.delivered,
            warning=outcome.warning,
        )
        draft = EventDraft(
            event_id=event_id,
            batch_id=batch.batch_id,
            expected_version=batch.version,
            event_type=event_type,
            external_log_id=outcome.log_id,
            delivered=outcome.delivered,
            external_tx_ref=outcome.tx_ref,
            external_sequence_no=outcome.sequence_number,
            external_running_hash=outcome.running_hash,
            consensus_timestamp=outcome.consensus_timestamp,
            payload_hash=outcome.payload_hash,
            prev_hash=payload.prev,
            message=message,
            created_by=actor.actor_id,
        )
        binding = None
        if key and claim is not None and claim.claim_token:
            binding = IdempotencyBinding(key=key, claim_token=claim.claim_token, result=result.as_dict())

        def _revalidate(fresh: BatchRecord, fresh_handover: EventRecord | None) -> Transition:
            return plan_transition(event_type, replace(ctx, batch=fresh, handover_event=fresh_handover))

        try:
            await self.store.commit_event(draft, _revalidate, idempotency=binding)
        except ConflictError as exc:
            logger.warning(
                "Custody commit rejected batch_id=%s type=%s reason=%s delivered=%s tx_ref=%s",
                batch.batch_id,
                event_type.value,
                exc.code,
                outcome.delivered,
                outcome.tx_ref,
            )
            raise
        logger.info(
            "Custody event committed batch_id=%s event_id=%s type=%s delivered=%s sequence=%s",
            batch.batch_id,
            event_id,
            event_type.value,
            outcome.delivered,
            outcome.sequence_number,
        )
        return result

    async def _resolve_batch(self, request: CustodyEventRequest) -> BatchRecord:
        batch = None
        if request.batch_id:
            batch = await self.store.get_batch(request.batch_id)
        if batch is None and request.gtin and request.lot:
            batch = await self.store.find_batch(request.gtin, request.lot)
        if batch is None:
            raise NotFoundError("BATCH_NOT_FOUND", "batch not found for the provided identifiers")
        if request.gtin and (batch.gtin != request.gtin or batch.lot != request.lot):
            raise ConflictError("IDENTITY_MISMATCH", "scanned GTIN and lot do not belong to the referenced batch")
        if request.expiry and batch.expiry != request.expiry:
            raise ConflictError(
                "EXPIRY_MISMATCH",
                "expiry mismatch between scanned payload and stored batch metadata",
            )
        return batch

    async def _publish(self, message: str, *, log_id: str | None, memo: str) -> PublishOutcome:
        if not log_id or self.publisher is None:
            logger.warning("Custody publish skipped log_id=%s reason=NO_CONSENSUS_LOG", log_id)
            return PublishOutcome.local_only(message, log_id=log_id, warning=NO_LOG_WARNING)
        try:
            receipt = await asyncio.wait_for(
                self.publisher.submit(message, log_id=log_id, memo=memo),
                timeout=self.publish_timeout_seconds,
            )
        except (UpstreamUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Custody publish fallback log_id=%s reason=%s",
                log_id,
                "PUBLISH_TIMEOUT" if isinstance(exc, asyncio.TimeoutError) else reason_code(exc),
            )
            return PublishOutcome.local_only(message, log_id=log_id, warning=FALLBACK_WARNING)
        if not has_sequence_number(receipt):
            logger.warning("Custody publish fallback log_id=%s reason=SUBMIT_RECEIPT_INVALID", log_id)
            return PublishOutcome.local_only(message, log_id=log_id, warning=FALLBACK_WARNING)
        return PublishOutcome.delivered_with(receipt)
