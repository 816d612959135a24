"""Row shapes for facilities, batches and custody events."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from .payload import EventType


class BatchState(str, Enum):
    UNASSIGNED = "UNASSIGNED"
    OWNED = "OWNED"
    PENDING_RECEIPT = "PENDING_RECEIPT"
    DISPENSED = "DISPENSED"
    RECALLED = "RECALLED"


@dataclass(frozen=True)
class Actor:
    """Caller identity as supplied by the identity provider."""

    actor_id: str
    role: str
    facility_id: str | None = None

    def is_auditor(self, auditor_role: str) -> bool:
        return self.role.strip().upper() == auditor_role.strip().upper()


@dataclass(frozen=True)
class Facility:
    facility_id: str
    name: str
    facility_type: str
    created_at_utc: str
    country: str | None = None
    gs1_company_prefix: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Facility":
        return cls(
            facility_id=str(row["facility_id"]),
            name=str(row["name"]),
            facility_type=str(row["facility_type"]),
            created_at_utc=str(row["created_at_utc"]),
            country=row["country"],
            gs1_company_prefix=row["gs1_company_prefix"],
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.facility_id,
            "name": self.name,
            "type": self.facility_type,
            "country": self.country,
            "gs1CompanyPrefix": self.gs1_company_prefix,
            "createdAt": self.created_at_utc,
        }


@dataclass(frozen=True)
class BatchRecord:
    batch_id: str
    gtin: str
    lot: str
    expiry: str
    quantity: int
    product_name: str
    current_owner_facility_id: str | None
    pending_receipt_to_facility_id: str | None
    last_handover_event_id: str | None
    terminal_event_type: EventType | None
    external_log_id: str | None
    version: int
    created_by: str
    created_at_utc: str

    @property
    def state(self) -> BatchState:
        if self.terminal_event_type is EventType.DISPENSED:
            return BatchState.DISPENSED
        if self.terminal_event_type is EventType.RECALLED:
            return BatchState.RECALLED
        if self.pending_receipt_to_facility_id:
            return BatchState.PENDING_RECEIPT
        if self.current_owner_facility_id:
            return BatchState.OWNED
        return BatchState.UNASSIGNED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "BatchRecord":
        terminal = row["terminal_event_type"]
        return cls(
            batch_id=str(row["batch_id"]),
            gtin=str(row["gtin"]),
            lot=str(row["lot"]),
            expiry=str(row["expiry"]),
            quantity=int(row["quantity"]),
            product_name=str(row["product_name"] or ""),
            current_owner_facility_id=row["current_owner_facility_id"],
            pending_receipt_to_facility_id=row["pending_receipt_to_facility_id"],
            last_handover_event_id=row["last_handover_event_id"],
            terminal_event_type=EventType(terminal) if terminal else None,
            external_log_id=row["external_log_id"],
            version=int(row["version"]),
            created_by=str(row["created_by"]),
            created_at_utc=str(row["created_at_utc"]),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.batch_id,
            "gtin": self.gtin,
            "lot": self.lot,
            "expiry": self.expiry,
            "quantity": self.quantity,
            "productName": self.product_name,
            "state": self.state.value,
            "currentOwnerFacilityId": self.current_owner_facility_id,
            "pendingReceiptToFacilityId": self.pending_receipt_to_facility_id,
            "lastHandoverEventId": self.last_handover_event_id,
            "terminalEventType": self.terminal_event_type.value if self.terminal_event_type else None,
            "externalLogId": self.external_log_id,
            "version": self.version,
            "createdAt": self.created_at_utc,
        }


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    batch_id: str
    event_seq: int
    event_type: EventType
    from_facility_id: str | None
    to_facility_id: str | None
    handover_event_id: str | None
    external_log_id: str | None
    external_tx_ref: str
    external_sequence_no: int | None
    external_running_hash: str | None
    consensus_timestamp: str | None
    payload_hash: str
    prev_hash: str | None
    message: str
    created_by: str
    created_at_utc: str
    delivered: bool

    @property
    def anchored(self) -> bool:
        return self.delivered and self.external_sequence_no is not None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EventRecord":
        sequence_no = row["external_sequence_no"]
        return cls(
            event_id=str(row["event_id"]),
            batch_id=str(row["batch_id"]),
            event_seq=int(row["event_seq"]),
            event_type=EventType(row["event_type"]),
            from_facility_id=row["from_facility_id"],
            to_facility_id=row["to_facility_id"],
            handover_event_id=row["handover_event_id"],
            external_log_id=row["external_log_id"],
            external_tx_ref=str(row["external_tx_ref"]),
            external_sequence_no=int(sequence_no) if sequence_no is not None else None,
            external_running_hash=row["external_running_hash"],
            consensus_timestamp=row["consensus_timestamp"],
            payload_hash=str(row["payload_hash"]),
            prev_hash=row["prev_hash"],
            message=str(row["message_json"]),
            created_by=str(row["created_by"]),
            created_at_utc=str(row["created_at_utc"]),
            delivered=bool(row["delivered"]),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.event_id,
            "batchId": self.batch_id,
            "eventSeq": self.event_seq,
            "type": self.event_type.value,
            "fromFacilityId": self.from_facility_id,
            "toFacilityId": self.to_facility_id,
            "handoverEventId": self.handover_event_id,
            "externalLogId": self.external_log_id,
            "externalTxRef": self.external_tx_ref,
            "sequenceNumber": self.external_sequence_no,
            "runningHash": self.external_running_hash,
            "consensusTimestamp": self.consensus_timestamp,
            "payloadHash": self.payload_hash,
            "prevHash": self.prev_hash,
            "createdBy": self.created_by,
            "createdAt": self.created_at_utc,
            "delivered": self.delivered,
        }
