"""Public (unauthenticated) view of a verification result.

Drops facility identities and payload details; keeps the verdict, the identity fields with a
masked serial, and explorer links so anyone can check the log independently.
"""

from __future__ import annotations

from typing import Any

from pack_trace.consensus.links import (
    consensus_timestamp_to_datetime,
    hashscan_message_url,
    hashscan_topic_url,
    mirror_message_url,
    mirror_topic_url,
)
from pack_trace.custody.payload import EventType

from .service import VerifyState


ACTOR_LABELS: dict[EventType, str] = {
    EventType.MANUFACTURED: "Manufacturer",
    EventType.HANDOVER: "Distributor",
    EventType.RECEIVED: "Distributor",
    EventType.DISPENSED: "Pharmacy",
    EventType.RECALLED: "Auditor",
}


def mask_serial(serial: str | None) -> str | None:
    text = str(serial or "").strip()
    if not text:
        return None
    if len(text) <= 4:
        return text
    return f"{'*' * (len(text) - 4)}{text[-4:]}"


def public_view(state: VerifyState, *, network: str | None) -> dict[str, Any]:
    log_id = state.log_id
    timeline = []
    for entry in state.timeline.entries:
        moment = consensus_timestamp_to_datetime(entry.consensus_timestamp)
        timeline.append(
            {
                "sequenceNumber": entry.sequence_number,
                "eventType": entry.payload.type.value,
                "actorLabel": ACTOR_LABELS.get(entry.payload.type, "Operator"),
                "consensusTimestamp": entry.consensus_timestamp,
                "occurredAt": moment.isoformat() if moment else None,
                "hashscanUrl": hashscan_message_url(network, log_id, entry.sequence_number) if log_id else None,
                "mirrorUrl": mirror_message_url(network, log_id, entry.sequence_number) if log_id else None,
            }
        )
    parsed = None
    if state.parsed is not None:
        parsed = {
            "gtin": state.parsed.gtin14,
            "lot": state.parsed.lot,
            "expiry": state.parsed.expiry_iso,
            "maskedSerial": mask_serial(state.parsed.serial),
        }
    return {
        "status": state.status,
        "message": state.message,
        "parsed": parsed,
        "logId": log_id,
        "latestSequence": timeline[0]["sequenceNumber"] if timeline else None,
        "links": {
            "hashscanTopicUrl": hashscan_topic_url(network, log_id) if log_id else None,
            "mirrorTopicUrl": mirror_topic_url(network, log_id, limit=25) if log_id else None,
        },
        "timeline": timeline,
        "timelineNote": state.timeline.note,
        "timelineError": state.timeline_error,
    }
