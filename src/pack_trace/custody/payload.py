"""Versioned custody message carried on the consensus log.

Wire shape (v1)::

    {"v":1,"type":...,"batch":{"gtin":...,"lot":...,"exp":...},
     "actor":{"facilityId":...,"role":...},"to":{"facilityId":...}?,
     "ts":...,"prev":"sha256:<hex>"?,"meta":{...}?}

Field order is fixed and absent optional fields are omitted, so ``serialize`` is
deterministic. The serialized string is what gets hashed and transmitted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import json
from typing import Any, Mapping

from pack_trace.errors import DecodeError, ValidationError


WIRE_VERSION = 1
WIRE_CORE_FIELDS: tuple[str, ...] = ("v", "type", "batch", "actor", "to", "ts", "prev", "meta")


class EventType(str, Enum):
    MANUFACTURED = "MANUFACTURED"
    RECEIVED = "RECEIVED"
    HANDOVER = "HANDOVER"
    DISPENSED = "DISPENSED"
    RECALLED = "RECALLED"

    @classmethod
    def parse(cls, value: Any) -> "EventType":
        text = str(value.value if isinstance(value, EventType) else value or "").strip().upper()
        try:
            return cls(text)
        except ValueError:
            raise ValidationError(
                "UNSUPPORTED_EVENT_TYPE",
                f"event type must be one of {[item.value for item in cls]}",
            ) from None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EVENT_TYPES


TERMINAL_EVENT_TYPES: frozenset[EventType] = frozenset({EventType.DISPENSED, EventType.RECALLED})


@dataclass(frozen=True)
class WireBatch:
    gtin: str
    lot: str
    exp: str

    def as_dict(self) -> dict[str, str]:
        return {"gtin": self.gtin, "lot": self.lot, "exp": self.exp}


@dataclass(frozen=True)
class CustodyEventPayload:
    type: EventType
    batch: WireBatch
    actor_facility_id: str
    actor_role: str
    ts: str
    to_facility_id: str | None = None
    prev: str | None = None
    meta: Mapping[str, Any] | None = None
    v: int = WIRE_VERSION
    extensions: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def as_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {
            "v": self.v,
            "type": self.type.value,
            "batch": self.batch.as_dict(),
            "actor": {"facilityId": self.actor_facility_id, "role": self.actor_role},
        }
        if self.to_facility_id:
            wire["to"] = {"facilityId": self.to_facility_id}
        wire["ts"] = self.ts
        if self.prev:
            wire["prev"] = self.prev
        if self.meta:
            wire["meta"] = _sorted_mapping(self.meta)
        return wire

    def serialize(self) -> str:
        try:
            return json.dumps(self.as_wire(), ensure_ascii=False, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise ValidationError("INVALID_METADATA", f"event metadata is not JSON-serializable: {exc}") from exc

    @classmethod
    def parse(cls, message: str) -> "CustodyEventPayload":
        try:
            data = json.loads(message)
        except json.JSONDecodeError as exc:
            raise DecodeError("MALFORMED_MESSAGE", f"message is not valid JSON: {exc.msg}") from exc
        return cls.from_wire(data)

    @classmethod
    def from_wire(cls, data: Any) -> "CustodyEventPayload":
        if not isinstance(data, Mapping):
            raise DecodeError("MALFORMED_MESSAGE", "message must be a JSON object")
        version = data.get("v")
        if not isinstance(version, int) or isinstance(version, bool) or version < 1:
            raise DecodeError("MALFORMED_MESSAGE", "message version 'v' must be a positive integer")
        raw_type = str(data.get("type") or "").strip().upper()
        try:
            event_type = EventType(raw_type)
        except ValueError:
            raise DecodeError("MALFORMED_MESSAGE", f"unknown event type {raw_type!r}") from None
        batch = _require_mapping(data.get("batch"), "batch")
        actor = _require_mapping(data.get("actor"), "actor")
        to_raw = data.get("to")
        to_facility_id = None
        if to_raw is not None:
            to_facility_id = _require_text(_require_mapping(to_raw, "to").get("facilityId"), "to.facilityId")
        meta = data.get("meta")
        if meta is not None and not isinstance(meta, Mapping):
            raise DecodeError("MALFORMED_MESSAGE", "meta must be an object")
        prev = data.get("prev")
        if prev is not None and not isinstance(prev, str):
            raise DecodeError("MALFORMED_MESSAGE", "prev must be a string")
        return cls(
            v=version,
            type=event_type,
            batch=WireBatch(
                gtin=_require_text(batch.get("gtin"), "batch.gtin"),
                lot=_require_text(batch.get("lot"), "batch.lot"),
                exp=_require_text(batch.get("exp"), "batch.exp"),
            ),
            actor_facility_id=_require_text(actor.get("facilityId"), "actor.facilityId"),
            actor_role=str(actor.get("role") or ""),
            to_facility_id=to_facility_id,
            ts=_require_text(data.get("ts"), "ts"),
            prev=prev or None,
            meta=dict(meta) if meta else None,
            extensions={key: value for key, value in data.items() if key not in WIRE_CORE_FIELDS},
        )


def utc_timestamp(now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sorted_mapping(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _sorted_mapping(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sorted_mapping(item) for item in value]
    return value


def _require_mapping(value: Any, field_name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise DecodeError("MALFORMED_MESSAGE", f"{field_name} must be an object")
    return value


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise DecodeError("MALFORMED_MESSAGE", f"{field_name} must be a non-empty string")
    return value
