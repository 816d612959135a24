"""Payload hashing and prev-hash chain checks."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
from typing import Any, Iterable, Protocol

from .payload import CustodyEventPayload, EventType


PREV_HASH_PREFIX = "sha256:"


class ChainedEntry(Protocol):
    sequence_number: int
    message: str
    payload: CustodyEventPayload


def payload_hash(message: str | bytes) -> str:
    """sha256 hex over the exact bytes sent to the consensus log."""
    data = message.encode("utf-8") if isinstance(message, str) else bytes(message)
    return hashlib.sha256(data).hexdigest()


def prev_link(hash_hex: str | None) -> str | None:
    if not hash_hex:
        return None
    return f"{PREV_HASH_PREFIX}{hash_hex}"


def unlink(prev: str | None) -> str | None:
    if not prev:
        return None
    if prev.startswith(PREV_HASH_PREFIX):
        return prev[len(PREV_HASH_PREFIX) :]
    return prev


@dataclass(frozen=True)
class ChainBreak:
    sequence_number: int
    reason: str
    actual_prev: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "sequenceNumber": self.sequence_number,
            "reason": self.reason,
            "actualPrev": self.actual_prev,
        }


def verify_chain(
    entries: Iterable[ChainedEntry],
    *,
    local_hashes: Iterable[str] | None = None,
) -> list[ChainBreak]:
    """Resolve every entry's prev link to the entry whose payload hash it names.

    Links are followed by hash, not by ledger position: an event recorded locally while the
    log was down and anchored later sits after its successor on the ledger and is still a
    valid link. A prev naming nothing in range is a gap, ``PREDECESSOR_NOT_IN_RANGE``. When
    ``local_hashes`` is given, a gap naming a locally recorded event is
    ``PREDECESSOR_NOT_ON_LEDGER`` and one naming no known event is ``PREV_MISMATCH``.
    """
    ordered = sorted(entries, key=lambda item: item.sequence_number)
    by_hash = {payload_hash(entry.message): entry for entry in ordered}
    known = set(local_hashes) if local_hashes is not None else None
    linked: set[str] = set()
    roots = 0
    breaks: list[ChainBreak] = []
    for entry in ordered:
        event = entry.payload
        target = unlink(event.prev)
        if target is None:
            roots += 1
            if roots > 1:
                breaks.append(ChainBreak(entry.sequence_number, "PREV_MISSING", None))
            continue
        predecessor = by_hash.get(target)
        if predecessor is None:
            if known is None:
                reason = "PREDECESSOR_NOT_IN_RANGE"
            elif target in known:
                reason = "PREDECESSOR_NOT_ON_LEDGER"
            else:
                reason = "PREV_MISMATCH"
            breaks.append(ChainBreak(entry.sequence_number, reason, event.prev))
            continue
        if target in linked:
            breaks.append(ChainBreak(entry.sequence_number, "FORKED_CHAIN", event.prev))
            continue
        linked.add(target)
        follows_handover = predecessor.payload.type is EventType.HANDOVER
        if event.type is EventType.RECEIVED and not follows_handover:
            breaks.append(ChainBreak(entry.sequence_number, "HANDOVER_MISSING", event.prev))
        elif event.type is not EventType.RECEIVED and follows_handover:
            # nothing but the receipt may follow a handover
            breaks.append(ChainBreak(entry.sequence_number, "PREV_MISMATCH", event.prev))
    return breaks
