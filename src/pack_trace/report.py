"""Traceability snapshot for one batch: local events, the complete ledger walk and the facility chain.

Rendering (PDF/CSV) happens elsewhere; this module only assembles the data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from pack_trace.consensus.mirror import ConsensusEntry, LedgerReader
from pack_trace.consensus.timeline import (
    DEFAULT_COMPLETE_MAX_PAGES,
    DEFAULT_COMPLETE_PAGE_SIZE,
    NOTE_MESSAGES,
    NOTE_NOT_FOUND,
    BatchIdentifiers,
    FacilityChainEntry,
    MergedRow,
    build_facility_chain,
    load_complete_batch_timeline,
    merge_with_local,
)
from pack_trace.custody.hashing import ChainBreak, verify_chain
from pack_trace.custody.records import BatchRecord, EventRecord, Facility
from pack_trace.custody.store import CustodyStore
from pack_trace.errors import NotFoundError


logger = logging.getLogger("pack_trace.report")


@dataclass
class TraceabilitySnapshot:
    batch: BatchRecord
    events: list[EventRecord]
    log_id: str | None
    entries: list[ConsensusEntry] = field(default_factory=list)
    facilities: dict[str, Facility] = field(default_factory=dict)
    facility_chain: list[FacilityChainEntry] = field(default_factory=list)
    rows: list[MergedRow] = field(default_factory=list)
    chain_breaks: list[ChainBreak] = field(default_factory=list)
    truncated: bool = False
    note: str | None = None
    error: str | None = None
    generated_at_utc: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch": self.batch.as_dict(),
            "events": [event.as_dict() for event in self.events],
            "timeline": {
                "logId": self.log_id,
                "entries": [entry.as_dict() for entry in self.entries],
                "truncated": self.truncated,
                "note": self.note,
                "error": self.error,
            },
            "facilities": {key: value.as_dict() for key, value in self.facilities.items()},
            "facilityChain": [item.as_dict() for item in self.facility_chain],
            "reconciliation": [row.as_dict() for row in self.rows],
            "chainBreaks": [item.as_dict() for item in self.chain_breaks],
            "generatedAt": self.generated_at_utc,
        }


async def load_traceability_snapshot(
    store: CustodyStore,
    reader: LedgerReader | None,
    batch_id: str,
    *,
    default_log_id: str | None = None,
    page_size: int = DEFAULT_COMPLETE_PAGE_SIZE,
    max_pages: int = DEFAULT_COMPLETE_MAX_PAGES,
) -> TraceabilitySnapshot:
    batch = await store.get_batch(batch_id)
    if batch is None:
        raise NotFoundError("BATCH_NOT_FOUND", f"batch {batch_id} does not exist")
    events = await store.list_events(batch.batch_id)
    snapshot = TraceabilitySnapshot(
        batch=batch,
        events=events,
        log_id=batch.external_log_id or default_log_id,
        generated_at_utc=datetime.now(tz=timezone.utc).isoformat(),
    )
    if snapshot.log_id and reader is not None:
        identifiers = BatchIdentifiers(gtin=batch.gtin, lot=batch.lot, expiry=batch.expiry)
        walk = await load_complete_batch_timeline(
            reader,
            snapshot.log_id,
            identifiers,
            page_size=page_size,
            max_pages=max_pages,
        )
        snapshot.entries = walk.entries
        snapshot.truncated = walk.truncated
        snapshot.error = walk.error
        if walk.truncated:
            snapshot.note = walk.truncation_note(identifiers)
        elif not walk.entries and walk.error is None:
            snapshot.note = NOTE_MESSAGES[NOTE_NOT_FOUND]
        snapshot.rows = merge_with_local(events, walk.entries)
        if not walk.truncated:
            snapshot.chain_breaks = verify_chain(
                walk.entries,
                local_hashes=[event.payload_hash for event in events],
            )
    else:
        snapshot.rows = merge_with_local(events, [])

    facility_ids: set[str] = set()
    if batch.current_owner_facility_id:
        facility_ids.add(batch.current_owner_facility_id)
    for event in events:
        facility_ids.update(item for item in (event.from_facility_id, event.to_facility_id) if item)
    for entry in snapshot.entries:
        facility_ids.update(item for item in (entry.payload.actor_facility_id, entry.payload.to_facility_id) if item)
    snapshot.facilities = await store.facilities_by_id(facility_ids)
    snapshot.facility_chain = build_facility_chain(snapshot.entries, snapshot.facilities)
    logger.info(
        "Traceability snapshot batch_id=%s events=%s entries=%s truncated=%s breaks=%s",
        batch.batch_id,
        len(events),
        len(snapshot.entries),
        snapshot.truncated,
        len(snapshot.chain_breaks),
    )
    return snapshot
