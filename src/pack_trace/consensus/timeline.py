"""Batch timelines assembled from shared ledger pages.

A consensus log carries many batches, so every read filters the decoded page down to the
queried (gtin, lot, expiry) triple. Sequence numbers are never renumbered after filtering.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Mapping, Sequence

from pack_trace.custody.records import EventRecord, Facility
from pack_trace.errors import DecodeError, PackTraceError, UpstreamUnavailableError, reason_code

from .mirror import ConsensusEntry, LedgerReader


logger = logging.getLogger("pack_trace.consensus.timeline")

DEFAULT_PAGE_SIZE = 25
DEFAULT_COMPLETE_PAGE_SIZE = 150
DEFAULT_COMPLETE_MAX_PAGES = 20

NOTE_TRY_OLDER_PAGES = "TRY_OLDER_PAGES"
NOTE_NOT_FOUND = "NOT_FOUND"
NOTE_MESSAGES: dict[str, str] = {
    NOTE_TRY_OLDER_PAGES: "No ledger messages for these identifiers appear on this page. Load older entries to continue.",
    NOTE_NOT_FOUND: "No ledger messages were found for these identifiers in the configured log.",
}

ROW_ANCHORED = "ANCHORED"
ROW_LOCAL_ONLY = "LOCAL_ONLY"
ROW_NOT_IN_PAGE = "NOT_IN_PAGE"
ROW_LEDGER_ONLY = "LEDGER_ONLY"


@dataclass(frozen=True)
class BatchIdentifiers:
    gtin: str
    lot: str
    expiry: str

    def as_dict(self) -> dict[str, str]:
        return {"gtin": self.gtin, "lot": self.lot, "expiry": self.expiry}


def matches_batch_identifier(entry: ConsensusEntry, identifiers: BatchIdentifiers) -> bool:
    batch = entry.payload.batch
    return batch.gtin == identifiers.gtin and batch.lot == identifiers.lot and batch.exp == identifiers.expiry


def filter_entries_by_batch(entries: Iterable[ConsensusEntry], identifiers: BatchIdentifiers) -> list[ConsensusEntry]:
    return [entry for entry in entries if matches_batch_identifier(entry, identifiers)]


@dataclass(frozen=True)
class TimelinePage:
    entries: list[ConsensusEntry] = field(default_factory=list)
    next_cursor: str | None = None
    note_code: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def note(self) -> str | None:
        return NOTE_MESSAGES.get(self.note_code) if self.note_code else None


@dataclass(frozen=True)
class CompleteTimeline:
    entries: list[ConsensusEntry] = field(default_factory=list)
    truncated: bool = False
    pages_read: int = 0
    error: str | None = None
    error_code: str | None = None

    def truncation_note(self, identifiers: BatchIdentifiers) -> str | None:
        if not self.truncated:
            return None
        return (
            f"Timeline truncated after {len(self.entries)} matched entries for GTIN {identifiers.gtin}, "
            f"lot {identifiers.lot}, expiry {identifiers.expiry}. "
            "Request a narrower range or paginate via the timeline endpoint for complete coverage."
        )


async def load_batch_timeline(
    reader: LedgerReader,
    log_id: str,
    identifiers: BatchIdentifiers,
    *,
    cursor: str | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    order: str = "desc",
) -> TimelinePage:
    try:
        page = await reader.fetch_page(log_id, cursor=cursor, limit=limit, order=order)
    except (UpstreamUnavailableError, DecodeError) as exc:
        logger.warning("Timeline page failed log_id=%s reason=%s", log_id, reason_code(exc))
        return TimelinePage(error=exc.detail or exc.code, error_code=exc.code)
    matched = filter_entries_by_batch(page.entries, identifiers)
    note_code = None
    if not matched:
        note_code = NOTE_TRY_OLDER_PAGES if page.entries and page.next_cursor else NOTE_NOT_FOUND
    return TimelinePage(entries=matched, next_cursor=page.next_cursor, note_code=note_code)


async def load_complete_batch_timeline(
    reader: LedgerReader,
    log_id: str,
    identifiers: BatchIdentifiers,
    *,
    page_size: int = DEFAULT_COMPLETE_PAGE_SIZE,
    max_pages: int = DEFAULT_COMPLETE_MAX_PAGES,
    order: str = "asc",
) -> CompleteTimeline:
    """Walk the log page by page, keeping whatever matched before a ceiling or failure."""
    by_sequence: dict[int, ConsensusEntry] = {}
    cursor: str | None = None
    pages_read = 0
    truncated = False
    error: PackTraceError | None = None
    while True:
        if pages_read >= max_pages:
            truncated = True
            break
        try:
            page = await reader.fetch_page(log_id, cursor=cursor, limit=page_size, order=order)
        except (UpstreamUnavailableError, DecodeError) as exc:
            logger.warning(
                "Timeline walk stopped log_id=%s pages_read=%s reason=%s",
                log_id,
                pages_read,
                reason_code(exc),
            )
            if pages_read == 0:
                return CompleteTimeline(error=exc.detail or exc.code, error_code=exc.code)
            truncated = True
            error = exc
            break
        pages_read += 1
        for entry in filter_entries_by_batch(page.entries, identifiers):
            by_sequence.setdefault(entry.sequence_number, entry)
        if not page.next_cursor:
            break
        cursor = page.next_cursor
    entries = sorted(by_sequence.values(), key=lambda item: (item.sequence_number, item.consensus_timestamp))
    return CompleteTimeline(
        entries=entries,
        truncated=truncated,
        pages_read=pages_read,
        error=(error.detail or error.code) if error else None,
        error_code=error.code if error else None,
    )


@dataclass(frozen=True)
class MergedRow:
    status: str
    event: EventRecord | None = None
    entry: ConsensusEntry | None = None

    @property
    def sequence_number(self) -> int | None:
        if self.entry is not None:
            return self.entry.sequence_number
        return self.event.external_sequence_no if self.event else None

    @property
    def hash_verified(self) -> bool:
        return self.event is not None and self.entry is not None and self.event.payload_hash == self.entry.payload_hash

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "sequenceNumber": self.sequence_number,
            "hashVerified": self.hash_verified,
            "event": self.event.as_dict() if self.event else None,
            "ledger": self.entry.as_dict() if self.entry else None,
        }


def merge_with_local(events: Sequence[EventRecord], entries: Sequence[ConsensusEntry]) -> list[MergedRow]:
    """Pair local events with the ledger entries of the same sequence number.

    Local events without a sequence number are LOCAL_ONLY; anchored events whose sequence is
    not among ``entries`` are NOT_IN_PAGE; entries with no local event are LEDGER_ONLY.
    """
    by_sequence = {entry.sequence_number: entry for entry in entries}
    paired: set[int] = set()
    rows: list[MergedRow] = []
    for event in events:
        sequence = event.external_sequence_no
        if sequence is None or not event.anchored:
            rows.append(MergedRow(status=ROW_LOCAL_ONLY, event=event))
            continue
        entry = by_sequence.get(sequence)
        if entry is None:
            rows.append(MergedRow(status=ROW_NOT_IN_PAGE, event=event))
            continue
        paired.add(sequence)
        rows.append(MergedRow(status=ROW_ANCHORED, event=event, entry=entry))
    for entry in entries:
        if entry.sequence_number not in paired:
            rows.append(MergedRow(status=ROW_LEDGER_ONLY, entry=entry))
    return rows


@dataclass(frozen=True)
class FacilityChainEntry:
    facility_id: str
    name: str
    facility_type: str | None
    role: str | None
    first_sequence_number: int | None
    first_consensus_timestamp: str | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "facilityId": self.facility_id,
            "name": self.name,
            "type": self.facility_type,
            "role": self.role,
            "firstSequenceNumber": self.first_sequence_number,
            "firstConsensusTimestamp": self.first_consensus_timestamp,
        }


def build_facility_chain(
    entries: Iterable[ConsensusEntry],
    facilities: Mapping[str, Facility] | None = None,
) -> list[FacilityChainEntry]:
    lookup = facilities or {}
    chain: dict[str, FacilityChainEntry] = {}

    def _register(facility_id: str | None, entry: ConsensusEntry, role: str | None) -> None:
        if not facility_id or facility_id in chain:
            return
        facility = lookup.get(facility_id)
        chain[facility_id] = FacilityChainEntry(
            facility_id=facility_id,
            name=facility.name if facility else facility_id,
            facility_type=facility.facility_type if facility else None,
            role=role,
            first_sequence_number=entry.sequence_number,
            first_consensus_timestamp=entry.consensus_timestamp,
        )

    for entry in sorted(entries, key=lambda item: item.sequence_number):
        _register(entry.payload.actor_facility_id, entry, entry.payload.actor_role or None)
        _register(entry.payload.to_facility_id, entry, None)
    return list(chain.values())
