from __future__ import annotations

import asyncio

from pack_trace.consensus.file_log import FileConsensusLog
from pack_trace.consensus.mirror import LedgerReader
from pack_trace.consensus.timeline import (
    NOTE_NOT_FOUND,
    NOTE_TRY_OLDER_PAGES,
    ROW_ANCHORED,
    ROW_LEDGER_ONLY,
    ROW_LOCAL_ONLY,
    ROW_NOT_IN_PAGE,
    BatchIdentifiers,
    build_facility_chain,
    load_batch_timeline,
    load_complete_batch_timeline,
    merge_with_local,
)
from pack_trace.custody.hashing import payload_hash
from pack_trace.custody.payload import CustodyEventPayload, EventType, WireBatch
from pack_trace.custody.records import EventRecord, Facility
from pack_trace.errors import UpstreamUnavailableError

LOG_ID = "0.0.1001"
TARGET = BatchIdentifiers(gtin="04006381333931", lot="LOT-A", expiry="2027-06-30")


def _message(lot: str, event_type: EventType = EventType.MANUFACTURED, *, facility: str = "fac-mfr", to: str | None = None) -> str:
    return CustodyEventPayload(
        type=event_type,
        batch=WireBatch(gtin="04006381333931", lot=lot, exp="2027-06-30"),
        actor_facility_id=facility,
        actor_role="MANUFACTURER" if facility == "fac-mfr" else "DISTRIBUTOR",
        ts="2026-01-15T10:00:00.000Z",
        to_facility_id=to,
    ).serialize()


def _ledger(tmp_path, lots: list[str]) -> FileConsensusLog:
    log = FileConsensusLog(tmp_path)

    async def _fill():
        for lot in lots:
            await log.submit(_message(lot), log_id=LOG_ID)

    asyncio.run(_fill())
    return log


class _FailingAfter:
    """Serves real pages until ``fail_after`` pages were read, then reports the mirror down."""

    def __init__(self, inner: FileConsensusLog, fail_after: int) -> None:
        self.inner = inner
        self.fail_after = fail_after
        self.calls = 0

    async def fetch_raw_page(self, log_id, *, limit=25, order="desc", cursor=None):
        self.calls += 1
        if self.calls > self.fail_after:
            raise UpstreamUnavailableError("MIRROR_TIMEOUT", "mirror node timed out for log 0.0.1001")
        return await self.inner.fetch_raw_page(log_id, limit=limit, order=order, cursor=cursor)


def test_page_is_filtered_to_the_batch_without_renumbering(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A", "LOT-B", "LOT-A", "LOT-C"]))

    page = asyncio.run(load_batch_timeline(reader, LOG_ID, TARGET, limit=10))

    assert [entry.sequence_number for entry in page.entries] == [3, 1]
    assert page.note is None
    assert page.next_cursor is None

    ascending = asyncio.run(load_batch_timeline(reader, LOG_ID, TARGET, limit=10, order="asc"))
    assert [entry.sequence_number for entry in ascending.entries] == [1, 3]


def test_page_without_matches_points_at_older_pages_or_not_found(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A", "LOT-B", "LOT-C"]))

    newest = asyncio.run(load_batch_timeline(reader, LOG_ID, TARGET, limit=2))
    assert newest.entries == []
    assert newest.note_code == NOTE_TRY_OLDER_PAGES
    assert newest.next_cursor

    older = asyncio.run(load_batch_timeline(reader, LOG_ID, TARGET, cursor=newest.next_cursor, limit=2))
    assert [entry.sequence_number for entry in older.entries] == [1]

    missing = BatchIdentifiers(gtin="04006381333931", lot="LOT-Z", expiry="2027-06-30")
    last = asyncio.run(load_batch_timeline(reader, LOG_ID, missing, cursor=newest.next_cursor, limit=2))
    assert last.note_code == NOTE_NOT_FOUND


def test_expiry_is_part_of_the_match(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A"]))
    other_expiry = BatchIdentifiers(gtin=TARGET.gtin, lot=TARGET.lot, expiry="2027-07-31")

    page = asyncio.run(load_batch_timeline(reader, LOG_ID, other_expiry))

    assert page.entries == []
    assert page.note_code == NOTE_NOT_FOUND


def test_page_failure_is_reported_not_raised(tmp_path) -> None:
    reader = LedgerReader(_FailingAfter(_ledger(tmp_path, ["LOT-A"]), fail_after=0))

    page = asyncio.run(load_batch_timeline(reader, LOG_ID, TARGET))

    assert page.entries == []
    assert page.error_code == "MIRROR_TIMEOUT"
    assert page.error == "mirror node timed out for log 0.0.1001"


def test_complete_walk_collects_every_match_in_ascending_order(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A", "LOT-B", "LOT-A", "LOT-B", "LOT-A"]))

    walk = asyncio.run(load_complete_batch_timeline(reader, LOG_ID, TARGET, page_size=2, max_pages=10))

    assert [entry.sequence_number for entry in walk.entries] == [1, 3, 5]
    assert walk.pages_read == 3
    assert not walk.truncated
    assert walk.truncation_note(TARGET) is None


def test_complete_walk_stops_at_page_ceiling(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A", "LOT-B", "LOT-A", "LOT-B", "LOT-A"]))

    walk = asyncio.run(load_complete_batch_timeline(reader, LOG_ID, TARGET, page_size=2, max_pages=1))

    assert walk.truncated
    assert walk.pages_read == 1
    assert [entry.sequence_number for entry in walk.entries] == [1]
    note = walk.truncation_note(TARGET)
    assert "truncated after 1 matched entries" in note
    assert "lot LOT-A" in note


def test_complete_walk_keeps_partial_entries_when_a_later_page_fails(tmp_path) -> None:
    ledger = _ledger(tmp_path, ["LOT-A", "LOT-B", "LOT-A"])

    partial = asyncio.run(
        load_complete_batch_timeline(LedgerReader(_FailingAfter(ledger, fail_after=1)), LOG_ID, TARGET, page_size=2)
    )
    assert [entry.sequence_number for entry in partial.entries] == [1]
    assert partial.truncated
    assert partial.error_code == "MIRROR_TIMEOUT"

    failed = asyncio.run(
        load_complete_batch_timeline(LedgerReader(_FailingAfter(ledger, fail_after=0)), LOG_ID, TARGET, page_size=2)
    )
    assert failed.entries == []
    assert not failed.truncated
    assert failed.pages_read == 0
    assert failed.error_code == "MIRROR_TIMEOUT"


def _event(seq: int, message: str, *, sequence_no: int | None) -> EventRecord:
    return EventRecord(
        event_id=f"evt-{seq}",
        batch_id="batch-a",
        event_seq=seq,
        event_type=EventType.MANUFACTURED,
        from_facility_id="fac-mfr",
        to_facility_id=None,
        handover_event_id=None,
        external_log_id=LOG_ID,
        external_tx_ref=f"{LOG_ID}@{seq}" if sequence_no else f"LOCAL-{seq}",
        external_sequence_no=sequence_no,
        external_running_hash=None,
        consensus_timestamp=None,
        payload_hash=payload_hash(message),
        prev_hash=None,
        message=message,
        created_by="user-mfr",
        created_at_utc="2026-01-15T10:00:00+00:00",
        delivered=sequence_no is not None,
    )


def test_merge_with_local_labels_every_row(tmp_path) -> None:
    reader = LedgerReader(_ledger(tmp_path, ["LOT-A", "LOT-A"]))
    walk = asyncio.run(load_complete_batch_timeline(reader, LOG_ID, TARGET))
    anchored_message = walk.entries[0].message

    rows = merge_with_local(
        [
            _event(1, anchored_message, sequence_no=1),
            _event(2, _message("LOT-A", EventType.HANDOVER, to="fac-dist"), sequence_no=None),
            _event(3, _message("LOT-A", EventType.RECALLED), sequence_no=40),
        ],
        walk.entries,
    )

    assert [(row.status, row.sequence_number) for row in rows] == [
        (ROW_ANCHORED, 1),
        (ROW_LOCAL_ONLY, None),
        (ROW_NOT_IN_PAGE, 40),
        (ROW_LEDGER_ONLY, 2),
    ]
    assert rows[0].hash_verified
    assert not rows[3].hash_verified
    assert rows[0].as_dict()["event"]["id"] == "evt-1"


def test_facility_chain_follows_first_appearance(tmp_path) -> None:
    log = FileConsensusLog(tmp_path)

    async def _fill():
        await log.submit(_message("LOT-A"), log_id=LOG_ID)
        await log.submit(_message("LOT-A", EventType.HANDOVER, to="fac-dist"), log_id=LOG_ID)
        await log.submit(_message("LOT-A", EventType.RECEIVED, facility="fac-dist", to="fac-dist"), log_id=LOG_ID)
        return await load_complete_batch_timeline(LedgerReader(log), LOG_ID, TARGET)

    walk = asyncio.run(_fill())
    facilities = {"fac-mfr": Facility("fac-mfr", "Acme Pharma", "MANUFACTURER", "2026-01-01T00:00:00+00:00")}

    chain = build_facility_chain(walk.entries, facilities)

    assert [(item.facility_id, item.name, item.first_sequence_number) for item in chain] == [
        ("fac-mfr", "Acme Pharma", 1),
        ("fac-dist", "fac-dist", 2),
    ]
    assert chain[0].role == "MANUFACTURER"
    assert chain[1].role is None
