"""Custody store: facilities, batches, events and idempotency keys on sqlite or postgres.

Public methods are coroutines that push each short transaction to a worker thread. Batch
pointer changes are serialized by the write transaction plus a compare-and-swap on
``pt_batches.version``; no in-process lock is involved.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Callable, TypeVar
import uuid

from pack_trace.errors import ConflictError, NotFoundError

from .db import SqlBackend, utc_now
from .idempotency import SCHEMA as IDEMPOTENCY_SCHEMA, IdempotencyClaim, IdempotencyIndex
from .payload import EventType
from .records import BatchRecord, EventRecord, Facility
from .state_machine import Transition


logger = logging.getLogger("pack_trace.custody.store")

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS pt_facilities (
    facility_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    facility_type TEXT NOT NULL,
    country TEXT,
    gs1_company_prefix TEXT,
    created_at_utc TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS pt_batches (
    batch_id TEXT PRIMARY KEY,
    gtin TEXT NOT NULL,
    lot TEXT NOT NULL,
    expiry TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    product_name TEXT,
    current_owner_facility_id TEXT,
    pending_receipt_to_facility_id TEXT,
    last_handover_event_id TEXT,
    terminal_event_type TEXT,
    external_log_id TEXT,
    version INTEGER NOT NULL,
    created_by TEXT NOT NULL,
    created_at_utc TEXT NOT NULL,
    UNIQUE (gtin, lot)
);
CREATE TABLE IF NOT EXISTS pt_events (
    event_id TEXT PRIMARY KEY,
    batch_id TEXT NOT NULL,
    event_seq INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    from_facility_id TEXT,
    to_facility_id TEXT,
    handover_event_id TEXT,
    external_log_id TEXT,
    external_tx_ref TEXT NOT NULL,
    external_sequence_no BIGINT,
    external_running_hash TEXT,
    consensus_timestamp TEXT,
    payload_hash TEXT NOT NULL,
    prev_hash TEXT,
    message_json TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at_utc TEXT NOT NULL,
    delivered INTEGER NOT NULL DEFAULT 0,
    UNIQUE (batch_id, event_seq)
);
CREATE INDEX IF NOT EXISTS pt_events_local_only ON pt_events (delivered, created_at_utc);
"""

BATCH_COLUMNS = (
    "batch_id, gtin, lot, expiry, quantity, product_name, current_owner_facility_id, "
    "pending_receipt_to_facility_id, last_handover_event_id, terminal_event_type, external_log_id, "
    "version, created_by, created_at_utc"
)
EVENT_COLUMNS = (
    "event_id, batch_id, event_seq, event_type, from_facility_id, to_facility_id, handover_event_id, "
    "external_log_id, external_tx_ref, external_sequence_no, external_running_hash, consensus_timestamp, "
    "payload_hash, prev_hash, message_json, created_by, created_at_utc, delivered"
)
FACILITY_COLUMNS = "facility_id, name, facility_type, country, gs1_company_prefix, created_at_utc"


@dataclass(frozen=True)
class EventDraft:
    """A fully built event waiting for the commit transaction."""

    event_id: str
    batch_id: str
    expected_version: int
    event_type: EventType
    external_log_id: str | None
    delivered: bool
    external_tx_ref: str
    external_sequence_no: int | None
    external_running_hash: str | None
    consensus_timestamp: str | None
    payload_hash: str
    prev_hash: str | None
    message: str
    created_by: str


@dataclass(frozen=True)
class IdempotencyBinding:
    key: str
    claim_token: str
    result: dict[str, Any]


Revalidate = Callable[[BatchRecord, EventRecord | None], Transition]


class CustodyStore:
    def __init__(self, locator: str | Path, *, in_flight_lease_seconds: float = 60.0) -> None:
        self.backend = SqlBackend(locator)
        self.idempotency = IdempotencyIndex(self.backend, lease_seconds=in_flight_lease_seconds)
        self._init_schema()

    @property
    def locator(self) -> str:
        return self.backend.locator

    async def create_facility(
        self,
        *,
        name: str,
        facility_type: str,
        country: str | None = None,
        gs1_company_prefix: str | None = None,
        facility_id: str | None = None,
    ) -> Facility:
        facility = Facility(
            facility_id=facility_id or str(uuid.uuid4()),
            name=name,
            facility_type=facility_type.strip().upper(),
            created_at_utc=utc_now(),
            country=country,
            gs1_company_prefix=gs1_company_prefix,
        )

        def _tx(conn: Any) -> None:
            inserted = self.backend.execute(
                conn,
                f"""
                INSERT INTO pt_facilities ({FACILITY_COLUMNS})
                VALUES ({{p1}}, {{p2}}, {{p3}}, {{p4}}, {{p5}}, {{p6}})
                ON CONFLICT (facility_id) DO NOTHING
                """,
                (
                    facility.facility_id,
                    facility.name,
                    facility.facility_type,
                    facility.country,
                    facility.gs1_company_prefix,
                    facility.created_at_utc,
                ),
            )
            if inserted != 1:
                raise ConflictError("FACILITY_EXISTS", f"facility {facility.facility_id} already exists")

        await self._write(_tx)
        logger.info("Custody facility created facility_id=%s type=%s", facility.facility_id, facility.facility_type)
        return facility

    async def get_facility(self, facility_id: str | None) -> Facility | None:
        if not facility_id:
            return None

        def _read(conn: Any) -> Facility | None:
            row = self.backend.query_one(
                conn,
                f"SELECT {FACILITY_COLUMNS} FROM pt_facilities WHERE facility_id = {{p1}}",
                (facility_id,),
            )
            return Facility.from_row(row) if row else None

        return await self._read(_read)

    async def list_facilities(
        self,
        *,
        search: str | None = None,
        exclude_facility_id: str | None = None,
        limit: int = 25,
    ) -> list[Facility]:
        clauses: list[str] = []
        params: list[Any] = []

        def _bind(value: Any) -> str:
            params.append(value)
            return f"{{p{len(params)}}}"

        if search:
            like = f"%{search.strip().lower()}%"
            columns = (
                "lower(name)",
                "lower(coalesce(gs1_company_prefix, ''))",
                "lower(coalesce(country, ''))",
                "lower(facility_id)",
            )
            clauses.append("(" + " OR ".join(f"{column} LIKE {_bind(like)}" for column in columns) + ")")
        if exclude_facility_id:
            clauses.append(f"facility_id <> {_bind(exclude_facility_id)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_param = _bind(limit)

        def _read(conn: Any) -> list[Facility]:
            rows = self.backend.query_all(
                conn,
                f"SELECT {FACILITY_COLUMNS} FROM pt_facilities {where} ORDER BY name, facility_id LIMIT {limit_param}",
                tuple(params),
            )
            return [Facility.from_row(row) for row in rows]

        return await self._read(_read)

    async def facilities_by_id(self, facility_ids: set[str]) -> dict[str, Facility]:
        found: dict[str, Facility] = {}
        for facility_id in sorted(facility_ids):
            facility = await self.get_facility(facility_id)
            if facility is not None:
                found[facility_id] = facility
        return found

    async def create_batch(
        self,
        *,
        gtin: str,
        lot: str,
        expiry: str,
        quantity: int,
        product_name: str,
        created_by: str,
        external_log_id: str | None = None,
        batch_id: str | None = None,
    ) -> BatchRecord:
        record = BatchRecord(
            batch_id=batch_id or str(uuid.uuid4()),
            gtin=gtin,
            lot=lot,
            expiry=expiry,
            quantity=int(quantity),
            product_name=product_name,
            current_owner_facility_id=None,
            pending_receipt_to_facility_id=None,
            last_handover_event_id=None,
            terminal_event_type=None,
            external_log_id=external_log_id,
            version=0,
            created_by=created_by,
            created_at_utc=utc_now(),
        )

        def _tx(conn: Any) -> None:
            existing = self.backend.query_one(
                conn,
                "SELECT batch_id FROM pt_batches WHERE batch_id = {p1} OR (gtin = {p2} AND lot = {p3})",
                (record.batch_id, record.gtin, record.lot),
            )
            if existing is not None:
                raise ConflictError(
                    "BATCH_EXISTS",
                    f"a batch with GTIN {record.gtin} and lot {record.lot} is already registered",
                    context={"batch_id": existing["batch_id"]},
                )
            self.backend.execute(
                conn,
                f"""
                INSERT INTO pt_batches ({BATCH_COLUMNS})
                VALUES ({{p1}}, {{p2}}, {{p3}}, {{p4}}, {{p5}}, {{p6}}, NULL, NULL, NULL, NULL, {{p7}}, 0, {{p8}}, {{p9}})
                """,
                (
                    record.batch_id,
                    record.gtin,
                    record.lot,
                    record.expiry,
                    record.quantity,
                    record.product_name,
                    record.external_log_id,
                    record.created_by,
                    record.created_at_utc,
                ),
            )

        await self._write(_tx)
        logger.info("Custody batch created batch_id=%s gtin=%s lot=%s", record.batch_id, record.gtin, record.lot)
        return record

    async def get_batch(self, batch_id: str) -> BatchRecord | None:
        def _read(conn: Any) -> BatchRecord | None:
            row = self.backend.query_one(
                conn,
                f"SELECT {BATCH_COLUMNS} FROM pt_batches WHERE batch_id = {{p1}}",
                (batch_id,),
            )
            return BatchRecord.from_row(row) if row else None

        return await self._read(_read)

    async def find_batch(self, gtin: str, lot: str) -> BatchRecord | None:
        def _read(conn: Any) -> BatchRecord | None:
            row = self.backend.query_one(
                conn,
                f"SELECT {BATCH_COLUMNS} FROM pt_batches WHERE gtin = {{p1}} AND lot = {{p2}}",
                (gtin, lot),
            )
            return BatchRecord.from_row(row) if row else None

        return await self._read(_read)

    async def get_event(self, event_id: str | None) -> EventRecord | None:
        if not event_id:
            return None
        return await self._read(lambda conn: self._event_by_id(conn, event_id))

    async def latest_event(self, batch_id: str) -> EventRecord | None:
        def _read(conn: Any) -> EventRecord | None:
            row = self.backend.query_one(
                conn,
                f"""
                SELECT {EVENT_COLUMNS} FROM pt_events
                WHERE batch_id = {{p1}} ORDER BY event_seq DESC LIMIT 1
                """,
                (batch_id,),
            )
            return EventRecord.from_row(row) if row else None

        return await self._read(_read)

    async def list_events(self, batch_id: str) -> list[EventRecord]:
        def _read(conn: Any) -> list[EventRecord]:
            rows = self.backend.query_all(
                conn,
                f"SELECT {EVENT_COLUMNS} FROM pt_events WHERE batch_id = {{p1}} ORDER BY event_seq ASC",
                (batch_id,),
            )
            return [EventRecord.from_row(row) for row in rows]

        return await self._read(_read)

    async def list_local_only_events(self, *, limit: int = 100) -> list[EventRecord]:
        def _read(conn: Any) -> list[EventRecord]:
            rows = self.backend.query_all(
                conn,
                f"""
                SELECT {EVENT_COLUMNS} FROM pt_events
                WHERE delivered = 0
                ORDER BY created_at_utc ASC, event_seq ASC LIMIT {{p1}}
                """,
                (limit,),
            )
            return [EventRecord.from_row(row) for row in rows]

        return await self._read(_read)

    async def claim_idempotency_key(self, key: str, request_hash: str) -> IdempotencyClaim:
        return await asyncio.to_thread(self.idempotency.claim, key, request_hash)

    async def release_idempotency_key(self, key: str, claim_token: str) -> bool:
        return await asyncio.to_thread(self.idempotency.release, key, claim_token)

    async def lookup_idempotency_key(self, key: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self.idempotency.lookup, key)

    async def commit_event(
        self,
        draft: EventDraft,
        revalidate: Revalidate,
        *,
        idempotency: IdempotencyBinding | None = None,
    ) -> EventRecord:
        """Insert the event and move the batch pointers in one transaction.

        ``revalidate`` re-runs the transition rules against the row read inside the
        transaction; the version compare-and-swap then rejects any interleaved writer.
        """

        def _tx(conn: Any) -> EventRecord:
            lock_clause = " FOR UPDATE" if self.backend.is_postgres else ""
            row = self.backend.query_one(
                conn,
                f"SELECT {BATCH_COLUMNS} FROM pt_batches WHERE batch_id = {{p1}}{lock_clause}",
                (draft.batch_id,),
            )
            if row is None:
                raise NotFoundError("BATCH_NOT_FOUND", f"batch {draft.batch_id} does not exist")
            batch = BatchRecord.from_row(row)
            handover = self._event_by_id(conn, batch.last_handover_event_id)
            transition = revalidate(batch, handover)
            if batch.version != draft.expected_version:
                raise ConflictError(
                    "CONCURRENT_CUSTODY_CHANGE",
                    f"batch {batch.batch_id} changed while this event was being recorded; retry",
                    context={"expected_version": draft.expected_version, "actual_version": batch.version},
                )
            event = EventRecord(
                event_id=draft.event_id,
                batch_id=batch.batch_id,
                event_seq=batch.version + 1,
                event_type=draft.event_type,
                from_facility_id=transition.from_facility_id,
                to_facility_id=transition.to_facility_id,
                handover_event_id=transition.handover_event_id,
                external_log_id=draft.external_log_id,
                external_tx_ref=draft.external_tx_ref,
                external_sequence_no=draft.external_sequence_no,
                external_running_hash=draft.external_running_hash,
                consensus_timestamp=draft.consensus_timestamp,
                payload_hash=draft.payload_hash,
                prev_hash=draft.prev_hash,
                message=draft.message,
                created_by=draft.created_by,
                created_at_utc=utc_now(),
                delivered=draft.delivered,
            )
            self._insert_event(conn, event)
            last_handover = event.event_id if transition.records_handover else batch.last_handover_event_id
            terminal = transition.event_type.value if transition.terminal else None
            updated = self.backend.execute(
                conn,
                """
                UPDATE pt_batches
                SET current_owner_facility_id = {p1},
                    pending_receipt_to_facility_id = {p2},
                    last_handover_event_id = {p3},
                    terminal_event_type = {p4},
                    version = version + 1
                WHERE batch_id = {p5} AND version = {p6}
                """,
                (
                    transition.owner_after,
                    transition.pending_after,
                    last_handover,
                    terminal,
                    batch.batch_id,
                    draft.expected_version,
                ),
            )
            if updated != 1:
                raise ConflictError(
                    "CONCURRENT_CUSTODY_CHANGE",
                    f"batch {batch.batch_id} changed while this event was being recorded; retry",
                )
            if idempotency is not None:
                self.idempotency.finalize(
                    conn,
                    key=idempotency.key,
                    claim_token=idempotency.claim_token,
                    event_id=event.event_id,
                    result=idempotency.result,
                )
            return event

        return await self._write(_tx)

    async def attach_consensus_receipt(
        self,
        event_id: str,
        *,
        external_log_id: str,
        external_tx_ref: str,
        external_sequence_no: int,
        external_running_hash: str | None,
        consensus_timestamp: str | None,
    ) -> bool:
        """Fill the consensus fields of a local-only event; False when already anchored."""

        def _tx(conn: Any) -> int:
            return self.backend.execute(
                conn,
                """
                UPDATE pt_events
                SET external_log_id = {p1},
                    external_tx_ref = {p2},
                    external_sequence_no = {p3},
                    external_running_hash = {p4},
                    consensus_timestamp = {p5},
                    delivered = 1
                WHERE event_id = {p6} AND delivered = 0
                """,
                (
                    external_log_id,
                    external_tx_ref,
                    external_sequence_no,
                    external_running_hash,
                    consensus_timestamp,
                    event_id,
                ),
            )

        return await self._write(_tx) == 1

    def _insert_event(self, conn: Any, event: EventRecord) -> None:
        self.backend.execute(
            conn,
            f"""
            INSERT INTO pt_events ({EVENT_COLUMNS})
            VALUES ({{p1}}, {{p2}}, {{p3}}, {{p4}}, {{p5}}, {{p6}}, {{p7}}, {{p8}}, {{p9}}, {{p10}},
                    {{p11}}, {{p12}}, {{p13}}, {{p14}}, {{p15}}, {{p16}}, {{p17}}, {{p18}})
            """,
            (
                event.event_id,
                event.batch_id,
                event.event_seq,
                event.event_type.value,
                event.from_facility_id,
                event.to_facility_id,
                event.handover_event_id,
                event.external_log_id,
                event.external_tx_ref,
                event.external_sequence_no,
                event.external_running_hash,
                event.consensus_timestamp,
                event.payload_hash,
                event.prev_hash,
                event.message,
                event.created_by,
                event.created_at_utc,
                int(event.delivered),
            ),
        )

    def _event_by_id(self, conn: Any, event_id: str | None) -> EventRecord | None:
        if not event_id:
            return None
        row = self.backend.query_one(
            conn,
            f"SELECT {EVENT_COLUMNS} FROM pt_events WHERE event_id = {{p1}}",
            (event_id,),
        )
        return EventRecord.from_row(row) if row else None

    async def _write(self, func: Callable[[Any], T]) -> T:
        return await asyncio.to_thread(self.backend.run_write_tx, func)

    async def _read(self, func: Callable[[Any], T]) -> T:
        return await asyncio.to_thread(self.backend.run_read, func)

    def _init_schema(self) -> None:
        script = SCHEMA + IDEMPOTENCY_SCHEMA
        self.backend.run_write_tx(lambda conn: self.backend.execute_script(conn, script))
