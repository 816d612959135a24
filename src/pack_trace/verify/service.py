"""Pack verification: scanned code -> custody record -> ledger timeline page -> verdict."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import time
from typing import Any, Callable

from pack_trace.consensus.mirror import LedgerReader, encode_cursor
from pack_trace.consensus.timeline import BatchIdentifiers, TimelinePage, load_batch_timeline
from pack_trace.custody.payload import EventType
from pack_trace.custody.records import BatchRecord, Facility
from pack_trace.custody.store import CustodyStore
from pack_trace.errors import MalformedIdentifierError
from pack_trace.identifier.codec import GS1Identity, decode


logger = logging.getLogger("pack_trace.verify.service")

STATUS_IDLE = "idle"
STATUS_GENUINE = "genuine"
STATUS_UNKNOWN = "unknown"
STATUS_MISMATCH = "mismatch"
STATUS_RECALLED = "recalled"
STATUS_ERROR = "error"

STATUS_MESSAGES: dict[str, str] = {
    STATUS_GENUINE: "This pack is authentic and present on the custody timeline.",
    STATUS_RECALLED: "This pack has an active recall notice. Quarantine immediately.",
    STATUS_UNKNOWN: "No custody record was found for the provided identifiers.",
    STATUS_MISMATCH: "The GTIN and lot match a custody record, but the expiry date differs.",
    STATUS_ERROR: "Unable to verify the provided code.",
    STATUS_IDLE: "Scan a GS1 DataMatrix barcode or paste the encoded value to verify the pack.",
}
MISMATCH_DETAIL = "Expiry does not match the custody record. Confirm the label and contact support."
NO_LOG_DETAIL = "This batch is not linked to a consensus log. Request support to publish custody events."

DEFAULT_VERIFY_LIMIT = 10
DEFAULT_CACHE_SECONDS = 45.0
MAX_VERIFY_PAGE_SIZE = 100
MAX_CACHE_ENTRIES = 256


@dataclass
class VerifyState:
    code: str | None
    status: str
    message: str
    parsed: GS1Identity | None = None
    parse_error: str | None = None
    batch: BatchRecord | None = None
    log_id: str | None = None
    timeline: TimelinePage = field(default_factory=TimelinePage)
    facilities: dict[str, Facility] = field(default_factory=dict)
    timeline_error: str | None = None

    @property
    def next_cursor(self) -> str | None:
        return self.timeline.next_cursor

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "status": self.status,
            "message": self.message,
            "parsed": self.parsed.as_dict() if self.parsed else None,
            "parseError": self.parse_error,
            "batch": self.batch.as_dict() if self.batch else None,
            "logId": self.log_id,
            "timelineEntries": [entry.as_dict() for entry in self.timeline.entries],
            "timelineNote": self.timeline.note,
            "timelineError": self.timeline_error,
            "nextCursor": encode_cursor(self.timeline.next_cursor),
            "facilities": {key: value.as_dict() for key, value in self.facilities.items()},
        }


class VerifyService:
    def __init__(
        self,
        store: CustodyStore,
        reader: LedgerReader | None,
        *,
        default_log_id: str | None = None,
        cache_seconds: float = DEFAULT_CACHE_SECONDS,
        max_cache_entries: int = MAX_CACHE_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.reader = reader
        self.default_log_id = default_log_id
        self.cache_seconds = float(cache_seconds)
        self._clock = clock
        self.max_cache_entries = max(1, int(max_cache_entries))
        self._cache: dict[str, tuple[float, TimelinePage]] = {}

    async def verify_code(
        self,
        code: str | None,
        *,
        cursor: str | None = None,
        limit: int = DEFAULT_VERIFY_LIMIT,
    ) -> VerifyState:
        trimmed = code.strip() if isinstance(code, str) else None
        if not trimmed:
            return VerifyState(code=None, status=STATUS_IDLE, message=STATUS_MESSAGES[STATUS_IDLE])
        limit = min(limit, MAX_VERIFY_PAGE_SIZE)
        try:
            parsed = decode(trimmed)
        except MalformedIdentifierError as exc:
            return VerifyState(
                code=trimmed,
                status=STATUS_ERROR,
                message=exc.detail or STATUS_MESSAGES[STATUS_ERROR],
                parse_error=exc.detail,
            )

        batch = await self.store.find_batch(parsed.gtin14, parsed.lot)
        if batch is None:
            state = VerifyState(code=trimmed, status=STATUS_UNKNOWN, message=STATUS_MESSAGES[STATUS_UNKNOWN], parsed=parsed)
        elif batch.expiry != parsed.expiry_iso:
            state = VerifyState(code=trimmed, status=STATUS_MISMATCH, message=MISMATCH_DETAIL, parsed=parsed, batch=batch)
        else:
            state = VerifyState(code=trimmed, status=STATUS_GENUINE, message=STATUS_MESSAGES[STATUS_GENUINE], parsed=parsed, batch=batch)

        if batch is not None:
            state.log_id = batch.external_log_id or self.default_log_id
            if state.log_id and self.reader is not None:
                state.timeline = await self._timeline(state.log_id, batch, cursor=cursor, limit=limit)
                state.timeline_error = state.timeline.error
            elif not state.log_id:
                state.timeline_error = NO_LOG_DETAIL

        recalled_on_ledger = any(entry.payload.type is EventType.RECALLED for entry in state.timeline.entries)
        recalled_locally = batch is not None and batch.terminal_event_type is EventType.RECALLED
        if recalled_on_ledger or recalled_locally:
            state.status = STATUS_RECALLED
            state.message = STATUS_MESSAGES[STATUS_RECALLED]

        state.facilities = await self.store.facilities_by_id(_facility_ids(state))
        logger.info(
            "Verify result status=%s gtin=%s lot=%s entries=%s",
            state.status,
            parsed.gtin14,
            parsed.lot,
            len(state.timeline.entries),
        )
        return state

    async def _timeline(self, log_id: str, batch: BatchRecord, *, cursor: str | None, limit: int) -> TimelinePage:
        identifiers = BatchIdentifiers(gtin=batch.gtin, lot=batch.lot, expiry=batch.expiry)
        if cursor:
            return await load_batch_timeline(self.reader, log_id, identifiers, cursor=cursor, limit=limit)
        cache_key = f"{log_id}:{batch.gtin}:{batch.lot}:{batch.expiry}:{limit}"
        now = self._clock()
        cached = self._cache.get(cache_key)
        if cached and cached[0] > now:
            return cached[1]
        page = await load_batch_timeline(self.reader, log_id, identifiers, limit=limit)
        if page.error is None:
            self._remember(cache_key, page, now)
        return page

    def _remember(self, cache_key: str, page: TimelinePage, now: float) -> None:
        for key in [key for key, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[key]
        self._cache.pop(cache_key, None)
        while len(self._cache) >= self.max_cache_entries:
            # insertion order is expiry order
            del self._cache[next(iter(self._cache))]
        self._cache[cache_key] = (now + self.cache_seconds, page)


def _facility_ids(state: VerifyState) -> set[str]:
    ids: set[str] = set()
    if state.batch and state.batch.current_owner_facility_id:
        ids.add(state.batch.current_owner_facility_id)
    for entry in state.timeline.entries:
        ids.add(entry.payload.actor_facility_id)
        if entry.payload.to_facility_id:
            ids.add(entry.payload.to_facility_id)
    return ids
