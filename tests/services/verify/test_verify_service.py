from __future__ import annotations

import asyncio

from pack_trace.consensus.file_log import FileConsensusLog
from pack_trace.consensus.mirror import LedgerReader
from pack_trace.custody.payload import EventType
from pack_trace.custody.recorder import CustodyEventRequest, EventRecorder
from pack_trace.custody.records import Actor
from pack_trace.custody.store import CustodyStore
from pack_trace.errors import UpstreamUnavailableError
from pack_trace.identifier.codec import encode
from pack_trace.verify.public import mask_serial, public_view
from pack_trace.verify.service import (
    MISMATCH_DETAIL,
    NO_LOG_DETAIL,
    STATUS_ERROR,
    STATUS_GENUINE,
    STATUS_IDLE,
    STATUS_MESSAGES,
    STATUS_MISMATCH,
    STATUS_RECALLED,
    STATUS_UNKNOWN,
    MAX_VERIFY_PAGE_SIZE,
    VerifyService,
)

LOG_ID = "0.0.1001"
MFR = Actor("user-mfr", "MANUFACTURER", "fac-mfr")
AUDITOR = Actor("user-audit", "AUDITOR", "fac-audit")
PACK_CODE = encode(gtin="400638133393", lot="LOT-42", expiry="2027-06-30", serial="SN12345678").machine_form


class _CountingSource:
    def __init__(self, inner: FileConsensusLog, *, down: bool = False) -> None:
        self.inner = inner
        self.down = down
        self.calls = 0
        self.limits: list[int] = []

    async def fetch_raw_page(self, log_id, *, limit=25, order="desc", cursor=None):
        self.calls += 1
        self.limits.append(limit)
        if self.down:
            raise UpstreamUnavailableError("MIRROR_UNREACHABLE", "connection refused")
        return await self.inner.fetch_raw_page(log_id, limit=limit, order=order, cursor=cursor)


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _world(tmp_path, *events: tuple[Actor, EventType, str | None], default_log_id: str | None = LOG_ID):
    store = CustodyStore(str(tmp_path / "custody.sqlite"))
    ledger = FileConsensusLog(tmp_path / "ledger")
    recorder = EventRecorder(store, ledger, default_log_id=default_log_id)

    async def _seed():
        await store.create_facility(name="Acme Pharma", facility_type="MANUFACTURER", facility_id="fac-mfr")
        await store.create_facility(name="North Distribution", facility_type="DISTRIBUTOR", facility_id="fac-dist")
        batch, _ = await recorder.create_batch(MFR, gtin="400638133393", lot="LOT-42", expiry="2027-06-30", quantity=10)
        for actor, event_type, to_facility in events:
            await recorder.record(actor, CustodyEventRequest(event_type, batch_id=batch.batch_id, to_facility_id=to_facility))

    asyncio.run(_seed())
    return store, ledger


def test_blank_code_is_idle_and_garbage_is_an_error(tmp_path) -> None:
    store, ledger = _world(tmp_path)
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)

    for code in (None, "", "   "):
        state = asyncio.run(service.verify_code(code))
        assert state.status == STATUS_IDLE
        assert state.message == STATUS_MESSAGES[STATUS_IDLE]

    state = asyncio.run(service.verify_code("not-a-gs1-code"))
    assert state.status == STATUS_ERROR
    assert state.parse_error
    assert state.batch is None


def test_unregistered_pack_is_unknown(tmp_path) -> None:
    store, ledger = _world(tmp_path)
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)
    code = encode(gtin="400638133393", lot="LOT-99", expiry="2027-06-30").human_form

    state = asyncio.run(service.verify_code(code))

    assert state.status == STATUS_UNKNOWN
    assert state.parsed.lot == "LOT-99"
    assert state.timeline.entries == []
    assert state.facilities == {}


def test_registered_pack_is_genuine_with_timeline_and_facilities(tmp_path) -> None:
    store, ledger = _world(
        tmp_path,
        (MFR, EventType.MANUFACTURED, None),
        (MFR, EventType.HANDOVER, "fac-dist"),
    )
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)

    state = asyncio.run(service.verify_code(f"  {PACK_CODE}  "))

    assert state.status == STATUS_GENUINE
    assert state.code == PACK_CODE
    assert state.log_id == LOG_ID
    assert [entry.sequence_number for entry in state.timeline.entries] == [2, 1]
    assert set(state.facilities) == {"fac-mfr", "fac-dist"}
    body = state.as_dict()
    assert body["parsed"]["serial"] == "SN12345678"
    assert body["batch"]["state"] == "PENDING_RECEIPT"
    assert body["nextCursor"] is None


def test_expiry_mismatch_is_flagged(tmp_path) -> None:
    store, ledger = _world(tmp_path, (MFR, EventType.MANUFACTURED, None))
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)
    code = encode(gtin="400638133393", lot="LOT-42", expiry="2027-07-31").human_form

    state = asyncio.run(service.verify_code(code))

    assert state.status == STATUS_MISMATCH
    assert state.message == MISMATCH_DETAIL
    assert state.batch is not None


def test_recall_on_the_ledger_overrides_the_verdict(tmp_path) -> None:
    store, ledger = _world(
        tmp_path,
        (MFR, EventType.MANUFACTURED, None),
        (AUDITOR, EventType.RECALLED, None),
    )
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)

    state = asyncio.run(service.verify_code(PACK_CODE))

    assert state.status == STATUS_RECALLED
    assert state.message == STATUS_MESSAGES[STATUS_RECALLED]


def test_local_recall_is_reported_when_ledger_is_down(tmp_path) -> None:
    store, ledger = _world(
        tmp_path,
        (MFR, EventType.MANUFACTURED, None),
        (AUDITOR, EventType.RECALLED, None),
    )
    service = VerifyService(store, LedgerReader(_CountingSource(ledger, down=True)), default_log_id=LOG_ID)

    state = asyncio.run(service.verify_code(PACK_CODE))

    assert state.status == STATUS_RECALLED
    assert state.timeline_error == "connection refused"
    assert state.timeline.error_code == "MIRROR_UNREACHABLE"


def test_batch_without_log_reports_missing_link(tmp_path) -> None:
    store, ledger = _world(tmp_path, (MFR, EventType.MANUFACTURED, None), default_log_id=None)
    service = VerifyService(store, LedgerReader(ledger), default_log_id=None)

    state = asyncio.run(service.verify_code(PACK_CODE))

    assert state.status == STATUS_GENUINE
    assert state.log_id is None
    assert state.timeline_error == NO_LOG_DETAIL


def test_first_page_is_cached_until_expiry_and_errors_are_not(tmp_path) -> None:
    store, ledger = _world(tmp_path, (MFR, EventType.MANUFACTURED, None))
    source = _CountingSource(ledger)
    clock = _Clock()
    service = VerifyService(store, LedgerReader(source), default_log_id=LOG_ID, cache_seconds=45, clock=clock)

    asyncio.run(service.verify_code(PACK_CODE))
    asyncio.run(service.verify_code(PACK_CODE))
    assert source.calls == 1

    clock.now += 46
    asyncio.run(service.verify_code(PACK_CODE))
    assert source.calls == 2

    cursor = f"/api/v1/topics/{LOG_ID}/messages?limit=10&order=desc&sequencenumber=lt:5"
    asyncio.run(service.verify_code(PACK_CODE, cursor=cursor))
    assert source.calls == 3

    source.down = True
    clock.now += 46
    asyncio.run(service.verify_code(PACK_CODE))
    asyncio.run(service.verify_code(PACK_CODE))
    assert source.calls == 5


def test_cache_is_bounded_and_drops_expired_pages(tmp_path) -> None:
    store, ledger = _world(tmp_path, (MFR, EventType.MANUFACTURED, None))
    source = _CountingSource(ledger)
    clock = _Clock()
    service = VerifyService(
        store,
        LedgerReader(source),
        default_log_id=LOG_ID,
        cache_seconds=45,
        clock=clock,
        max_cache_entries=3,
    )

    for limit in range(1, 8):
        asyncio.run(service.verify_code(PACK_CODE, limit=limit))
        assert len(service._cache) <= 3
    assert source.calls == 7

    asyncio.run(service.verify_code(PACK_CODE, limit=7))
    assert source.calls == 7
    asyncio.run(service.verify_code(PACK_CODE, limit=1))
    assert source.calls == 8

    clock.now += 46
    asyncio.run(service.verify_code(PACK_CODE, limit=2))
    assert len(service._cache) == 1


def test_verify_page_size_is_capped(tmp_path) -> None:
    store, ledger = _world(tmp_path, (MFR, EventType.MANUFACTURED, None))
    source = _CountingSource(ledger)
    service = VerifyService(store, LedgerReader(source), default_log_id=LOG_ID)

    state = asyncio.run(service.verify_code(PACK_CODE, limit=1_000_000))

    assert state.status == STATUS_GENUINE
    assert source.limits == [MAX_VERIFY_PAGE_SIZE]


def test_mask_serial_keeps_last_four() -> None:
    assert mask_serial(None) is None
    assert mask_serial("  ") is None
    assert mask_serial("1234") == "1234"
    assert mask_serial("SN12345678") == "******5678"


def test_public_view_hides_facilities_and_links_the_log(tmp_path) -> None:
    store, ledger = _world(
        tmp_path,
        (MFR, EventType.MANUFACTURED, None),
        (MFR, EventType.HANDOVER, "fac-dist"),
    )
    service = VerifyService(store, LedgerReader(ledger), default_log_id=LOG_ID)
    state = asyncio.run(service.verify_code(PACK_CODE))

    view = public_view(state, network="mainnet")

    assert view["status"] == STATUS_GENUINE
    assert view["parsed"] == {
        "gtin": "04006381333931",
        "lot": "LOT-42",
        "expiry": "2027-06-30",
        "maskedSerial": "******5678",
    }
    assert view["latestSequence"] == 2
    assert view["links"]["hashscanTopicUrl"] == f"https://hashscan.io/#/mainnet/topic/{LOG_ID}"
    assert view["links"]["mirrorTopicUrl"] == (
        f"https://mainnet-public.mirrornode.hedera.com/api/v1/topics/{LOG_ID}/messages?limit=25"
    )
    assert [item["actorLabel"] for item in view["timeline"]] == ["Distributor", "Manufacturer"]
    assert all(item["occurredAt"] for item in view["timeline"])
    assert view["timeline"][0]["hashscanUrl"] == f"https://hashscan.io/#/mainnet/topic/{LOG_ID}/message/2"
    assert view["timeline"][1]["mirrorUrl"] == (
        f"https://mainnet-public.mirrornode.hedera.com/api/v1/topics/{LOG_ID}/messages/1"
    )
    assert "facilities" not in view
    assert "fac-mfr" not in str(view)
