from __future__ import annotations

import asyncio
import base64
import hashlib

from aiohttp import test_utils, web
import pytest

from pack_trace.consensus.file_log import FileConsensusLog
from pack_trace.consensus.mirror import LedgerReader, MirrorNodeClient, decode_cursor, decode_entry, encode_cursor
from pack_trace.consensus.publisher import HttpConsensusPublisher, event_memo
from pack_trace.custody.hashing import payload_hash
from pack_trace.custody.payload import CustodyEventPayload, EventType, WireBatch
from pack_trace.errors import DecodeError, PayloadTooLargeError, UpstreamUnavailableError, ValidationError

LOG_ID = "0.0.1001"


def _message(lot: str = "LOT-42", event_type: EventType = EventType.MANUFACTURED) -> str:
    return CustodyEventPayload(
        type=event_type,
        batch=WireBatch(gtin="04006381333931", lot=lot, exp="2027-06-30"),
        actor_facility_id="fac-mfr",
        actor_role="MANUFACTURER",
        ts="2026-01-15T10:00:00.000Z",
    ).serialize()


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def test_file_log_assigns_sequences_and_chains_running_hash(tmp_path) -> None:
    log = FileConsensusLog(tmp_path)
    messages = [_message("LOT-1"), _message("LOT-2")]

    async def _scenario():
        return [await log.submit(message, log_id=LOG_ID, memo="batch:b-1:MANUFACTURED") for message in messages]

    first, second = asyncio.run(_scenario())

    assert (first.sequence_number, second.sequence_number) == (1, 2)
    assert first.payload_hash == payload_hash(messages[0])
    expected_first = hashlib.sha384(messages[0].encode("utf-8")).digest()
    assert first.running_hash == base64.b64encode(expected_first).decode("ascii")
    expected_second = hashlib.sha384(expected_first + messages[1].encode("utf-8")).digest()
    assert second.running_hash == base64.b64encode(expected_second).decode("ascii")
    assert second.tx_ref.startswith(f"{LOG_ID}@")


def test_file_log_pages_follow_cursor_in_both_orders(tmp_path) -> None:
    log = FileConsensusLog(tmp_path)

    async def _scenario():
        for index in range(3):
            await log.submit(_message(f"LOT-{index}"), log_id=LOG_ID)
        newest = await log.fetch_raw_page(LOG_ID, limit=2, order="desc")
        older = await log.fetch_raw_page(LOG_ID, cursor=newest["links"]["next"])
        oldest_first = await log.fetch_raw_page(LOG_ID, limit=2, order="asc")
        rest = await log.fetch_raw_page(LOG_ID, cursor=oldest_first["links"]["next"])
        empty = await log.fetch_raw_page("0.0.2002")
        return newest, older, oldest_first, rest, empty

    newest, older, oldest_first, rest, empty = asyncio.run(_scenario())

    assert [item["sequence_number"] for item in newest["messages"]] == [3, 2]
    assert newest["links"]["next"].endswith("sequencenumber=lt:2")
    assert [item["sequence_number"] for item in older["messages"]] == [1]
    assert older["links"]["next"] is None
    assert [item["sequence_number"] for item in oldest_first["messages"]] == [1, 2]
    assert [item["sequence_number"] for item in rest["messages"]] == [3]
    assert empty == {"messages": [], "links": {"next": None}}


def test_file_log_rejects_bad_log_ids_cursors_and_oversize(tmp_path) -> None:
    log = FileConsensusLog(tmp_path, max_message_bytes=64)

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(log.fetch_raw_page("../etc"))
    assert excinfo.value.code == "INVALID_LOG_ID"

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        asyncio.run(log.fetch_raw_page(LOG_ID, cursor="/api/v1/topics/x/messages?sequencenumber=eq:4"))
    assert excinfo.value.code == "CURSOR_INVALID"

    with pytest.raises(PayloadTooLargeError):
        asyncio.run(log.submit(_message(), log_id=LOG_ID))


def test_cursor_is_quoted_for_transport() -> None:
    link = "/api/v1/topics/0.0.1001/messages?limit=25&order=desc&sequencenumber=lt:40"
    encoded = encode_cursor(link)

    assert "/" not in encoded and "&" not in encoded
    assert decode_cursor(encoded) == link
    assert encode_cursor(None) is None
    assert decode_cursor("") is None


def test_event_memo_is_bounded() -> None:
    assert event_memo("b-1", "HANDOVER") == "batch:b-1:HANDOVER"
    assert len(event_memo("x" * 200, "HANDOVER").encode("utf-8")) == 100


def test_decode_entry_reports_sequence_on_failure() -> None:
    message = _message()
    entry = decode_entry(
        {"sequence_number": 9, "consensus_timestamp": "1768471200.000000009", "running_hash": "rh", "message": _b64(message)}
    )
    assert entry.payload.batch.lot == "LOT-42"
    assert entry.payload_hash == payload_hash(message)
    assert entry.as_dict()["payload"]["type"] == "MANUFACTURED"

    with pytest.raises(DecodeError) as excinfo:
        decode_entry({"sequence_number": 5, "message": "%%%"})
    assert excinfo.value.context == {"sequence_number": 5}

    with pytest.raises(DecodeError) as excinfo:
        decode_entry({"sequence_number": 6, "message": _b64('{"v":1,"type":"HANDOVER"}')})
    assert (excinfo.value.detail or "").startswith("sequence 6:")
    assert excinfo.value.code == "MALFORMED_MESSAGE"

    with pytest.raises(DecodeError):
        decode_entry({"message": _b64(message)})


class _StaticSource:
    def __init__(self, body):
        self.body = body

    async def fetch_raw_page(self, log_id, *, limit=25, order="desc", cursor=None):
        return self.body


def test_ledger_reader_validates_arguments_and_page_shape() -> None:
    reader = LedgerReader(_StaticSource({"messages": "nope"}))

    with pytest.raises(ValidationError):
        asyncio.run(reader.fetch_page(LOG_ID, order="sideways"))
    with pytest.raises(ValidationError):
        asyncio.run(reader.fetch_page(LOG_ID, limit=0))
    with pytest.raises(UpstreamUnavailableError) as excinfo:
        asyncio.run(reader.fetch_page(LOG_ID))
    assert excinfo.value.code == "MIRROR_RESPONSE_INVALID"

    bad_entry = LedgerReader(_StaticSource({"messages": [{"sequence_number": 3, "message": _b64("{")}], "links": {}}))
    with pytest.raises(DecodeError):
        asyncio.run(bad_entry.fetch_page(LOG_ID))


def test_mirror_client_and_http_publisher_against_local_gateway() -> None:
    message = _message()
    seen: dict[str, object] = {}

    async def topic_messages(request: web.Request) -> web.Response:
        seen.setdefault("queries", []).append(dict(request.query))
        return web.json_response(
            {
                "messages": [
                    {
                        "sequence_number": 12,
                        "consensus_timestamp": "1768471200.000000012",
                        "running_hash": "rh",
                        "message": _b64(message),
                    }
                ],
                "links": {"next": f"/api/v1/topics/{LOG_ID}/messages?limit=1&sequencenumber=lt:12"},
            }
        )

    async def missing(request: web.Request) -> web.Response:
        return web.json_response({"_status": {"messages": [{"message": "Not found"}]}}, status=404)

    async def submit(request: web.Request) -> web.Response:
        body = await request.json()
        seen["submit"] = body
        seen["auth"] = request.headers.get("Authorization")
        return web.json_response({"txRef": "0.0.5@1768471200.1", "logId": body["logId"], "sequenceNumber": 13})

    async def _scenario():
        app = web.Application()
        app.router.add_get(f"/api/v1/topics/{LOG_ID}/messages", topic_messages)
        app.router.add_get("/api/v1/topics/0.0.404/messages", missing)
        app.router.add_post("/submit", submit)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            base = str(server.make_url("/")).rstrip("/")
            reader = LedgerReader(MirrorNodeClient(base, timeout_seconds=5))
            page = await reader.fetch_page(LOG_ID, limit=1)
            followed = await reader.fetch_page(LOG_ID, cursor=base + page.next_cursor)
            with pytest.raises(UpstreamUnavailableError) as rejected:
                await reader.fetch_page("0.0.404")
            publisher = HttpConsensusPublisher(f"{base}/submit", api_key="secret", timeout_seconds=5)
            receipt = await publisher.submit(message, log_id=LOG_ID, memo="batch:b-1:MANUFACTURED")
        finally:
            await server.close()
        return page, followed, rejected.value, receipt

    page, followed, rejected, receipt = asyncio.run(_scenario())

    assert seen["queries"] == [
        {"limit": "1", "order": "desc", "encoding": "base64"},
        {"limit": "1", "sequencenumber": "lt:12"},
    ]
    assert [entry.sequence_number for entry in followed.entries] == [12]
    assert [entry.sequence_number for entry in page.entries] == [12]
    assert page.next_cursor.endswith("sequencenumber=lt:12")
    assert rejected.code == "MIRROR_REJECTED"
    assert rejected.context["status"] == 404
    assert seen["submit"] == {"logId": LOG_ID, "message": message, "memo": "batch:b-1:MANUFACTURED"}
    assert seen["auth"] == "Bearer secret"
    assert receipt.sequence_number == 13
    assert receipt.payload_hash == payload_hash(message)


def test_http_publisher_maps_unreachable_gateway() -> None:
    publisher = HttpConsensusPublisher("http://127.0.0.1:9/submit", timeout_seconds=2)

    with pytest.raises(UpstreamUnavailableError) as excinfo:
        asyncio.run(publisher.submit(_message(), log_id=LOG_ID))
    assert excinfo.value.code in {"SUBMIT_UNREACHABLE", "SUBMIT_TIMEOUT"}


def test_mirror_client_refuses_cursor_for_another_host() -> None:
    reader = LedgerReader(MirrorNodeClient("https://testnet.mirrornode.hedera.com", timeout_seconds=1))

    for cursor in ("http://127.0.0.1:9/steal", "https://evil.example/api/v1/topics/0.0.1001/messages", "//evil.example/x"):
        with pytest.raises(ValidationError) as excinfo:
            asyncio.run(reader.fetch_page(LOG_ID, cursor=cursor))
        assert excinfo.value.code == "INVALID_CURSOR"
