"""Flask service wrapper for pack-trace."""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from .config import PackTraceProfile
from .consensus.mirror import RawPageSource, decode_cursor, encode_cursor
from .consensus.publisher import ConsensusPublisher
from .consensus.timeline import (
    NOTE_MESSAGES,
    NOTE_NOT_FOUND,
    BatchIdentifiers,
    load_batch_timeline,
    load_complete_batch_timeline,
)
from .custody.recorder import CustodyEventRequest
from .custody.records import Actor, BatchRecord
from .errors import AuthenticationError, NotFoundError, PackTraceError, ValidationError, reason_code
from .identifier.codec import decode
from .logging_utils import configure_logging
from .report import load_traceability_snapshot
from .runtime import PackTraceRuntime, build_runtime
from .verify.public import public_view


logger = logging.getLogger("pack_trace.service")

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
ACTOR_FACILITY_HEADER = "X-Actor-Facility-Id"
IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_FACILITY_RESULTS = 50


def create_app(
    profile_path: str,
    *,
    publisher: ConsensusPublisher | None = None,
    source: RawPageSource | None = None,
) -> Flask:
    profile = PackTraceProfile.load(Path(profile_path))
    configure_logging(profile.log_level, list(profile.log_paths))
    runtime = build_runtime(profile, publisher=publisher, source=source)

    app = Flask(__name__)
    app.config["PACK_TRACE_RUNTIME"] = runtime

    @app.errorhandler(PackTraceError)
    def handle_pack_trace_error(exc: PackTraceError) -> Any:
        return jsonify(exc.as_dict()), exc.http_status

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception) -> Any:  # pragma: no cover
        if isinstance(exc, HTTPException):
            return exc
        logger.exception("Service request failed path=%s", request.path)
        return jsonify({"error": reason_code(exc)}), 500

    @app.get("/v1/facilities")
    async def list_facilities() -> Any:
        actor = _actor()
        limit = min(_int_arg("limit", 25), MAX_FACILITY_RESULTS)
        exclude_self = request.args.get("excludeSelf", "").lower() in {"1", "true", "yes"}
        facilities = await runtime.store.list_facilities(
            search=request.args.get("q") or None,
            exclude_facility_id=actor.facility_id if exclude_self else None,
            limit=limit,
        )
        return jsonify({"facilities": [item.as_dict() for item in facilities]})

    @app.post("/v1/facilities")
    async def create_facility() -> Any:
        payload = _json_body()
        facility = await runtime.recorder.create_facility(
            _actor(),
            name=str(payload.get("name") or ""),
            facility_type=str(payload.get("type") or ""),
            country=payload.get("country") or None,
            gs1_company_prefix=payload.get("gs1CompanyPrefix") or None,
            facility_id=str(payload.get("id") or "").strip() or None,
        )
        return jsonify(facility.as_dict()), 201

    @app.post("/v1/batches")
    async def create_batch() -> Any:
        payload = _json_body()
        batch, identity = await runtime.recorder.create_batch(
            _actor(),
            gtin=str(payload.get("gtin") or ""),
            lot=str(payload.get("lot") or ""),
            expiry=str(payload.get("expiryIsoDate") or payload.get("expiry") or ""),
            quantity=payload.get("quantity"),
            product_name=str(payload.get("productName") or ""),
            external_log_id=payload.get("logId") or None,
        )
        return jsonify({"batch": batch.as_dict(), "gs1": identity.as_dict()}), 201

    @app.get("/v1/batches/<batch_id>")
    async def get_batch(batch_id: str) -> Any:
        _actor()
        batch = await _batch_or_404(runtime, batch_id)
        events = await runtime.store.list_events(batch.batch_id)
        return jsonify({"batch": batch.as_dict(), "events": [event.as_dict() for event in events]})

    @app.get("/v1/batches/<batch_id>/report")
    async def batch_report(batch_id: str) -> Any:
        _actor()
        snapshot = await load_traceability_snapshot(
            runtime.store,
            runtime.reader,
            batch_id,
            default_log_id=runtime.default_log_id,
            page_size=profile.timeline.complete_page_size,
            max_pages=profile.timeline.complete_max_pages,
        )
        return jsonify(snapshot.as_dict())

    @app.post("/v1/events")
    async def record_event() -> Any:
        event_request = CustodyEventRequest.from_payload(_json_body())
        result = await runtime.recorder.record(
            _actor(),
            event_request,
            idempotency_key=request.headers.get(IDEMPOTENCY_HEADER),
        )
        return jsonify(result.as_dict()), 200 if result.idempotent else 201

    @app.get("/v1/timeline")
    async def timeline_page() -> Any:
        _actor()
        batch = await _batch_or_404(runtime, _required_arg("batchId"))
        limit = _int_arg("limit", profile.timeline.page_size)
        log_id = batch.external_log_id or runtime.default_log_id
        if not log_id:
            return jsonify(_no_log_body(batch, nextCursor=None))
        page = await load_batch_timeline(
            runtime.reader,
            log_id,
            BatchIdentifiers(gtin=batch.gtin, lot=batch.lot, expiry=batch.expiry),
            cursor=decode_cursor(request.args.get("cursor")),
            limit=limit,
            order=request.args.get("order", "desc"),
        )
        return jsonify(
            {
                "batchId": batch.batch_id,
                "logId": log_id,
                "entries": [entry.as_dict() for entry in page.entries],
                "nextCursor": encode_cursor(page.next_cursor),
                "note": page.note,
                "error": page.error,
                "errorCode": page.error_code,
            }
        )

    @app.get("/v1/timeline/complete")
    async def timeline_complete() -> Any:
        _actor()
        batch = await _batch_or_404(runtime, _required_arg("batchId"))
        log_id = batch.external_log_id or runtime.default_log_id
        identifiers = BatchIdentifiers(gtin=batch.gtin, lot=batch.lot, expiry=batch.expiry)
        if not log_id:
            return jsonify(_no_log_body(batch, truncated=False, pagesRead=0))
        walk = await load_complete_batch_timeline(
            runtime.reader,
            log_id,
            identifiers,
            page_size=profile.timeline.complete_page_size,
            max_pages=profile.timeline.complete_max_pages,
        )
        note = walk.truncation_note(identifiers)
        if note is None and not walk.entries and walk.error is None:
            note = NOTE_MESSAGES[NOTE_NOT_FOUND]
        return jsonify(
            {
                "batchId": batch.batch_id,
                "logId": log_id,
                "entries": [entry.as_dict() for entry in walk.entries],
                "truncated": walk.truncated,
                "pagesRead": walk.pages_read,
                "note": note,
                "error": walk.error,
                "errorCode": walk.error_code,
            }
        )

    @app.get("/v1/verify")
    async def verify() -> Any:
        state = await runtime.verify.verify_code(
            request.args.get("code"),
            cursor=decode_cursor(request.args.get("cursor")),
            limit=_int_arg("limit", profile.timeline.verify_page_size),
        )
        return jsonify(state.as_dict())

    @app.get("/v1/verify/public")
    async def verify_public() -> Any:
        state = await runtime.verify.verify_code(
            request.args.get("code"),
            limit=profile.timeline.verify_page_size,
        )
        return jsonify(public_view(state, network=runtime.network))

    @app.get("/v1/identifiers/decode")
    def decode_identifier() -> Any:
        identity = decode(_required_arg("code"))
        return jsonify(identity.as_dict())

    return app


def _no_log_body(batch: BatchRecord, **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "batchId": batch.batch_id,
        "logId": None,
        "entries": [],
        "note": NOTE_MESSAGES[NOTE_NOT_FOUND],
        "error": None,
        "errorCode": None,
    }
    body.update(extra)
    return body


def _actor() -> Actor:
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "").strip().upper()
    if not actor_id or not role:
        raise AuthenticationError("UNAUTHENTICATED", "caller identity headers are missing")
    facility_id = (request.headers.get(ACTOR_FACILITY_HEADER) or "").strip() or None
    return Actor(actor_id=actor_id, role=role, facility_id=facility_id)


def _json_body() -> dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("INVALID_REQUEST", "request body must be a JSON object")
    return payload


def _required_arg(name: str) -> str:
    value = (request.args.get(name) or "").strip()
    if not value:
        raise ValidationError("MISSING_QUERY", f"{name} is required")
    return value


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError("INVALID_LIMIT", f"{name} must be a positive integer") from None
    if value < 1:
        raise ValidationError("INVALID_LIMIT", f"{name} must be a positive integer")
    return value


async def _batch_or_404(runtime: PackTraceRuntime, batch_id: str) -> BatchRecord:
    batch = await runtime.store.get_batch(batch_id)
    if batch is None:
        raise NotFoundError("BATCH_NOT_FOUND", f"batch {batch_id} does not exist")
    return batch


def main() -> None:
    parser = argparse.ArgumentParser(description="pack-trace service")
    parser.add_argument("--profile", required=True, help="Path to pack-trace profile YAML")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8090)
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    app = create_app(args.profile)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
