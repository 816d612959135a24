"""pack-trace CLI (identifier codec, ledger timeline, consensus backfill)."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Sequence

from .config import PackTraceProfile
from .consensus.mirror import encode_cursor
from .consensus.timeline import BatchIdentifiers, load_batch_timeline, load_complete_batch_timeline
from .errors import PackTraceError
from .identifier.codec import decode, encode
from .logging_utils import configure_logging
from .runtime import PackTraceRuntime, build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pack-trace", description="pack-trace custody ledger tools")
    sub = parser.add_subparsers(dest="command", required=True)

    enc = sub.add_parser("encode", help="Build the GS1 element string for a batch")
    enc.add_argument("--gtin", required=True)
    enc.add_argument("--lot", required=True)
    enc.add_argument("--expiry", required=True, help="Expiry as YYYY-MM-DD")
    enc.add_argument("--serial", default=None)

    dec = sub.add_parser("decode", help="Parse a scanned GS1 code")
    dec.add_argument("code")

    timeline = sub.add_parser("timeline", help="Print the ledger timeline for a batch")
    timeline.add_argument("--profile", required=True, help="Path to pack-trace profile YAML")
    timeline.add_argument("--batch-id", required=True)
    timeline.add_argument("--limit", type=int, default=None)
    timeline.add_argument("--order", choices=("asc", "desc"), default="desc")
    timeline.add_argument("--complete", action="store_true", help="Walk every page up to the ceiling")

    backfill = sub.add_parser("backfill", help="Anchor locally recorded events on the consensus log")
    backfill.add_argument("--profile", required=True, help="Path to pack-trace profile YAML")
    backfill.add_argument("--limit", type=int, default=100)
    return parser


def _cmd_encode(args: argparse.Namespace) -> int:
    identity = encode(gtin=args.gtin, lot=args.lot, expiry=args.expiry, serial=args.serial)
    print(json.dumps(identity.as_dict(), ensure_ascii=True))
    return 0


def _cmd_decode(args: argparse.Namespace) -> int:
    identity = decode(args.code)
    print(json.dumps(identity.as_dict(), ensure_ascii=True))
    return 0


async def _timeline(runtime: PackTraceRuntime, args: argparse.Namespace) -> dict[str, Any]:
    batch = await runtime.store.get_batch(args.batch_id)
    if batch is None:
        return {"error": "BATCH_NOT_FOUND", "batchId": args.batch_id}
    log_id = batch.external_log_id or runtime.default_log_id
    if not log_id:
        return {"error": "NO_CONSENSUS_LOG", "batchId": batch.batch_id}
    identifiers = BatchIdentifiers(gtin=batch.gtin, lot=batch.lot, expiry=batch.expiry)
    settings = runtime.profile.timeline
    if args.complete:
        walk = await load_complete_batch_timeline(
            runtime.reader,
            log_id,
            identifiers,
            page_size=args.limit or settings.complete_page_size,
            max_pages=settings.complete_max_pages,
        )
        return {
            "batchId": batch.batch_id,
            "logId": log_id,
            "entries": [entry.as_dict() for entry in walk.entries],
            "truncated": walk.truncated,
            "note": walk.truncation_note(identifiers),
            "error": walk.error,
        }
    page = await load_batch_timeline(
        runtime.reader,
        log_id,
        identifiers,
        limit=args.limit or settings.page_size,
        order=args.order,
    )
    return {
        "batchId": batch.batch_id,
        "logId": log_id,
        "entries": [entry.as_dict() for entry in page.entries],
        "nextCursor": encode_cursor(page.next_cursor),
        "note": page.note,
        "error": page.error,
    }


def _cmd_timeline(args: argparse.Namespace) -> int:
    runtime = _runtime(args.profile)
    result = asyncio.run(_timeline(runtime, args))
    print(json.dumps(result, ensure_ascii=True))
    return 1 if result.get("error") else 0


def _cmd_backfill(args: argparse.Namespace) -> int:
    runtime = _runtime(args.profile)
    report = asyncio.run(runtime.backfill.run(limit=args.limit))
    print(json.dumps(report.as_dict(), ensure_ascii=True))
    return 1 if report.failed else 0


def _runtime(profile_path: str) -> PackTraceRuntime:
    profile = PackTraceProfile.load(Path(profile_path))
    configure_logging(profile.log_level, list(profile.log_paths))
    return build_runtime(profile)


_COMMANDS = {
    "encode": _cmd_encode,
    "decode": _cmd_decode,
    "timeline": _cmd_timeline,
    "backfill": _cmd_backfill,
}


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = _COMMANDS.get(args.command)
    if handler is None:
        raise SystemExit("UNKNOWN_COMMAND")
    try:
        return handler(args)
    except PackTraceError as exc:
        print(json.dumps(exc.as_dict(), ensure_ascii=True))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
