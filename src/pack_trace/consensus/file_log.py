"""Local append-only consensus log for development and tests.

One JSONL file per log id. Sequence numbers start at 1 and the running hash is
``base64(sha384(previous_running_hash || message))``. Reads answer in the same shape as the
public mirror's topic-messages endpoint so the ledger reader treats both alike.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
from pathlib import Path
import re
import threading
import time
from typing import Any
from urllib.parse import parse_qs, urlsplit

from pack_trace.custody.hashing import payload_hash
from pack_trace.errors import UpstreamUnavailableError, ValidationError

from .publisher import MAX_MESSAGE_BYTES, ConsensusReceipt, ensure_message_fits


LOG_ID_RE = re.compile(r"^[A-Za-z0-9.\-_]{1,64}$")
RUNNING_HASH_VERSION = 3


class FileConsensusLog:
    def __init__(self, root: Path | str, *, max_message_bytes: int = MAX_MESSAGE_BYTES) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_message_bytes = max_message_bytes
        self._lock = threading.Lock()

    async def submit(self, message: str, *, log_id: str, memo: str | None = None) -> ConsensusReceipt:
        ensure_message_fits(message, self.max_message_bytes)
        return await asyncio.to_thread(self._append, message, log_id, memo)

    async def fetch_raw_page(
        self,
        log_id: str,
        *,
        limit: int = 25,
        order: str = "desc",
        cursor: str | None = None,
    ) -> dict[str, Any]:
        return await asyncio.to_thread(self._read_page, log_id, limit, order, cursor)

    def _append(self, message: str, log_id: str, memo: str | None) -> ConsensusReceipt:
        log_path = self._log_path(log_id)
        with self._lock:
            records = self._load(log_path)
            previous = base64.b64decode(records[-1]["running_hash"]) if records else b""
            sequence_number = len(records) + 1
            running_hash = base64.b64encode(hashlib.sha384(previous + message.encode("utf-8")).digest()).decode("ascii")
            now_ns = time.time_ns()
            consensus_timestamp = f"{now_ns // 1_000_000_000}.{now_ns % 1_000_000_000:09d}"
            record = {
                "sequence_number": sequence_number,
                "consensus_timestamp": consensus_timestamp,
                "running_hash": running_hash,
                "running_hash_version": RUNNING_HASH_VERSION,
                "message": base64.b64encode(message.encode("utf-8")).decode("ascii"),
                "memo": memo,
                "tx_ref": f"{log_id}@{consensus_timestamp}",
            }
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, ensure_ascii=True, separators=(",", ":")) + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        return ConsensusReceipt(
            log_id=log_id,
            tx_ref=record["tx_ref"],
            sequence_number=sequence_number,
            running_hash=running_hash,
            consensus_timestamp=consensus_timestamp,
            payload_hash=payload_hash(message),
        )

    def _read_page(self, log_id: str, limit: int, order: str, cursor: str | None) -> dict[str, Any]:
        bound: tuple[str, int] | None = None
        if cursor:
            query = parse_qs(urlsplit(cursor).query)
            order = (query.get("order") or [order])[0]
            limit = int((query.get("limit") or [limit])[0])
            raw_bound = (query.get("sequencenumber") or [""])[0]
            op, _, value = raw_bound.partition(":")
            if op not in ("lt", "gt") or not value.isdigit():
                raise UpstreamUnavailableError("CURSOR_INVALID", f"unrecognized continuation cursor {cursor!r}")
            bound = (op, int(value))
        if order not in ("asc", "desc"):
            raise ValidationError("INVALID_ORDER", "order must be asc or desc")
        records = self._load(self._log_path(log_id))
        if bound is not None:
            op, value = bound
            if op == "lt":
                records = [item for item in records if item["sequence_number"] < value]
            else:
                records = [item for item in records if item["sequence_number"] > value]
        if order == "desc":
            records = list(reversed(records))
        page = records[: max(1, limit)]
        has_more = len(records) > len(page)
        next_link = None
        if has_more and page:
            op = "lt" if order == "desc" else "gt"
            last_seq = page[-1]["sequence_number"]
            next_link = f"/api/v1/topics/{log_id}/messages?limit={limit}&order={order}&sequencenumber={op}:{last_seq}"
        messages = [
            {
                "consensus_timestamp": item["consensus_timestamp"],
                "message": item["message"],
                "running_hash": item["running_hash"],
                "running_hash_version": item.get("running_hash_version", RUNNING_HASH_VERSION),
                "sequence_number": item["sequence_number"],
                "topic_id": log_id,
            }
            for item in page
        ]
        return {"messages": messages, "links": {"next": next_link}}

    def _log_path(self, log_id: str) -> Path:
        if not LOG_ID_RE.match(log_id or ""):
            raise ValidationError("INVALID_LOG_ID", f"log id {log_id!r} is not a valid identifier")
        return self.root / log_id / "messages.jsonl"

    def _load(self, log_path: Path) -> list[dict[str, Any]]:
        if not log_path.exists():
            return []
        records: list[dict[str, Any]] = []
        with log_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if line.strip():
                    records.append(json.loads(line))
        return records
