"""Idempotency keys for custody event submission.

A key moves IN_FLIGHT -> COMMITTED exactly once. Claims are atomic inserts; a claim whose
lease has expired can be taken over by a later request. Every claim carries a random token
so that release and finalize only ever touch the caller's own claim.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Any
import uuid

from pack_trace.errors import ConflictError, ValidationError

from .db import SqlBackend, canonical_json, load_json, utc_now


logger = logging.getLogger("pack_trace.custody.idempotency")

KEY_IN_FLIGHT = "IN_FLIGHT"
KEY_COMMITTED = "COMMITTED"

CLAIM_NEW = "CLAIMED"
CLAIM_TAKEOVER = "TAKEOVER"
CLAIM_REPLAY = "REPLAY"

MAX_KEY_LENGTH = 200

SCHEMA = """
CREATE TABLE IF NOT EXISTS pt_idempotency_keys (
    idempotency_key TEXT PRIMARY KEY,
    request_hash TEXT NOT NULL,
    state TEXT NOT NULL,
    claim_token TEXT NOT NULL,
    event_id TEXT,
    result_json TEXT,
    claimed_at_utc TEXT NOT NULL,
    committed_at_utc TEXT
);
"""


@dataclass(frozen=True)
class IdempotencyClaim:
    key: str
    status: str
    claim_token: str | None = None
    event_id: str | None = None
    result: dict[str, Any] | None = None

    @property
    def is_replay(self) -> bool:
        return self.status == CLAIM_REPLAY


def normalize_key(key: str | None) -> str | None:
    text = str(key or "").strip()
    if not text:
        return None
    if len(text) > MAX_KEY_LENGTH:
        raise ValidationError("INVALID_IDEMPOTENCY_KEY", f"Idempotency-Key must be {MAX_KEY_LENGTH} characters or fewer")
    return text


class IdempotencyIndex:
    """Key table helpers. ``claim``/``release`` run their own transactions; ``finalize`` joins the caller's."""

    def __init__(self, backend: SqlBackend, *, lease_seconds: float = 60.0) -> None:
        self.backend = backend
        self.lease_seconds = float(lease_seconds)

    def claim(self, key: str, request_hash: str) -> IdempotencyClaim:
        token = uuid.uuid4().hex
        now = utc_now()

        def _tx(conn: Any) -> IdempotencyClaim:
            inserted = self.backend.execute(
                conn,
                """
                INSERT INTO pt_idempotency_keys (
                    idempotency_key, request_hash, state, claim_token, claimed_at_utc
                ) VALUES ({p1}, {p2}, {p3}, {p4}, {p5})
                ON CONFLICT (idempotency_key) DO NOTHING
                """,
                (key, request_hash, KEY_IN_FLIGHT, token, now),
            )
            if inserted == 1:
                return IdempotencyClaim(key=key, status=CLAIM_NEW, claim_token=token)
            row = self.backend.query_one(
                conn,
                """
                SELECT request_hash, state, claim_token, event_id, result_json, claimed_at_utc
                FROM pt_idempotency_keys WHERE idempotency_key = {p1}
                """,
                (key,),
            )
            if row is None:
                raise ConflictError("DUPLICATE_IN_FLIGHT", f"idempotency key {key} changed during claim; retry")
            if row["state"] == KEY_COMMITTED:
                if row["request_hash"] != request_hash:
                    raise ConflictError(
                        "IDEMPOTENCY_KEY_REUSED",
                        f"idempotency key {key} was already used for a different request",
                    )
                return IdempotencyClaim(
                    key=key,
                    status=CLAIM_REPLAY,
                    event_id=row["event_id"],
                    result=load_json(row["result_json"]),
                )
            if not self._lease_expired(row["claimed_at_utc"]):
                raise ConflictError("DUPLICATE_IN_FLIGHT", f"a request with idempotency key {key} is already in flight")
            taken = self.backend.execute(
                conn,
                """
                UPDATE pt_idempotency_keys
                SET request_hash = {p1}, claim_token = {p2}, claimed_at_utc = {p3}
                WHERE idempotency_key = {p4} AND state = {p5} AND claim_token = {p6}
                """,
                (request_hash, token, now, key, KEY_IN_FLIGHT, row["claim_token"]),
            )
            if taken != 1:
                raise ConflictError("DUPLICATE_IN_FLIGHT", f"a request with idempotency key {key} is already in flight")
            logger.warning("Custody idempotency lease takeover key=%s", key)
            return IdempotencyClaim(key=key, status=CLAIM_TAKEOVER, claim_token=token)

        return self.backend.run_write_tx(_tx)

    def release(self, key: str, claim_token: str) -> bool:
        def _tx(conn: Any) -> int:
            return self.backend.execute(
                conn,
                """
                DELETE FROM pt_idempotency_keys
                WHERE idempotency_key = {p1} AND state = {p2} AND claim_token = {p3}
                """,
                (key, KEY_IN_FLIGHT, claim_token),
            )

        return self.backend.run_write_tx(_tx) == 1

    def finalize(self, conn: Any, *, key: str, claim_token: str, event_id: str, result: dict[str, Any]) -> None:
        updated = self.backend.execute(
            conn,
            """
            UPDATE pt_idempotency_keys
            SET state = {p1}, event_id = {p2}, result_json = {p3}, committed_at_utc = {p4}
            WHERE idempotency_key = {p5} AND claim_token = {p6} AND event_id IS NULL
            """,
            (KEY_COMMITTED, event_id, canonical_json(result), utc_now(), key, claim_token),
        )
        if updated != 1:
            raise ConflictError("IDEMPOTENCY_CLAIM_LOST", f"idempotency key {key} is no longer held by this request")

    def lookup(self, key: str) -> dict[str, Any] | None:
        def _read(conn: Any) -> dict[str, Any] | None:
            row = self.backend.query_one(
                conn,
                """
                SELECT idempotency_key, request_hash, state, event_id, result_json,
                       claimed_at_utc, committed_at_utc
                FROM pt_idempotency_keys WHERE idempotency_key = {p1}
                """,
                (key,),
            )
            if row is None:
                return None
            return {
                "key": row["idempotency_key"],
                "request_hash": row["request_hash"],
                "state": row["state"],
                "event_id": row["event_id"],
                "result": load_json(row["result_json"]),
                "claimed_at_utc": row["claimed_at_utc"],
                "committed_at_utc": row["committed_at_utc"],
            }

        return self.backend.run_read(_read)

    def _lease_expired(self, claimed_at_utc: str | None) -> bool:
        if not claimed_at_utc:
            return True
        try:
            claimed_at = datetime.fromisoformat(claimed_at_utc)
        except ValueError:
            return True
        if claimed_at.tzinfo is None:
            claimed_at = claimed_at.replace(tzinfo=timezone.utc)
        return datetime.now(tz=timezone.utc) - claimed_at > timedelta(seconds=self.lease_seconds)
