"""Consensus log submission boundary.

Publishers are async and side-effect free locally: they either return a receipt or raise
``UpstreamUnavailableError``. Size limits are enforced here before any network call.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Mapping, Protocol
import uuid

import aiohttp

from pack_trace.custody.hashing import payload_hash
from pack_trace.errors import PayloadTooLargeError, UpstreamUnavailableError, ValidationError


logger = logging.getLogger("pack_trace.consensus.publisher")

MAX_MESSAGE_BYTES = 4096
MAX_MEMO_BYTES = 100
LOCAL_TX_PREFIX = "LOCAL-"
FALLBACK_WARNING = "Consensus log unavailable; event recorded locally and will be reconciled."


@dataclass(frozen=True)
class ConsensusReceipt:
    log_id: str
    tx_ref: str
    sequence_number: int
    running_hash: str | None
    consensus_timestamp: str | None
    payload_hash: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], *, message: str) -> "ConsensusReceipt":
        tx_ref = str(payload.get("txRef") or payload.get("transactionId") or "").strip()
        log_id = str(payload.get("logId") or payload.get("topicId") or "").strip()
        if not tx_ref or not log_id:
            raise UpstreamUnavailableError("SUBMIT_RECEIPT_INVALID", "submit gateway returned no tx reference")
        sequence = payload.get("sequenceNumber")
        if isinstance(sequence, str) and sequence.isdigit():
            sequence = int(sequence)
        if isinstance(sequence, bool) or not isinstance(sequence, int):
            raise UpstreamUnavailableError("SUBMIT_RECEIPT_INVALID", "submit gateway returned no sequence number")
        return cls(
            log_id=log_id,
            tx_ref=tx_ref,
            sequence_number=sequence,
            running_hash=payload.get("runningHash"),
            consensus_timestamp=payload.get("consensusTimestamp"),
            payload_hash=payload_hash(message),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "logId": self.log_id,
            "txRef": self.tx_ref,
            "sequenceNumber": self.sequence_number,
            "runningHash": self.running_hash,
            "consensusTimestamp": self.consensus_timestamp,
            "payloadHash": self.payload_hash,
        }


@dataclass(frozen=True)
class PublishOutcome:
    """What the recorder persists: either a delivered receipt or a local-only marker."""

    delivered: bool
    tx_ref: str
    payload_hash: str
    log_id: str | None = None
    receipt: ConsensusReceipt | None = None
    warning: str | None = None

    @property
    def sequence_number(self) -> int | None:
        return self.receipt.sequence_number if self.receipt else None

    @property
    def running_hash(self) -> str | None:
        return self.receipt.running_hash if self.receipt else None

    @property
    def consensus_timestamp(self) -> str | None:
        return self.receipt.consensus_timestamp if self.receipt else None

    @classmethod
    def delivered_with(cls, receipt: ConsensusReceipt) -> "PublishOutcome":
        return cls(
            delivered=True,
            tx_ref=receipt.tx_ref,
            payload_hash=receipt.payload_hash,
            log_id=receipt.log_id,
            receipt=receipt,
        )

    @classmethod
    def local_only(cls, message: str, *, log_id: str | None, warning: str = FALLBACK_WARNING) -> "PublishOutcome":
        return cls(
            delivered=False,
            tx_ref=f"{LOCAL_TX_PREFIX}{uuid.uuid4()}",
            payload_hash=payload_hash(message),
            log_id=log_id,
            warning=warning,
        )


class ConsensusPublisher(Protocol):
    async def submit(self, message: str, *, log_id: str, memo: str | None = None) -> ConsensusReceipt:
        ...


def ensure_message_fits(message: str, limit_bytes: int = MAX_MESSAGE_BYTES) -> int:
    size = len(message.encode("utf-8"))
    if size > limit_bytes:
        raise PayloadTooLargeError(size, limit_bytes)
    return size


def event_memo(batch_id: str, event_type: str) -> str:
    memo = f"batch:{batch_id}:{event_type}"
    return memo.encode("utf-8")[:MAX_MEMO_BYTES].decode("utf-8", errors="ignore")


def has_sequence_number(receipt: ConsensusReceipt) -> bool:
    sequence = receipt.sequence_number
    return isinstance(sequence, int) and not isinstance(sequence, bool)


class HttpConsensusPublisher:
    """Submits messages through an HTTP consensus gateway.

    The gateway accepts ``{"logId", "message", "memo"}`` and answers with a receipt carrying
    ``txRef``, ``sequenceNumber``, ``runningHash`` and ``consensusTimestamp``.
    """

    def __init__(
        self,
        submit_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 10.0,
        max_message_bytes: int = MAX_MESSAGE_BYTES,
    ) -> None:
        if not submit_url:
            raise ValidationError("SUBMIT_URL_MISSING", "consensus submit_url is required for the http publisher")
        self.submit_url = submit_url
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_message_bytes = max_message_bytes

    async def submit(self, message: str, *, log_id: str, memo: str | None = None) -> ConsensusReceipt:
        ensure_message_fits(message, self.max_message_bytes)
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"logId": log_id, "message": message, "memo": memo}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.submit_url, json=body, headers=headers) as response:
                    if response.status >= 400:
                        detail = (await response.text())[:256]
                        raise UpstreamUnavailableError(
                            "SUBMIT_REJECTED",
                            f"submit gateway returned {response.status}: {detail}",
                            context={"status": response.status},
                        )
                    payload = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise UpstreamUnavailableError("SUBMIT_UNREACHABLE", str(exc)[:256]) from exc
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError("SUBMIT_TIMEOUT", "submit gateway timed out") from exc
        if not isinstance(payload, Mapping):
            raise UpstreamUnavailableError("SUBMIT_RECEIPT_INVALID", "submit gateway returned a non-object body")
        receipt = ConsensusReceipt.from_payload(payload, message=message)
        logger.info(
            "Consensus submit log_id=%s tx_ref=%s sequence=%s",
            receipt.log_id,
            receipt.tx_ref,
            receipt.sequence_number,
        )
        return receipt
