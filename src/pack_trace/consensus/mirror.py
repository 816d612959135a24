"""Ledger reads: the public mirror client and the page decoder on top of it."""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
import logging
from typing import Any, Mapping, Protocol
from urllib.parse import quote, unquote, urljoin, urlsplit

import aiohttp

from pack_trace.custody.hashing import payload_hash
from pack_trace.custody.payload import CustodyEventPayload
from pack_trace.errors import DecodeError, UpstreamUnavailableError, ValidationError


logger = logging.getLogger("pack_trace.consensus.mirror")

MIRROR_BASE_URLS: dict[str, str] = {
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "testnet": "https://testnet.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
}
ORDERS = ("asc", "desc")


def mirror_base_url(network: str | None) -> str:
    return MIRROR_BASE_URLS.get(str(network or "").strip().lower(), MIRROR_BASE_URLS["testnet"])


def encode_cursor(next_link: str | None) -> str | None:
    if not next_link:
        return None
    return quote(next_link, safe="")


def decode_cursor(cursor: str | None) -> str | None:
    if not cursor:
        return None
    return unquote(cursor)


class RawPageSource(Protocol):
    async def fetch_raw_page(
        self,
        log_id: str,
        *,
        limit: int = 25,
        order: str = "desc",
        cursor: str | None = None,
    ) -> Mapping[str, Any]:
        ...


class MirrorNodeClient:
    """GETs topic-message pages from a public mirror node."""

    def __init__(self, base_url: str, *, timeout_seconds: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def fetch_raw_page(
        self,
        log_id: str,
        *,
        limit: int = 25,
        order: str = "desc",
        cursor: str | None = None,
    ) -> Mapping[str, Any]:
        if cursor:
            url = self._cursor_url(cursor)
            params = None
        else:
            url = f"{self.base_url}/api/v1/topics/{log_id}/messages"
            params = {"limit": str(limit), "order": order, "encoding": "base64"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.get(url, params=params, headers={"Accept": "application/json"}) as response:
                    if response.status >= 400:
                        detail = (await response.text())[:256]
                        raise UpstreamUnavailableError(
                            "MIRROR_REJECTED",
                            f"mirror node request failed ({response.status}): {detail}",
                            context={"status": response.status, "log_id": log_id},
                        )
                    body = await response.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise UpstreamUnavailableError("MIRROR_UNREACHABLE", str(exc)[:256]) from exc
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailableError("MIRROR_TIMEOUT", f"mirror node timed out for log {log_id}") from exc
        if not isinstance(body, Mapping):
            raise UpstreamUnavailableError("MIRROR_RESPONSE_INVALID", "mirror node returned a non-object body")
        return body

    def _cursor_url(self, cursor: str) -> str:
        """Resolve a next-link against the configured mirror; links to any other host are refused."""
        target = urlsplit(cursor)
        if not target.scheme and not target.netloc:
            return urljoin(f"{self.base_url}/", cursor.lstrip("/"))
        base = urlsplit(self.base_url)
        if (target.scheme.lower(), target.netloc.lower()) != (base.scheme.lower(), base.netloc.lower()):
            raise ValidationError("INVALID_CURSOR", "cursor does not point at the configured mirror node")
        return cursor


@dataclass(frozen=True)
class ConsensusEntry:
    sequence_number: int
    consensus_timestamp: str
    running_hash: str
    payload: CustodyEventPayload
    message: str

    @property
    def payload_hash(self) -> str:
        return payload_hash(self.message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "sequenceNumber": self.sequence_number,
            "consensusTimestamp": self.consensus_timestamp,
            "runningHash": self.running_hash,
            "payloadHash": self.payload_hash,
            "payload": self.payload.as_wire(),
        }


@dataclass(frozen=True)
class LedgerPage:
    entries: list[ConsensusEntry] = field(default_factory=list)
    next_cursor: str | None = None


def decode_entry(raw: Mapping[str, Any]) -> ConsensusEntry:
    sequence = raw.get("sequence_number")
    if not isinstance(sequence, int) or isinstance(sequence, bool):
        raise DecodeError("MALFORMED_MESSAGE", "ledger message has no sequence number")
    try:
        message = base64.b64decode(str(raw.get("message") or ""), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise DecodeError(
            "MALFORMED_MESSAGE",
            f"sequence {sequence}: message is not base64 UTF-8",
            context={"sequence_number": sequence},
        ) from exc
    try:
        payload = CustodyEventPayload.parse(message)
    except DecodeError as exc:
        raise DecodeError(
            "MALFORMED_MESSAGE",
            f"sequence {sequence}: {exc.detail}",
            context={"sequence_number": sequence},
        ) from exc
    return ConsensusEntry(
        sequence_number=sequence,
        consensus_timestamp=str(raw.get("consensus_timestamp") or ""),
        running_hash=str(raw.get("running_hash") or ""),
        payload=payload,
        message=message,
    )


class LedgerReader:
    def __init__(self, source: RawPageSource) -> None:
        self.source = source

    async def fetch_page(
        self,
        log_id: str,
        *,
        cursor: str | None = None,
        limit: int = 25,
        order: str = "desc",
    ) -> LedgerPage:
        if order not in ORDERS:
            raise ValidationError("INVALID_ORDER", "order must be asc or desc")
        if limit < 1:
            raise ValidationError("INVALID_LIMIT", "limit must be a positive integer")
        raw = await self.source.fetch_raw_page(log_id, limit=limit, order=order, cursor=cursor)
        messages = raw.get("messages")
        if not isinstance(messages, list):
            raise UpstreamUnavailableError("MIRROR_RESPONSE_INVALID", "ledger page has no messages list")
        entries: list[ConsensusEntry] = []
        for item in messages:
            if not isinstance(item, Mapping):
                raise DecodeError("MALFORMED_MESSAGE", "ledger page contains a non-object message")
            try:
                entries.append(decode_entry(item))
            except DecodeError as exc:
                logger.warning("Ledger page decode failed log_id=%s detail=%s", log_id, exc.detail)
                raise
        links = raw.get("links")
        next_cursor = links.get("next") if isinstance(links, Mapping) else None
        return LedgerPage(entries=entries, next_cursor=next_cursor or None)
