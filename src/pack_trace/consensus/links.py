"""Explorer and mirror URLs for consensus log entries."""

from __future__ import annotations

from datetime import datetime, timezone
from urllib.parse import urlencode

from .mirror import mirror_base_url


HASHSCAN_ROOT = "https://hashscan.io/#"
NETWORKS = ("mainnet", "testnet", "previewnet")


def _network(value: str | None) -> str:
    text = str(value or "").strip().lower()
    return text if text in NETWORKS else "testnet"


def hashscan_topic_url(network: str | None, log_id: str) -> str:
    return f"{HASHSCAN_ROOT}/{_network(network)}/topic/{log_id}"


def hashscan_message_url(network: str | None, log_id: str, sequence_number: int) -> str:
    return f"{hashscan_topic_url(network, log_id)}/message/{sequence_number}"


def mirror_message_url(network: str | None, log_id: str, sequence_number: int) -> str:
    return f"{mirror_base_url(network)}/api/v1/topics/{log_id}/messages/{sequence_number}"


def mirror_topic_url(
    network: str | None,
    log_id: str,
    *,
    order: str | None = None,
    limit: int | None = None,
    timestamp: str | None = None,
) -> str:
    params: dict[str, str] = {}
    if order:
        params["order"] = order
    if limit is not None:
        params["limit"] = str(limit)
    if timestamp:
        params["timestamp"] = timestamp
    url = f"{mirror_base_url(network)}/api/v1/topics/{log_id}/messages"
    return f"{url}?{urlencode(params)}" if params else url


def consensus_timestamp_to_datetime(value: str | None) -> datetime | None:
    """``seconds.nanos`` to an aware datetime (second precision); None when unparseable."""
    seconds_raw = str(value or "").split(".", 1)[0]
    if not seconds_raw.isdigit():
        return None
    return datetime.fromtimestamp(int(seconds_raw), tz=timezone.utc)
