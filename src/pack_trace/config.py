"""pack-trace wiring profile loader.

Profiles are YAML. Any string value written as ``${ENV_VAR}`` is resolved from the
environment at load time, which keeps DSNs and API keys out of the file.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import os
from pathlib import Path
import re
from typing import Any, Mapping

import yaml

from pack_trace.consensus.publisher import MAX_MESSAGE_BYTES
from pack_trace.custody.state_machine import DEFAULT_AUDITOR_ROLE, DEFAULT_DISPENSING_FACILITY_TYPES


CONSENSUS_KINDS = ("http", "file")
NETWORKS = ("mainnet", "testnet", "previewnet")


class ProfileError(ValueError):
    """Raised when a wiring profile is missing or invalid."""


@dataclass(frozen=True)
class ConsensusWiring:
    kind: str = "file"
    network: str = "testnet"
    submit_url: str | None = None
    api_key: str | None = None
    mirror_base_url: str | None = None
    default_log_id: str | None = None
    file_root: str | None = None
    publish_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 10.0
    max_message_bytes: int = MAX_MESSAGE_BYTES


@dataclass(frozen=True)
class TimelineWiring:
    page_size: int = 25
    complete_page_size: int = 150
    complete_max_pages: int = 20
    verify_page_size: int = 10
    verify_cache_seconds: float = 45.0


@dataclass(frozen=True)
class PackTraceProfile:
    profile_id: str
    store_locator: str
    consensus: ConsensusWiring = field(default_factory=ConsensusWiring)
    timeline: TimelineWiring = field(default_factory=TimelineWiring)
    in_flight_lease_seconds: float = 60.0
    auditor_role: str = DEFAULT_AUDITOR_ROLE
    dispensing_facility_types: tuple[str, ...] = DEFAULT_DISPENSING_FACILITY_TYPES
    log_level: str | None = None
    log_paths: tuple[str, ...] = ()

    @classmethod
    def load(cls, path: Path | str) -> "PackTraceProfile":
        profile_path = Path(path)
        if not profile_path.exists():
            raise ProfileError(f"profile not found: {profile_path}")
        data = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: Any) -> "PackTraceProfile":
        if not isinstance(data, Mapping):
            raise ProfileError("profile must be a mapping")
        profile_id = str(data.get("profile_id") or "").strip()
        if not profile_id:
            raise ProfileError("profile_id is required")
        wiring = _section(data, "wiring")
        policy = _section(data, "policy")
        logging_cfg = _section(data, "logging")

        store_locator = _resolve_env(wiring.get("store_locator"))
        if not store_locator:
            raise ProfileError("wiring.store_locator is required")

        consensus_raw = _section(wiring, "consensus")
        kind = str(consensus_raw.get("kind") or "file").strip().lower()
        if kind not in CONSENSUS_KINDS:
            raise ProfileError(f"wiring.consensus.kind must be one of {list(CONSENSUS_KINDS)}")
        network = str(consensus_raw.get("network") or "testnet").strip().lower()
        if network not in NETWORKS:
            raise ProfileError(f"wiring.consensus.network must be one of {list(NETWORKS)}")
        consensus = ConsensusWiring(
            kind=kind,
            network=network,
            submit_url=_resolve_env(consensus_raw.get("submit_url")),
            api_key=_resolve_env(consensus_raw.get("api_key")),
            mirror_base_url=_resolve_env(consensus_raw.get("mirror_base_url")),
            default_log_id=_resolve_env(consensus_raw.get("default_log_id")),
            file_root=_resolve_env(consensus_raw.get("file_root")),
            publish_timeout_seconds=_positive_float(consensus_raw, "publish_timeout_seconds", 10.0),
            read_timeout_seconds=_positive_float(consensus_raw, "read_timeout_seconds", 10.0),
            max_message_bytes=_positive_int(consensus_raw, "max_message_bytes", MAX_MESSAGE_BYTES),
        )
        if kind == "http" and not consensus.submit_url:
            raise ProfileError("wiring.consensus.submit_url is required when kind=http")
        if kind == "file" and not consensus.file_root:
            raise ProfileError("wiring.consensus.file_root is required when kind=file")
        if consensus.max_message_bytes > MAX_MESSAGE_BYTES:
            raise ProfileError(f"wiring.consensus.max_message_bytes cannot exceed {MAX_MESSAGE_BYTES}")

        timeline_raw = _section(wiring, "timeline")
        timeline = TimelineWiring(
            page_size=_positive_int(timeline_raw, "page_size", 25),
            complete_page_size=_positive_int(timeline_raw, "complete_page_size", 150),
            complete_max_pages=_positive_int(timeline_raw, "complete_max_pages", 20),
            verify_page_size=_positive_int(timeline_raw, "verify_page_size", 10),
            verify_cache_seconds=_positive_float(timeline_raw, "verify_cache_seconds", 45.0),
        )
        idempotency = _section(wiring, "idempotency")

        dispensing = policy.get("dispensing_facility_types", list(DEFAULT_DISPENSING_FACILITY_TYPES))
        if isinstance(dispensing, str):
            dispensing = [item for item in dispensing.split(",")]
        if not isinstance(dispensing, list) or not all(str(item).strip() for item in dispensing):
            raise ProfileError("policy.dispensing_facility_types must be a list of facility types")

        log_paths = logging_cfg.get("paths") or []
        if not isinstance(log_paths, list):
            raise ProfileError("logging.paths must be a list")

        return cls(
            profile_id=profile_id,
            store_locator=store_locator,
            consensus=consensus,
            timeline=timeline,
            in_flight_lease_seconds=_positive_float(idempotency, "in_flight_lease_seconds", 60.0),
            auditor_role=str(policy.get("auditor_role") or DEFAULT_AUDITOR_ROLE).strip().upper(),
            dispensing_facility_types=tuple(str(item).strip().upper() for item in dispensing),
            log_level=_resolve_env(logging_cfg.get("level")),
            log_paths=tuple(str(_resolve_env(item)) for item in log_paths if item),
        )


_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)\}$")


def _resolve_env(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    match = _ENV_PATTERN.match(value.strip())
    if not match:
        return value
    return os.getenv(match.group(1))


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ProfileError(f"{key} must be a mapping")
    return value


def _positive_int(data: Mapping[str, Any], key: str, default: int) -> int:
    raw = _resolve_env(data.get(key))
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ProfileError(f"{key} must be an integer") from None
    if value <= 0:
        raise ProfileError(f"{key} must be greater than zero")
    return value


def _positive_float(data: Mapping[str, Any], key: str, default: float) -> float:
    raw = _resolve_env(data.get(key))
    if raw in (None, ""):
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ProfileError(f"{key} must be a number") from None
    if value <= 0:
        raise ProfileError(f"{key} must be greater than zero")
    return value
