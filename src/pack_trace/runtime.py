"""Wires a profile into the store, consensus adapters, recorder and verify service."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from pack_trace.config import PackTraceProfile
from pack_trace.consensus.file_log import FileConsensusLog
from pack_trace.consensus.mirror import LedgerReader, MirrorNodeClient, RawPageSource, mirror_base_url
from pack_trace.consensus.publisher import ConsensusPublisher, HttpConsensusPublisher
from pack_trace.custody.backfill import ConsensusBackfill
from pack_trace.custody.recorder import EventRecorder
from pack_trace.custody.state_machine import TransitionPolicy
from pack_trace.custody.store import CustodyStore
from pack_trace.verify.service import VerifyService


logger = logging.getLogger("pack_trace.runtime")


@dataclass
class PackTraceRuntime:
    profile: PackTraceProfile
    store: CustodyStore
    publisher: ConsensusPublisher
    reader: LedgerReader
    recorder: EventRecorder
    verify: VerifyService
    backfill: ConsensusBackfill

    @property
    def default_log_id(self) -> str | None:
        return self.profile.consensus.default_log_id

    @property
    def network(self) -> str:
        return self.profile.consensus.network


def build_runtime(
    profile: PackTraceProfile,
    *,
    publisher: ConsensusPublisher | None = None,
    source: RawPageSource | None = None,
) -> PackTraceRuntime:
    consensus = profile.consensus
    store = CustodyStore(profile.store_locator, in_flight_lease_seconds=profile.in_flight_lease_seconds)
    if publisher is None or source is None:
        if consensus.kind == "file":
            file_log = FileConsensusLog(str(consensus.file_root), max_message_bytes=consensus.max_message_bytes)
            publisher = publisher or file_log
            source = source or file_log
        else:
            publisher = publisher or HttpConsensusPublisher(
                str(consensus.submit_url),
                api_key=consensus.api_key,
                timeout_seconds=consensus.publish_timeout_seconds,
                max_message_bytes=consensus.max_message_bytes,
            )
            source = source or MirrorNodeClient(
                consensus.mirror_base_url or mirror_base_url(consensus.network),
                timeout_seconds=consensus.read_timeout_seconds,
            )
    reader = LedgerReader(source)
    policy = TransitionPolicy(
        auditor_role=profile.auditor_role,
        dispensing_facility_types=profile.dispensing_facility_types,
    )
    recorder = EventRecorder(
        store,
        publisher,
        default_log_id=consensus.default_log_id,
        policy=policy,
        publish_timeout_seconds=consensus.publish_timeout_seconds,
        max_message_bytes=consensus.max_message_bytes,
    )
    verify = VerifyService(
        store,
        reader,
        default_log_id=consensus.default_log_id,
        cache_seconds=profile.timeline.verify_cache_seconds,
    )
    backfill = ConsensusBackfill(
        store,
        publisher,
        default_log_id=consensus.default_log_id,
        publish_timeout_seconds=consensus.publish_timeout_seconds,
    )
    logger.info(
        "Runtime ready profile_id=%s store=%s consensus=%s network=%s",
        profile.profile_id,
        store.backend.kind,
        consensus.kind,
        consensus.network,
    )
    return PackTraceRuntime(
        profile=profile,
        store=store,
        publisher=publisher,
        reader=reader,
        recorder=recorder,
        verify=verify,
        backfill=backfill,
    )
