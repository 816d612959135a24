"""Re-submit local-only events to the consensus log.

The stored message is sent byte for byte, so the payload hash recorded at commit time stays
valid. The receipt is attached with a conditional update; a second worker racing on the
same event finds it already anchored and moves on. No new event row is ever written.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any

from pack_trace.consensus.publisher import ConsensusPublisher, event_memo, has_sequence_number
from pack_trace.errors import PackTraceError, UpstreamUnavailableError, reason_code

from .store import CustodyStore


logger = logging.getLogger("pack_trace.custody.backfill")


@dataclass
class BackfillReport:
    scanned: int = 0
    anchored: int = 0
    skipped: int = 0
    failed: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "scanned": self.scanned,
            "anchored": self.anchored,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


class ConsensusBackfill:
    def __init__(
        self,
        store: CustodyStore,
        publisher: ConsensusPublisher,
        *,
        default_log_id: str | None = None,
        publish_timeout_seconds: float = 10.0,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.default_log_id = default_log_id
        self.publish_timeout_seconds = float(publish_timeout_seconds)

    async def run(self, *, limit: int = 100) -> BackfillReport:
        report = BackfillReport()
        events = await self.store.list_local_only_events(limit=limit)
        for event in events:
            report.scanned += 1
            log_id = event.external_log_id or self.default_log_id
            if not log_id:
                report.skipped += 1
                logger.info("Custody backfill skipped event_id=%s reason=NO_CONSENSUS_LOG", event.event_id)
                continue
            try:
                receipt = await asyncio.wait_for(
                    self.publisher.submit(
                        event.message,
                        log_id=log_id,
                        memo=event_memo(event.batch_id, event.event_type.value),
                    ),
                    timeout=self.publish_timeout_seconds,
                )
            except (PackTraceError, asyncio.TimeoutError) as exc:
                code = "PUBLISH_TIMEOUT" if isinstance(exc, asyncio.TimeoutError) else reason_code(exc)
                report.failed += 1
                report.failures.append({"event_id": event.event_id, "reason": code})
                logger.warning("Custody backfill failed event_id=%s reason=%s", event.event_id, code)
                if isinstance(exc, (UpstreamUnavailableError, asyncio.TimeoutError)):
                    break
                continue
            if not has_sequence_number(receipt):
                report.failed += 1
                report.failures.append({"event_id": event.event_id, "reason": "SUBMIT_RECEIPT_INVALID"})
                logger.warning("Custody backfill failed event_id=%s reason=SUBMIT_RECEIPT_INVALID", event.event_id)
                continue
            attached = await self.store.attach_consensus_receipt(
                event.event_id,
                external_log_id=receipt.log_id,
                external_tx_ref=receipt.tx_ref,
                external_sequence_no=receipt.sequence_number,
                external_running_hash=receipt.running_hash,
                consensus_timestamp=receipt.consensus_timestamp,
            )
            if attached:
                report.anchored += 1
                logger.info(
                    "Custody backfill anchored event_id=%s log_id=%s sequence=%s",
                    event.event_id,
                    receipt.log_id,
                    receipt.sequence_number,
                )
            else:
                report.skipped += 1
                logger.info("Custody backfill already anchored event_id=%s", event.event_id)
        logger.info(
            "Custody backfill done scanned=%s anchored=%s skipped=%s failed=%s",
            report.scanned,
            report.anchored,
            report.skipped,
            report.failed,
        )
        return report
