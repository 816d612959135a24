"""Consensus log adapters and ledger timelines."""

from .file_log import FileConsensusLog
from .mirror import ConsensusEntry, LedgerPage, LedgerReader, MirrorNodeClient
from .publisher import (
    MAX_MESSAGE_BYTES,
    ConsensusPublisher,
    ConsensusReceipt,
    HttpConsensusPublisher,
    PublishOutcome,
)
from .timeline import (
    BatchIdentifiers,
    load_batch_timeline,
    load_complete_batch_timeline,
    merge_with_local,
)

__all__ = [
    "BatchIdentifiers",
    "ConsensusEntry",
    "ConsensusPublisher",
    "ConsensusReceipt",
    "FileConsensusLog",
    "HttpConsensusPublisher",
    "LedgerPage",
    "LedgerReader",
    "MAX_MESSAGE_BYTES",
    "MirrorNodeClient",
    "PublishOutcome",
    "load_batch_timeline",
    "load_complete_batch_timeline",
    "merge_with_local",
]
