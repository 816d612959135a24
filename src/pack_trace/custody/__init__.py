"""Custody ledger: wire payload, hash chain, transitions and the store."""

from .hashing import ChainBreak, payload_hash, prev_link, verify_chain
from .payload import TERMINAL_EVENT_TYPES, CustodyEventPayload, EventType, WireBatch
from .records import Actor, BatchRecord, BatchState, EventRecord, Facility
from .state_machine import Transition, TransitionContext, TransitionPolicy, plan_transition
from .store import CustodyStore

__all__ = [
    "Actor",
    "BatchRecord",
    "BatchState",
    "ChainBreak",
    "CustodyEventPayload",
    "CustodyStore",
    "EventRecord",
    "EventType",
    "Facility",
    "TERMINAL_EVENT_TYPES",
    "Transition",
    "TransitionContext",
    "TransitionPolicy",
    "WireBatch",
    "payload_hash",
    "plan_transition",
    "prev_link",
    "verify_chain",
]
