"""
Faction management system.

Handles faction membership, power, relations and the invite/join-request
flow.
"""

from .registry import FactionRegistry, FactionResult, find_successor
from .power_ledger import PowerLedger
from .relations import AllyRequest, RelationGraph, RelationResult
from .proposals import (
    InviteDirectory,
    JoinRequest,
    JoinRequestDirectory,
    PendingInvite,
    ProposalResult,
)

__all__ = [
    "FactionRegistry",
    "FactionResult",
    "find_successor",
    "PowerLedger",
    "AllyRequest",
    "RelationGraph",
    "RelationResult",
    "InviteDirectory",
    "JoinRequest",
    "JoinRequestDirectory",
    "PendingInvite",
    "ProposalResult",
]
