"""
Territory system.

Chunk addressing and the claim grid that maps chunks to owning factions.
"""

from .chunks import ChunkKey
from .claim_grid import ClaimGrid, ClaimResult

__all__ = [
    "ChunkKey",
    "ClaimGrid",
    "ClaimResult",
]
