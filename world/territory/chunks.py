"""
Chunk addressing.

The world is divided into square chunks of 16 blocks. A chunk is the unit
of territory ownership.
"""

from __future__ import annotations

import math
from typing import List, NamedTuple

from settings import CHUNK_SHIFT


class ChunkKey(NamedTuple):
    """Address of a chunk: world name plus chunk coordinates."""
    world: str
    x: int
    z: int

    @classmethod
    def from_world_coords(cls, world: str, x: float, z: float) -> "ChunkKey":
        return cls(world, math.floor(x) >> CHUNK_SHIFT, math.floor(z) >> CHUNK_SHIFT)

    def north(self) -> "ChunkKey":
        return ChunkKey(self.world, self.x, self.z - 1)

    def south(self) -> "ChunkKey":
        return ChunkKey(self.world, self.x, self.z + 1)

    def east(self) -> "ChunkKey":
        return ChunkKey(self.world, self.x + 1, self.z)

    def west(self) -> "ChunkKey":
        return ChunkKey(self.world, self.x - 1, self.z)

    def neighbours(self) -> List["ChunkKey"]:
        """The four edge-sharing chunks in the same world."""
        return [self.north(), self.south(), self.east(), self.west()]

    def is_adjacent(self, other: "ChunkKey") -> bool:
        return self.world == other.world and abs(self.x - other.x) + abs(self.z - other.z) == 1

    def lock_key(self) -> str:
        return f"chunk:{self.world}:{self.x}:{self.z}"

    def __str__(self) -> str:
        return f"{self.world} ({self.x}, {self.z})"
