"""
Admin-defined zones.

A zone marks a chunk as SafeZone or WarZone. Zoned chunks can never be
claimed by a faction.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional

from world.territory.chunks import ChunkKey


class ZoneType(Enum):
    SAFE = "safe"
    WAR = "war"


@dataclass(frozen=True)
class Zone:
    """A protected chunk."""
    id: str
    name: str
    type: ZoneType
    world: str
    chunk_x: int
    chunk_z: int

    @property
    def chunk(self) -> ChunkKey:
        return ChunkKey(self.world, self.chunk_x, self.chunk_z)

    @property
    def is_safe(self) -> bool:
        return self.type == ZoneType.SAFE


class ZoneMap:
    """
    In-memory zone service.

    Satisfies the ``ZoneService`` protocol the claim grid consults. Zones are
    kept in a copy-on-write dict so lookups never block.
    """

    def __init__(self) -> None:
        self._zones: Dict[ChunkKey, Zone] = {}
        self._guard = threading.Lock()

    def get_zone(self, world: str, chunk_x: int, chunk_z: int) -> Optional[Zone]:
        return self._zones.get(ChunkKey(world, chunk_x, chunk_z))

    def is_zone(self, world: str, chunk_x: int, chunk_z: int) -> bool:
        return self.get_zone(world, chunk_x, chunk_z) is not None

    def create_zone(self, name: str, zone_type: ZoneType, world: str, chunk_x: int, chunk_z: int) -> Optional[Zone]:
        """Create a zone. Returns None if the chunk is already zoned."""
        key = ChunkKey(world, chunk_x, chunk_z)
        with self._guard:
            if key in self._zones:
                return None
            zone = Zone(uuid.uuid4().hex, name, zone_type, world, chunk_x, chunk_z)
            zones = dict(self._zones)
            zones[key] = zone
            self._zones = zones
        return zone

    def remove_zone(self, world: str, chunk_x: int, chunk_z: int) -> bool:
        key = ChunkKey(world, chunk_x, chunk_z)
        with self._guard:
            if key not in self._zones:
                return False
            zones = dict(self._zones)
            del zones[key]
            self._zones = zones
        return True

    def all_zones(self) -> List[Zone]:
        return list(self._zones.values())
