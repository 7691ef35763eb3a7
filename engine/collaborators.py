"""
Boundaries to the systems the engine relies on but does not own.

The engine only talks to these through the protocols below. Defaults are
provided so the engine runs standalone (and in tests) without any of the
real integrations.
"""

from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional, Protocol, Set, Tuple, runtime_checkable

if TYPE_CHECKING:
    from systems.factions import Faction
    from systems.power import PowerRecord
    from world.zones import Zone


class Permissions:
    """Permission node keys checked before player-facing operations."""
    ROOT = "factions"

    CREATE = "factions.faction.create"
    DISBAND = "factions.faction.disband"
    RENAME = "factions.faction.rename"
    DESC = "factions.faction.description"
    TAG = "factions.faction.tag"
    COLOR = "factions.faction.color"
    OPEN = "factions.faction.open"

    INVITE = "factions.member.invite"
    JOIN = "factions.member.join"
    LEAVE = "factions.member.leave"
    KICK = "factions.member.kick"
    PROMOTE = "factions.member.promote"
    DEMOTE = "factions.member.demote"
    TRANSFER = "factions.member.transfer"

    CLAIM = "factions.territory.claim"
    UNCLAIM = "factions.territory.unclaim"
    OVERCLAIM = "factions.territory.overclaim"

    SETHOME = "factions.teleport.sethome"

    ALLY = "factions.relation.ally"
    ENEMY = "factions.relation.enemy"
    NEUTRAL = "factions.relation.neutral"


@runtime_checkable
class PermissionService(Protocol):
    def has_permission(self, player_id: str, key: str) -> bool: ...


@runtime_checkable
class ZoneService(Protocol):
    def get_zone(self, world: str, chunk_x: int, chunk_z: int) -> Optional["Zone"]: ...


@runtime_checkable
class PageTracker(Protocol):
    def notify_changed(self, faction_id: str) -> None: ...


@dataclass
class EngineSnapshot:
    """Everything needed to rebuild engine state. Format on disk is the persistence layer's business."""
    factions: List["Faction"] = field(default_factory=list)
    claims: List[Tuple[str, int, int, str]] = field(default_factory=list)  # world, x, z, faction_id
    relations: List[Tuple[str, str, str, float]] = field(default_factory=list)  # a, b, type, since
    power: List["PowerRecord"] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.factions or self.claims or self.relations or self.power)


@runtime_checkable
class PersistenceService(Protocol):
    def load_snapshot(self) -> Optional[EngineSnapshot]: ...

    def save_snapshot(self, snapshot: EngineSnapshot) -> None: ...


class AllowAllPermissions:
    """Grants every permission."""

    def has_permission(self, player_id: str, key: str) -> bool:
        return True


class StaticPermissions:
    """Grants everything except explicitly denied (player, key) pairs."""

    def __init__(self) -> None:
        self._denied: Set[Tuple[str, str]] = set()

    def deny(self, player_id: str, key: str) -> None:
        self._denied.add((player_id, key))

    def allow(self, player_id: str, key: str) -> None:
        self._denied.discard((player_id, key))

    def has_permission(self, player_id: str, key: str) -> bool:
        return (player_id, key) not in self._denied


class NullPageTracker:
    def notify_changed(self, faction_id: str) -> None:
        return None


class RecordingPageTracker:
    """Remembers which factions were reported as changed."""

    def __init__(self) -> None:
        self.changed: List[str] = []
        self._lock = threading.Lock()

    def notify_changed(self, faction_id: str) -> None:
        with self._lock:
            self.changed.append(faction_id)


class InMemoryPersistence:
    """Keeps the last saved snapshot in memory."""

    def __init__(self, snapshot: Optional[EngineSnapshot] = None) -> None:
        self._snapshot = snapshot
        self.save_count = 0

    def load_snapshot(self) -> Optional[EngineSnapshot]:
        return copy.copy(self._snapshot)

    def save_snapshot(self, snapshot: EngineSnapshot) -> None:
        self._snapshot = snapshot
        self.save_count += 1
