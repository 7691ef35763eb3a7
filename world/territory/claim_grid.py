"""
Claim grid.

Maps chunks to the faction that owns them and enforces the territory
rules: claims must touch existing territory, may not exceed what the
faction's power supports, and can be taken over (overclaimed) from a
faction whose power no longer covers its land.
"""

from __future__ import annotations

import math
import threading
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, TYPE_CHECKING

from engine.collaborators import Permissions
from engine.error_handler import get_logger, log_error
from engine.events import EngineEvent, EventType
from systems.factions import FactionRole, LogType
from world.territory.chunks import ChunkKey

if TYPE_CHECKING:
    from engine.collaborators import PermissionService, ZoneService
    from engine.config import EngineConfig
    from engine.events import EventBus
    from engine.locks import EngineLocks
    from world.factions.power_ledger import PowerLedger
    from world.factions.registry import FactionRegistry
    from world.factions.relations import RelationGraph
    from world.time.time_system import TimeSystem

log = get_logger("claims")

_EMPTY: FrozenSet[ChunkKey] = frozenset()


class ClaimResult(Enum):
    SUCCESS = "success"
    NO_PERMISSION = "no_permission"
    NOT_IN_FACTION = "not_in_faction"
    NOT_OFFICER = "not_officer"
    FACTION_NOT_FOUND = "faction_not_found"
    ALREADY_CLAIMED_SELF = "already_claimed_self"
    ALREADY_CLAIMED_OTHER = "already_claimed_other"
    ALREADY_CLAIMED_ALLY = "already_claimed_ally"
    NOT_ADJACENT = "not_adjacent"
    MAX_CLAIMS_REACHED = "max_claims_reached"
    WORLD_NOT_ALLOWED = "world_not_allowed"
    ZONE_PROTECTED = "zone_protected"
    CHUNK_NOT_CLAIMED = "chunk_not_claimed"
    NOT_YOUR_CLAIM = "not_your_claim"
    CANNOT_UNCLAIM_HOME = "cannot_unclaim_home"
    TARGET_HAS_POWER = "target_has_power"

    @property
    def success(self) -> bool:
        return self is ClaimResult.SUCCESS


class ClaimGrid:
    """
    Chunk ownership index.

    Keeps two views in step under one guard: chunk -> owner, and
    owner -> frozenset of chunks (replaced, never mutated). Writers hold
    the lock of every faction whose territory changes, then the chunk lock.
    """

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        locks: "EngineLocks",
        permissions: "PermissionService",
        registry: "FactionRegistry",
        power: "PowerLedger",
        relations: "RelationGraph",
        zones: "ZoneService",
        events: "EventBus",
    ):
        self._config = config
        self._clock = clock
        self._locks = locks
        self._permissions = permissions
        self._registry = registry
        self._power = power
        self._relations = relations
        self._zones = zones
        self._events = events

        self._owners: Dict[ChunkKey, str] = {}
        self._claims: Dict[str, FrozenSet[ChunkKey]] = {}
        self._guard = threading.Lock()

    # --- Queries -----------------------------------------------------------

    def get_owner(self, world: str, chunk_x: int, chunk_z: int) -> Optional[str]:
        return self._owners.get(ChunkKey(world, chunk_x, chunk_z))

    def get_owner_at(self, world: str, x: float, z: float) -> Optional[str]:
        """Owner of the chunk containing world coordinates (x, z)."""
        return self._owners.get(ChunkKey.from_world_coords(world, x, z))

    def is_claimed(self, world: str, chunk_x: int, chunk_z: int) -> bool:
        return ChunkKey(world, chunk_x, chunk_z) in self._owners

    def get_claims(self, faction_id: str) -> FrozenSet[ChunkKey]:
        return self._claims.get(faction_id, _EMPTY)

    def claimed_count(self, faction_id: str) -> int:
        return len(self._claims.get(faction_id, _EMPTY))

    def total_claims(self) -> int:
        return len(self._owners)

    def has_adjacent_claim(self, faction_id: str, key: ChunkKey) -> bool:
        claims = self._claims.get(faction_id, _EMPTY)
        return any(neighbour in claims for neighbour in key.neighbours())

    # --- Internal helpers --------------------------------------------------

    def _assign(self, key: ChunkKey, faction_id: str) -> None:
        with self._guard:
            previous = self._owners.get(key)
            if previous is not None and previous != faction_id:
                self._claims[previous] = self._claims.get(previous, _EMPTY) - {key}
                if not self._claims[previous]:
                    del self._claims[previous]
            self._owners[key] = faction_id
            self._claims[faction_id] = self._claims.get(faction_id, _EMPTY) | {key}

    def _release(self, key: ChunkKey, faction_id: str) -> bool:
        with self._guard:
            if self._owners.get(key) != faction_id:
                return False
            del self._owners[key]
            remaining = self._claims.get(faction_id, _EMPTY) - {key}
            if remaining:
                self._claims[faction_id] = remaining
            else:
                self._claims.pop(faction_id, None)
            return True

    def _is_zoned(self, key: ChunkKey) -> bool:
        try:
            return self._zones.get_zone(key.world, key.x, key.z) is not None
        except Exception as e:
            log_error(e, "zone_lookup")
            return True

    def _officer_check(self, actor_id: str, faction_id: str) -> Optional[ClaimResult]:
        """Membership and role check; caller holds the faction lock."""
        faction = self._registry.get_faction(faction_id)
        if faction is None or not faction.is_member(actor_id):
            return ClaimResult.NOT_IN_FACTION
        if faction.get_role(actor_id) < FactionRole.OFFICER:
            return ClaimResult.NOT_OFFICER
        return None

    # --- Player operations -------------------------------------------------

    def claim(self, actor_id: str, world: str, chunk_x: int, chunk_z: int) -> ClaimResult:
        """
        Claim a chunk for the actor's faction.

        Checks run in order: permission, membership and role, world, zone,
        current ownership, adjacency (skipped for the first claim), capacity.
        """
        if not self._permissions.has_permission(actor_id, Permissions.CLAIM):
            return ClaimResult.NO_PERMISSION
        faction_id = self._registry.get_player_faction_id(actor_id)
        if faction_id is None:
            return ClaimResult.NOT_IN_FACTION

        key = ChunkKey(world, chunk_x, chunk_z)
        with self._locks.factions.hold(faction_id):
            error = self._officer_check(actor_id, faction_id)
            if error is not None:
                return error
            if not self._config.claims.is_world_allowed(world):
                return ClaimResult.WORLD_NOT_ALLOWED
            if self._is_zoned(key):
                return ClaimResult.ZONE_PROTECTED

            with self._locks.chunks.hold(key.lock_key()):
                owner = self._owners.get(key)
                if owner == faction_id:
                    return ClaimResult.ALREADY_CLAIMED_SELF
                if owner is not None:
                    return ClaimResult.ALREADY_CLAIMED_OTHER

                current = self._claims.get(faction_id, _EMPTY)
                if current and self._config.claims.only_adjacent and not self.has_adjacent_claim(faction_id, key):
                    return ClaimResult.NOT_ADJACENT

                stats = self._power.get_faction_power_stats(faction_id)
                if len(current) >= stats.max_claims:
                    return ClaimResult.MAX_CLAIMS_REACHED

                self._assign(key, faction_id)

            self._registry.append_log(faction_id, LogType.CLAIM, f"Claimed {key}", actor_id)

        log.debug(f"{actor_id} claimed {key} for {faction_id}")
        self._events.publish(EngineEvent(EventType.CHUNK_CLAIMED, (faction_id,), actor_id, {"chunk": tuple(key)}))
        return ClaimResult.SUCCESS

    def unclaim(self, actor_id: str, world: str, chunk_x: int, chunk_z: int) -> ClaimResult:
        """Release one of the actor's faction chunks. Remaining territory may become disconnected."""
        if not self._permissions.has_permission(actor_id, Permissions.UNCLAIM):
            return ClaimResult.NO_PERMISSION
        faction_id = self._registry.get_player_faction_id(actor_id)
        if faction_id is None:
            return ClaimResult.NOT_IN_FACTION

        key = ChunkKey(world, chunk_x, chunk_z)
        with self._locks.factions.hold(faction_id):
            error = self._officer_check(actor_id, faction_id)
            if error is not None:
                return error

            with self._locks.chunks.hold(key.lock_key()):
                owner = self._owners.get(key)
                if owner is None:
                    return ClaimResult.CHUNK_NOT_CLAIMED
                if owner != faction_id:
                    return ClaimResult.NOT_YOUR_CLAIM
                home = self._registry.get_faction(faction_id).home
                if home is not None and home.is_in_chunk(key.world, key.x, key.z):
                    return ClaimResult.CANNOT_UNCLAIM_HOME
                self._release(key, faction_id)

            self._registry.append_log(faction_id, LogType.UNCLAIM, f"Unclaimed {key}", actor_id)

        self._events.publish(EngineEvent(EventType.CHUNK_UNCLAIMED, (faction_id,), actor_id, {"chunk": tuple(key)}))
        return ClaimResult.SUCCESS

    def overclaim(self, actor_id: str, world: str, chunk_x: int, chunk_z: int) -> ClaimResult:
        """
        Take a chunk from a faction that holds more land than its power supports.

        Ownership moves in a single index write; the chunk is never unowned
        in between. A defender home inside the chunk is removed.
        """
        if not self._permissions.has_permission(actor_id, Permissions.OVERCLAIM):
            return ClaimResult.NO_PERMISSION
        faction_id = self._registry.get_player_faction_id(actor_id)
        if faction_id is None:
            return ClaimResult.NOT_IN_FACTION

        with self._locks.factions.hold(faction_id):
            error = self._officer_check(actor_id, faction_id)
        if error is not None:
            return error

        key = ChunkKey(world, chunk_x, chunk_z)
        home_lost = False
        # The owner may change between the unlocked peek and taking its lock.
        for _ in range(3):
            defender_id = self._owners.get(key)
            if defender_id is None:
                return ClaimResult.CHUNK_NOT_CLAIMED
            if defender_id == faction_id:
                return ClaimResult.ALREADY_CLAIMED_SELF

            with self._locks.factions.hold(faction_id, defender_id):
                error = self._officer_check(actor_id, faction_id)
                if error is not None:
                    return error

                with self._locks.chunks.hold(key.lock_key()):
                    if self._owners.get(key) != defender_id:
                        continue

                    if self._relations.are_allies(faction_id, defender_id):
                        return ClaimResult.ALREADY_CLAIMED_ALLY

                    defender = self._registry.get_faction(defender_id)
                    if defender is not None and not self._power.get_faction_power_stats(defender_id).raidable:
                        return ClaimResult.TARGET_HAS_POWER

                    current = self._claims.get(faction_id, _EMPTY)
                    if current and self._config.claims.only_adjacent and not self.has_adjacent_claim(faction_id, key):
                        return ClaimResult.NOT_ADJACENT
                    if len(current) >= self._power.get_faction_power_stats(faction_id).max_claims:
                        return ClaimResult.MAX_CLAIMS_REACHED

                    self._assign(key, faction_id)

                if defender is not None:
                    home_lost = self._registry.drop_home_in_chunk(defender_id, key.world, key.x, key.z)
                    attacker_name = self._registry.get_faction(faction_id).name
                    self._registry.append_log(defender_id, LogType.OVERCLAIM, f"Lost {key} to {attacker_name}", actor_id)
                self._registry.append_log(
                    faction_id, LogType.OVERCLAIM,
                    f"Overclaimed {key} from {defender.name if defender else 'a disbanded faction'}", actor_id,
                )

            log.info(f"{faction_id} overclaimed {key} from {defender_id}")
            events = [EngineEvent(EventType.CHUNK_OVERCLAIMED, (faction_id, defender_id), actor_id, {"chunk": tuple(key)})]
            if home_lost:
                events.append(EngineEvent(EventType.FACTION_UPDATED, (defender_id,), None, {"change": "home"}))
            self._events.publish_all(events)
            return ClaimResult.SUCCESS

        return ClaimResult.ALREADY_CLAIMED_OTHER

    # --- Bulk and admin operations -----------------------------------------

    def unclaim_all(self, faction_id: str) -> int:
        """
        Release every chunk of a faction.

        Used by disband (with the faction lock already held) and by admins.

        Returns:
            Number of chunks released
        """
        released = 0
        with self._locks.factions.hold(faction_id):
            for key in sorted(self._claims.get(faction_id, _EMPTY)):
                with self._locks.chunks.hold(key.lock_key()):
                    if self._release(key, faction_id):
                        released += 1
            with self._guard:
                self._claims.pop(faction_id, None)
        if released:
            log.info(f"Released {released} claims of faction {faction_id}")
        return released

    def admin_unclaim_all(self, faction_id: str) -> int:
        """Release every chunk of a live faction, with an audit entry and event."""
        with self._locks.factions.hold(faction_id):
            if not self._registry.exists(faction_id):
                return 0
            released = self.unclaim_all(faction_id)
            if released:
                self._registry.append_log(faction_id, LogType.UNCLAIM, f"All territory unclaimed ({released} chunks, admin)", None)
        if released:
            self._events.publish(EngineEvent(EventType.CHUNK_UNCLAIMED, (faction_id,), None, {"released": released, "admin": True}))
        return released

    def admin_claim(self, faction_id: str, world: str, chunk_x: int, chunk_z: int) -> ClaimResult:
        """Assign an unowned chunk without role, adjacency, zone or capacity checks."""
        key = ChunkKey(world, chunk_x, chunk_z)
        with self._locks.factions.hold(faction_id):
            if not self._registry.exists(faction_id):
                return ClaimResult.FACTION_NOT_FOUND
            with self._locks.chunks.hold(key.lock_key()):
                owner = self._owners.get(key)
                if owner == faction_id:
                    return ClaimResult.ALREADY_CLAIMED_SELF
                if owner is not None:
                    return ClaimResult.ALREADY_CLAIMED_OTHER
                self._assign(key, faction_id)
            self._registry.append_log(faction_id, LogType.CLAIM, f"Claimed {key} (admin)", None)

        self._events.publish(EngineEvent(EventType.CHUNK_CLAIMED, (faction_id,), None, {"chunk": tuple(key), "admin": True}))
        return ClaimResult.SUCCESS

    def admin_unclaim(self, world: str, chunk_x: int, chunk_z: int) -> ClaimResult:
        """Release any chunk regardless of who owns it. A home inside it is removed."""
        key = ChunkKey(world, chunk_x, chunk_z)
        owner = self._owners.get(key)
        if owner is None:
            return ClaimResult.CHUNK_NOT_CLAIMED

        with self._locks.factions.hold(owner):
            with self._locks.chunks.hold(key.lock_key()):
                if not self._release(key, owner):
                    return ClaimResult.CHUNK_NOT_CLAIMED
            self._registry.drop_home_in_chunk(owner, key.world, key.x, key.z)
            self._registry.append_log(owner, LogType.UNCLAIM, f"Unclaimed {key} (admin)", None)

        self._events.publish(EngineEvent(EventType.CHUNK_UNCLAIMED, (owner,), None, {"chunk": tuple(key), "admin": True}))
        return ClaimResult.SUCCESS

    # --- Decay -------------------------------------------------------------

    def _last_activity(self, faction_id: str) -> Optional[float]:
        faction = self._registry.get_faction(faction_id)
        if faction is None or not faction.members:
            return None
        return max(m.last_online for m in faction.members.values())

    def is_faction_inactive(self, faction_id: str) -> bool:
        """True when no member is online and none has been for the decay period."""
        last = self._last_activity(faction_id)
        if last is None:
            return False
        faction = self._registry.get_faction(faction_id)
        if any(self._power.is_online(pid) for pid in faction.members):
            return False
        return self._clock.days_since(last) >= self._config.claims.decay_days_inactive

    def days_until_decay(self, faction_id: str) -> Optional[int]:
        if not self._config.claims.decay_enabled:
            return None
        last = self._last_activity(faction_id)
        if last is None:
            return None
        remaining = self._config.claims.decay_days_inactive - self._clock.days_since(last)
        return max(0, int(math.ceil(remaining)))

    def release_orphaned_claims(self) -> int:
        """Release claims whose owning faction no longer exists."""
        released = 0
        for faction_id in list(self._claims):
            if self._registry.exists(faction_id):
                continue
            with self._locks.factions.hold(faction_id):
                if self._registry.exists(faction_id):
                    continue
                count = self.unclaim_all(faction_id)
            if count:
                log.warning(f"Released {count} claims of missing faction {faction_id}")
                released += count
        return released

    def tick_claim_decay(self) -> int:
        """
        Release all territory of factions inactive past the decay period.
        Claims of factions that no longer exist are released first,
        whether or not decay is enabled.

        Returns:
            Total number of chunks released
        """
        orphaned = self.release_orphaned_claims()
        if not self._config.claims.decay_enabled:
            return orphaned

        total = orphaned
        decayed: List[Tuple[str, int]] = []
        for faction in self._registry.all_factions():
            if not self._claims.get(faction.id) or not self.is_faction_inactive(faction.id):
                continue
            with self._locks.factions.hold(faction.id):
                if not self._registry.exists(faction.id):
                    continue
                released = self.unclaim_all(faction.id)
                if released:
                    self._registry.append_log(faction.id, LogType.UNCLAIM, f"{released} claims decayed from inactivity", None)
            if released:
                decayed.append((faction.id, released))
                total += released

        for faction_id, released in decayed:
            log.info(f"Claim decay released {released} chunks of {faction_id}")
            self._events.publish(EngineEvent(EventType.CHUNK_UNCLAIMED, (faction_id,), None, {"decayed": released}))
        return total

    # --- Persistence -------------------------------------------------------

    def export(self) -> List[Tuple[str, int, int, str]]:
        with self._guard:
            return [(key.world, key.x, key.z, owner) for key, owner in self._owners.items()]

    def load(self, claims: List[Tuple[str, int, int, str]]) -> None:
        owners: Dict[ChunkKey, str] = {}
        by_faction: Dict[str, set] = {}
        for world, chunk_x, chunk_z, faction_id in claims:
            key = ChunkKey(world, int(chunk_x), int(chunk_z))
            if key in owners:
                log.warning(f"Duplicate claim for {key} ignored (kept {owners[key]})")
                continue
            owners[key] = faction_id
            by_faction.setdefault(faction_id, set()).add(key)
        with self._guard:
            self._owners = owners
            self._claims = {fid: frozenset(keys) for fid, keys in by_faction.items()}
        log.info(f"Loaded {len(owners)} claims")
