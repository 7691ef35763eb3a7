"""
Faction engine assembly.

Builds every component with explicit dependencies, wires the cascades
between them and exposes the handful of operations that span more than
one component (homes, combat hooks, presence, persistence).
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from engine.collaborators import (
    AllowAllPermissions,
    EngineSnapshot,
    InMemoryPersistence,
    NullPageTracker,
    PageTracker,
    PermissionService,
    PersistenceService,
    ZoneService,
)
from engine.config import EngineConfig
from engine.dispatcher import EngineDispatcher
from engine.error_handler import get_logger, guarded_call, invariant_violation, log_error
from engine.events import EngineEvent, EventBus
from engine.locks import EngineLocks
from engine.scheduler import EngineScheduler
from systems.factions import Faction, FactionHome, RelationType
from systems.power import FactionPowerStats, PowerRecord
from world.factions.power_ledger import PowerLedger
from world.factions.proposals import InviteDirectory, JoinRequestDirectory
from world.factions.registry import FactionRegistry, FactionResult
from world.factions.relations import RelationGraph
from world.territory.chunks import ChunkKey
from world.territory.claim_grid import ClaimGrid
from world.time.time_system import TimeSystem
from world.zones import ZoneMap

log = get_logger("engine")


class FactionEngine:
    """
    The faction/territory engine.

    Components are public attributes and are called directly by command
    and menu layers:

    - ``registry``: factions, membership, roles, settings, audit log
    - ``claims``: chunk ownership
    - ``power``: player power and faction power statistics
    - ``relations``: diplomacy
    - ``invites`` / ``join_requests``: membership proposals
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        clock: Optional[TimeSystem] = None,
        permissions: Optional[PermissionService] = None,
        zones: Optional[ZoneService] = None,
        persistence: Optional[PersistenceService] = None,
        page_tracker: Optional[PageTracker] = None,
        events: Optional[EventBus] = None,
    ):
        """
        Assemble the engine.

        Args:
            config: Engine configuration (defaults if None)
            clock: Time source (wall clock if None)
            permissions: Permission service (allow all if None)
            zones: Zone service (empty ZoneMap if None)
            persistence: Snapshot storage (in-memory if None)
            page_tracker: Receives faction ids whose views changed
            events: Event bus to publish on (new bus if None)
        """
        self.config = config or EngineConfig()
        self.clock = clock or TimeSystem()
        self.permissions = permissions or AllowAllPermissions()
        self.zones = zones if zones is not None else ZoneMap()
        self.persistence = persistence or InMemoryPersistence()
        self.page_tracker = page_tracker or NullPageTracker()
        self.events = events or EventBus()
        self.locks = EngineLocks()

        self.registry = FactionRegistry(self.config, self.clock, self.locks, self.permissions, self.events)
        self.power = PowerLedger(self.config, self.clock, self.locks, self.events)
        self.relations = RelationGraph(self.config, self.clock, self.locks, self.permissions, self.registry, self.events)
        self.claims = ClaimGrid(
            self.config, self.clock, self.locks, self.permissions,
            self.registry, self.power, self.relations, self.zones, self.events,
        )
        self.invites = InviteDirectory(self.config, self.clock, self.registry, self.permissions, self.events)
        self.join_requests = JoinRequestDirectory(self.config, self.clock, self.registry, self.permissions, self.events)

        self.power.bind_roster(self.registry.member_ids, self.claims.claimed_count)
        self.registry.on_disband(self._cascade_disband)
        self.registry.on_member_joined(self._clear_player_proposals)
        self.events.subscribe(self._notify_pages)

        self.dispatcher = EngineDispatcher()
        self.scheduler = EngineScheduler()
        self._schedule_tasks()

    # --- Wiring ------------------------------------------------------------

    def _cascade_disband(self, faction: Faction) -> None:
        released = self.claims.unclaim_all(faction.id)
        relations = self.relations.clear_faction(faction.id)
        self.invites.clear_faction_invites(faction.id)
        self.join_requests.clear_faction_requests(faction.id)
        log.debug(f"Disband cascade for {faction.id}: {released} claims, {relations} relations")

    def _clear_player_proposals(self, player_id: str, faction_id: str) -> None:
        self.invites.clear_player_invites(player_id)
        self.join_requests.clear_player_requests(player_id)

    def _notify_pages(self, event: EngineEvent) -> None:
        for faction_id in event.faction_ids:
            guarded_call("page_tracker", self.page_tracker.notify_changed, faction_id)

    def _schedule_tasks(self) -> None:
        sched = self.config.scheduler
        self.scheduler.add("power_regen", sched.regen_interval_seconds, self.power.tick_regeneration)
        self.scheduler.add("claim_decay", sched.decay_interval_minutes * 60, self.claims.tick_claim_decay)
        self.scheduler.add("proposal_sweep", sched.sweep_interval_minutes * 60, self.sweep_proposals)
        self.scheduler.add("autosave", sched.autosave_interval_minutes * 60, self.save)

    # --- Lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.dispatcher.start()
        self.scheduler.start()
        log.info("Faction engine started")

    def shutdown(self) -> None:
        self.scheduler.stop()
        self.dispatcher.stop()
        self.save()
        log.info("Faction engine stopped")

    def sweep_proposals(self) -> int:
        return self.invites.cleanup_expired() + self.join_requests.cleanup_expired()

    # --- Cross-component operations ----------------------------------------

    def set_home(
        self,
        actor_id: str,
        world: str,
        x: float,
        y: float,
        z: float,
        yaw: float = 0.0,
        pitch: float = 0.0,
    ) -> FactionResult:
        """Set the actor's faction home. The position must be inside the faction's own territory."""
        faction_id = self.registry.get_player_faction_id(actor_id)
        if faction_id is None:
            return FactionResult.NOT_IN_FACTION

        home = FactionHome(world, x, y, z, yaw, pitch, self.clock.now(), actor_id)
        with self.locks.factions.hold(faction_id):
            if self.claims.get_owner(world, home.chunk_x, home.chunk_z) != faction_id:
                return FactionResult.NOT_IN_TERRITORY
            return self.registry.set_home(faction_id, home, actor_id)

    def player_online(self, player_id: str) -> None:
        self.power.player_online(player_id)
        self.registry.update_last_online(player_id)

    def player_offline(self, player_id: str) -> None:
        self.power.player_offline(player_id)
        self.registry.update_last_online(player_id)

    def on_death(self, player_id: str, killer_id: Optional[str] = None) -> PowerRecord:
        return self.power.on_death(player_id, killer_id)

    def on_respawn(self, player_id: str) -> PowerRecord:
        return self.power.on_respawn(player_id)

    # --- Read-through views ------------------------------------------------

    def get_faction_claims(self, faction_id: str) -> FrozenSet[ChunkKey]:
        return self.claims.get_claims(faction_id)

    def get_faction_relations(self, faction_id: str) -> Dict[str, RelationType]:
        """Non-neutral relations of a faction, keyed by the other faction id."""
        result = {other: RelationType.ALLY for other in self.relations.get_allies(faction_id)}
        result.update({other: RelationType.ENEMY for other in self.relations.get_enemies(faction_id)})
        return result

    def get_faction_power(self, faction_id: str) -> FactionPowerStats:
        return self.power.get_faction_power_stats(faction_id)

    # --- Persistence -------------------------------------------------------

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            factions=self.registry.all_factions(),
            claims=self.claims.export(),
            relations=self.relations.export(),
            power=self.power.records(),
        )

    def save(self) -> bool:
        try:
            self.persistence.save_snapshot(self.snapshot())
        except Exception as e:
            log_error(e, "save_snapshot")
            return False
        return True

    def load(self) -> bool:
        """
        Restore state from persistence.

        A missing or empty snapshot never replaces a populated engine.
        """
        try:
            snapshot = self.persistence.load_snapshot()
        except Exception as e:
            log_error(e, "load_snapshot")
            return False
        if snapshot is None:
            return False
        if snapshot.is_empty and self.registry.faction_count() > 0:
            log.error("Loaded snapshot is empty; keeping in-memory data")
            return False
        return self.restore(snapshot)

    def restore(self, snapshot: EngineSnapshot) -> bool:
        """
        Replace engine state with ``snapshot``.

        Claims and relations that point at a faction the registry did not
        load are dropped.
        """
        if not self.registry.load(snapshot.factions):
            return False
        exists = self.registry.exists
        claims = [claim for claim in snapshot.claims if exists(claim[3])]
        relations = [rel for rel in snapshot.relations if exists(rel[0]) and exists(rel[1])]
        dropped = len(snapshot.claims) - len(claims) + len(snapshot.relations) - len(relations)
        if dropped:
            log.warning(f"Dropped {dropped} claims and relations of factions that were not loaded")
        self.claims.load(claims)
        self.relations.load(relations)
        self.power.load(snapshot.power)
        return True

    # --- Diagnostics -------------------------------------------------------

    def check_invariants(self) -> None:
        """Raise InvariantViolation if cross-component state disagrees."""
        self.registry.check_invariants()
        seen: Dict[ChunkKey, str] = {}
        for faction in self.registry.all_factions():
            for key in self.claims.get_claims(faction.id):
                if key in seen:
                    raise invariant_violation(f"{key} owned by both {seen[key]} and {faction.id}")
                if self.claims.get_owner(key.world, key.x, key.z) != faction.id:
                    raise invariant_violation(f"{key} index disagrees with claim set of {faction.id}")
                seen[key] = faction.id
        for a, b, _, _ in self.relations.export():
            if not (self.registry.exists(a) and self.registry.exists(b)):
                raise invariant_violation(f"relation {a}<->{b} references a missing faction")
