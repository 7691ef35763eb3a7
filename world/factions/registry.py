"""
Faction registry.

Owns every faction snapshot, membership, roles and the audit log. Other
components hang off the registry through its disband and member-joined
listeners instead of being called directly.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from engine.collaborators import Permissions
from engine.error_handler import get_logger, guarded_call, invariant_violation
from engine.events import EngineEvent, EventType
from systems.factions import (
    Faction,
    FactionHome,
    FactionLogEntry,
    FactionRole,
    LogType,
    Member,
    TerritoryPermissions,
    generate_tag,
    new_faction_id,
    validate_faction_name,
    validate_tag,
)

if TYPE_CHECKING:
    from engine.collaborators import PermissionService
    from engine.config import EngineConfig
    from engine.events import EventBus
    from engine.locks import EngineLocks
    from world.time.time_system import TimeSystem

log = get_logger("registry")


class FactionResult(Enum):
    SUCCESS = "success"
    NAME_TAKEN = "name_taken"
    TAG_TAKEN = "tag_taken"
    INVALID_NAME = "invalid_name"
    ALREADY_IN_FACTION = "already_in_faction"
    FACTION_FULL = "faction_full"
    NOT_FOUND = "not_found"
    NOT_IN_FACTION = "not_in_faction"
    NOT_PERMITTED = "not_permitted"
    CANNOT_REMOVE_LEADER = "cannot_remove_leader"
    ALREADY_MAX_ROLE = "already_max_role"
    ALREADY_MIN_ROLE = "already_min_role"
    TARGET_NOT_MEMBER = "target_not_member"
    NOT_IN_TERRITORY = "not_in_territory"

    @property
    def success(self) -> bool:
        return self is FactionResult.SUCCESS


DisbandListener = Callable[[Faction], None]
JoinListener = Callable[[str, str], None]


def find_successor(faction: Faction) -> Optional[Member]:
    """
    Pick who should lead if the current leader goes.

    Highest role wins, ties broken by earliest join. The leader is never
    its own successor.
    """
    candidates = [m for m in faction.members.values() if not m.is_leader]
    if not candidates:
        return None
    return min(candidates, key=lambda m: (-m.role, m.joined_at))


class FactionRegistry:
    """
    Registry of all player factions.

    Tracks:
    - Faction snapshots by id
    - Case-insensitive name and tag indices
    - The player -> faction index

    Every mutation holds the locks of the players and factions it touches,
    writes a new snapshot, appends one audit entry and publishes its events
    after the locks are released.
    """

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        locks: "EngineLocks",
        permissions: "PermissionService",
        events: "EventBus",
    ):
        self._config = config
        self._clock = clock
        self._locks = locks
        self._permissions = permissions
        self._events = events

        self._factions: Dict[str, Faction] = {}
        self._player_index: Dict[str, str] = {}
        self._name_index: Dict[str, str] = {}
        self._tag_index: Dict[str, str] = {}
        self._index_guard = threading.Lock()

        self._disband_listeners: List[DisbandListener] = []
        self._join_listeners: List[JoinListener] = []

    # --- Listeners ---------------------------------------------------------

    def on_disband(self, callback: DisbandListener) -> None:
        """Called with the final snapshot, after removal, while its lock is held."""
        self._disband_listeners.append(callback)

    def on_member_joined(self, callback: JoinListener) -> None:
        """Called with (player_id, faction_id) after the join is committed."""
        self._join_listeners.append(callback)

    # --- Queries -----------------------------------------------------------

    def get_faction(self, faction_id: str) -> Optional[Faction]:
        return self._factions.get(faction_id)

    def exists(self, faction_id: str) -> bool:
        return faction_id in self._factions

    def get_faction_by_name(self, name: str) -> Optional[Faction]:
        faction_id = self._name_index.get(name.casefold())
        return self._factions.get(faction_id) if faction_id else None

    def get_faction_by_tag(self, tag: str) -> Optional[Faction]:
        faction_id = self._tag_index.get(tag.casefold())
        return self._factions.get(faction_id) if faction_id else None

    def get_player_faction_id(self, player_id: str) -> Optional[str]:
        return self._player_index.get(player_id)

    def get_player_faction(self, player_id: str) -> Optional[Faction]:
        faction_id = self._player_index.get(player_id)
        return self._factions.get(faction_id) if faction_id else None

    def is_in_faction(self, player_id: str) -> bool:
        return player_id in self._player_index

    def are_in_same_faction(self, player_a: str, player_b: str) -> bool:
        faction_a = self._player_index.get(player_a)
        return faction_a is not None and faction_a == self._player_index.get(player_b)

    def is_name_taken(self, name: str) -> bool:
        return name.casefold() in self._name_index

    def is_tag_taken(self, tag: str) -> bool:
        return tag.casefold() in self._tag_index

    def all_factions(self) -> List[Faction]:
        with self._index_guard:
            return list(self._factions.values())

    def faction_count(self) -> int:
        return len(self._factions)

    def member_ids(self, faction_id: str) -> List[str]:
        faction = self._factions.get(faction_id)
        return list(faction.members) if faction else []

    # --- Internal helpers --------------------------------------------------

    def _entry(self, log_type: LogType, message: str, actor_id: Optional[str]) -> FactionLogEntry:
        return FactionLogEntry(log_type, message, actor_id, self._clock.now())

    def _logged(self, faction: Faction, log_type: LogType, message: str, actor_id: Optional[str]) -> Faction:
        return faction.with_log(self._entry(log_type, message, actor_id), self._config.faction.max_logs)

    def _store(self, faction: Faction) -> None:
        with self._index_guard:
            self._factions[faction.id] = faction

    def _can_edit_settings(self, faction: Faction, actor_id: str) -> bool:
        role = faction.get_role(actor_id)
        if role is None:
            return False
        return role == FactionRole.LEADER or (role == FactionRole.OFFICER and faction.permissions.officers_can_edit)

    def _publish(self, events: List[EngineEvent]) -> None:
        self._events.publish_all(events)

    # --- Lifecycle ---------------------------------------------------------

    def create_faction(
        self,
        founder_id: str,
        name: str,
        founder_name: str,
        tag: Optional[str] = None,
    ) -> Tuple[FactionResult, Optional[Faction]]:
        """
        Create a faction with ``founder_id`` as its leader.

        Args:
            founder_id: Player creating the faction
            name: Display name, unique ignoring case
            founder_name: Founder's display name
            tag: Optional short tag; generated from the name when omitted

        Returns:
            (result, faction) where faction is None unless result is SUCCESS
        """
        if not self._permissions.has_permission(founder_id, Permissions.CREATE):
            return FactionResult.NOT_PERMITTED, None

        cfg = self._config.faction
        if not validate_faction_name(name, cfg.min_name_length, cfg.max_name_length):
            return FactionResult.INVALID_NAME, None
        if tag is not None and not validate_tag(tag):
            return FactionResult.INVALID_NAME, None

        with self._locks.players.hold(founder_id):
            if founder_id in self._player_index:
                return FactionResult.ALREADY_IN_FACTION, None

            with self._index_guard:
                if name.casefold() in self._name_index:
                    return FactionResult.NAME_TAKEN, None
                if tag is not None and tag.casefold() in self._tag_index:
                    return FactionResult.TAG_TAKEN, None
                if tag is None:
                    tag = generate_tag(name, lambda t: t.casefold() in self._tag_index)

                now = self._clock.now()
                founder = Member(founder_id, founder_name, FactionRole.LEADER, now, now)
                faction = Faction(
                    id=new_faction_id(),
                    name=name,
                    tag=tag,
                    created_at=now,
                    members={founder_id: founder},
                )
                faction = self._logged(faction, LogType.MEMBER_JOIN, f"{founder_name} founded the faction", founder_id)

                self._factions[faction.id] = faction
                self._name_index[name.casefold()] = faction.id
                self._tag_index[tag.casefold()] = faction.id
                self._player_index[founder_id] = faction.id

        log.info(f"Faction '{name}' [{tag}] created by {founder_name} ({founder_id})")
        self._publish([EngineEvent(EventType.FACTION_CREATED, (faction.id,), founder_id, {"name": name})])
        for listener in self._join_listeners:
            guarded_call("member_joined_listener", listener, founder_id, faction.id)
        return FactionResult.SUCCESS, faction

    def disband_faction(self, faction_id: str, actor_id: str) -> FactionResult:
        """Disband a faction. Only its leader may do this."""
        if not self._permissions.has_permission(actor_id, Permissions.DISBAND):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            if faction.get_role(actor_id) != FactionRole.LEADER:
                return FactionResult.NOT_PERMITTED
            self._disband_locked(faction, actor_id, "disbanded by leader")

        self._publish([EngineEvent(EventType.FACTION_DISBANDED, (faction_id,), actor_id, {"name": faction.name})])
        return FactionResult.SUCCESS

    def force_disband(self, faction_id: str, reason: str = "admin") -> FactionResult:
        """Disband without any permission checks."""
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            self._disband_locked(faction, None, reason)

        self._publish([EngineEvent(EventType.FACTION_DISBANDED, (faction_id,), None, {"name": faction.name, "reason": reason})])
        return FactionResult.SUCCESS

    def _disband_locked(self, faction: Faction, actor_id: Optional[str], reason: str) -> None:
        """Remove the faction from every index, then cascade. Caller holds the faction lock."""
        with self._index_guard:
            self._factions.pop(faction.id, None)
            if self._name_index.get(faction.name.casefold()) == faction.id:
                del self._name_index[faction.name.casefold()]
            if faction.tag and self._tag_index.get(faction.tag.casefold()) == faction.id:
                del self._tag_index[faction.tag.casefold()]
            for player_id in faction.members:
                if self._player_index.get(player_id) == faction.id:
                    del self._player_index[player_id]

        for listener in self._disband_listeners:
            guarded_call("disband_listener", listener, faction)

        log.info(f"Faction '{faction.name}' ({faction.id}) disbanded: {reason} (actor={actor_id})")

    # --- Membership --------------------------------------------------------

    def add_member(
        self,
        faction_id: str,
        player_id: str,
        display_name: str,
        role: FactionRole = FactionRole.MEMBER,
    ) -> FactionResult:
        """Add a player to a faction. Invite and join-request acceptance end up here."""
        if role == FactionRole.LEADER:
            raise invariant_violation(f"add_member cannot add {player_id} as a second leader")

        with self._locks.players.hold(player_id), self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            if player_id in self._player_index:
                return FactionResult.ALREADY_IN_FACTION
            if faction.member_count >= self._config.faction.max_members:
                return FactionResult.FACTION_FULL

            now = self._clock.now()
            member = Member(player_id, display_name, role, now, now)
            updated = self._logged(faction.with_member(member), LogType.MEMBER_JOIN, f"{display_name} joined", player_id)

            with self._index_guard:
                self._factions[faction_id] = updated
                self._player_index[player_id] = faction_id

        self._publish([EngineEvent(EventType.MEMBER_JOINED, (faction_id,), player_id, {"name": display_name})])
        for listener in self._join_listeners:
            guarded_call("member_joined_listener", listener, player_id, faction_id)
        return FactionResult.SUCCESS

    def remove_member(self, faction_id: str, target_id: str, actor_id: str, is_kick: bool) -> FactionResult:
        """
        Remove a member, either by leaving or by being kicked.

        A leave must be performed by the target itself. A kick needs an
        officer or leader who outranks the target. The leader can only
        leave when alone, which disbands the faction.
        """
        permission = Permissions.KICK if is_kick else Permissions.LEAVE
        if not self._permissions.has_permission(actor_id, permission):
            return FactionResult.NOT_PERMITTED

        disbanded: Optional[Faction] = None
        with self._locks.players.hold(target_id, actor_id), self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            target = faction.get_member(target_id)
            if target is None:
                return FactionResult.NOT_IN_FACTION

            if is_kick:
                actor = faction.get_member(actor_id)
                if actor is None or actor_id == target_id:
                    return FactionResult.NOT_PERMITTED
                if target.is_leader:
                    return FactionResult.CANNOT_REMOVE_LEADER
                if not actor.is_officer_or_higher or not actor.role.outranks(target.role):
                    return FactionResult.NOT_PERMITTED
            else:
                if actor_id != target_id:
                    return FactionResult.NOT_PERMITTED
                if target.is_leader and faction.member_count > 1:
                    return FactionResult.CANNOT_REMOVE_LEADER

            if target.is_leader:
                self._disband_locked(faction, actor_id, "last member left")
                disbanded = faction
            else:
                if is_kick:
                    updated = self._logged(faction.without_member(target_id), LogType.MEMBER_KICK, f"{target.name} was kicked", actor_id)
                else:
                    updated = self._logged(faction.without_member(target_id), LogType.MEMBER_LEAVE, f"{target.name} left", actor_id)
                with self._index_guard:
                    self._factions[faction_id] = updated
                    if self._player_index.get(target_id) == faction_id:
                        del self._player_index[target_id]

        if disbanded is not None:
            self._publish([
                EngineEvent(EventType.MEMBER_LEFT, (faction_id,), target_id),
                EngineEvent(EventType.FACTION_DISBANDED, (faction_id,), actor_id, {"name": disbanded.name}),
            ])
        else:
            event_type = EventType.MEMBER_KICKED if is_kick else EventType.MEMBER_LEFT
            self._publish([EngineEvent(event_type, (faction_id,), target_id, {"actor": actor_id})])
        return FactionResult.SUCCESS

    def promote_member(self, faction_id: str, target_id: str, actor_id: str) -> FactionResult:
        """Raise a member one rank. Promotion stops at officer."""
        if not self._permissions.has_permission(actor_id, Permissions.PROMOTE):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            actor = faction.get_member(actor_id)
            if actor is None:
                return FactionResult.NOT_PERMITTED
            target = faction.get_member(target_id)
            if target is None:
                return FactionResult.TARGET_NOT_MEMBER
            if target.role >= FactionRole.OFFICER:
                return FactionResult.ALREADY_MAX_ROLE

            new_role = FactionRole(target.role + 1)
            if not actor.role.outranks(new_role):
                return FactionResult.NOT_PERMITTED

            updated = self._logged(
                faction.with_member(target.with_role(new_role)),
                LogType.MEMBER_PROMOTE,
                f"{target.name} promoted to {new_role.display_name}",
                actor_id,
            )
            self._store(updated)

        self._publish([EngineEvent(EventType.ROLE_CHANGED, (faction_id,), target_id, {"role": new_role.name})])
        return FactionResult.SUCCESS

    def demote_member(self, faction_id: str, target_id: str, actor_id: str) -> FactionResult:
        """Lower a member one rank. The leader cannot be demoted this way."""
        if not self._permissions.has_permission(actor_id, Permissions.DEMOTE):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            actor = faction.get_member(actor_id)
            if actor is None:
                return FactionResult.NOT_PERMITTED
            target = faction.get_member(target_id)
            if target is None:
                return FactionResult.TARGET_NOT_MEMBER
            if target.role == FactionRole.MEMBER:
                return FactionResult.ALREADY_MIN_ROLE
            if target.is_leader or not actor.role.outranks(target.role):
                return FactionResult.NOT_PERMITTED

            new_role = FactionRole(target.role - 1)
            updated = self._logged(
                faction.with_member(target.with_role(new_role)),
                LogType.MEMBER_DEMOTE,
                f"{target.name} demoted to {new_role.display_name}",
                actor_id,
            )
            self._store(updated)

        self._publish([EngineEvent(EventType.ROLE_CHANGED, (faction_id,), target_id, {"role": new_role.name})])
        return FactionResult.SUCCESS

    def transfer_leadership(self, faction_id: str, new_leader_id: str, actor_id: str) -> FactionResult:
        """Hand leadership to another member. The old leader becomes an officer in the same write."""
        if not self._permissions.has_permission(actor_id, Permissions.TRANSFER):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            actor = faction.get_member(actor_id)
            if actor is None or not actor.is_leader:
                return FactionResult.NOT_PERMITTED
            target = faction.get_member(new_leader_id)
            if target is None:
                return FactionResult.TARGET_NOT_MEMBER
            if target.player_id == actor_id:
                return FactionResult.NOT_PERMITTED

            updated = self._logged(
                faction.with_members(actor.with_role(FactionRole.OFFICER), target.with_role(FactionRole.LEADER)),
                LogType.LEADER_TRANSFER,
                f"Leadership transferred from {actor.name} to {target.name}",
                actor_id,
            )
            self._store(updated)

        self._publish([EngineEvent(EventType.LEADER_TRANSFERRED, (faction_id,), new_leader_id, {"previous": actor_id})])
        return FactionResult.SUCCESS

    def update_last_online(self, player_id: str) -> None:
        faction_id = self._player_index.get(player_id)
        if faction_id is None:
            return
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            member = faction.get_member(player_id) if faction else None
            if member is not None:
                self._store(faction.with_member(member.touched(self._clock.now())))

    # --- Admin entry points ------------------------------------------------

    def admin_set_member_role(self, faction_id: str, player_id: str, role: FactionRole) -> FactionResult:
        """
        Set a member's role directly.

        Making someone LEADER demotes the current leader to OFFICER.
        Demoting the leader hands leadership to the successor, and is
        refused when there is nobody to take over.
        """
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            target = faction.get_member(player_id)
            if target is None:
                return FactionResult.TARGET_NOT_MEMBER
            if target.role == role:
                return FactionResult.SUCCESS

            changed = [target.with_role(role)]
            leader = faction.leader
            if role == FactionRole.LEADER and leader is not None:
                changed.append(leader.with_role(FactionRole.OFFICER))
            elif target.is_leader:
                successor = find_successor(faction)
                if successor is None:
                    return FactionResult.CANNOT_REMOVE_LEADER
                changed.append(successor.with_role(FactionRole.LEADER))

            updated = self._logged(
                faction.with_members(*changed),
                LogType.MEMBER_PROMOTE if role > target.role else LogType.MEMBER_DEMOTE,
                f"{target.name} set to {role.display_name} by an administrator",
                None,
            )
            self._store(updated)

        self._publish([EngineEvent(EventType.ROLE_CHANGED, (faction_id,), player_id, {"role": role.name, "admin": True})])
        return FactionResult.SUCCESS

    def admin_remove_member(self, faction_id: str, player_id: str) -> FactionResult:
        """Remove any member. A removed leader is replaced by the successor; a lone leader disbands the faction."""
        disbanded = False
        with self._locks.players.hold(player_id), self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            target = faction.get_member(player_id)
            if target is None:
                return FactionResult.TARGET_NOT_MEMBER

            if target.is_leader:
                successor = find_successor(faction)
                if successor is None:
                    self._disband_locked(faction, None, "last member removed by an administrator")
                    disbanded = True
                else:
                    faction = faction.with_member(successor.with_role(FactionRole.LEADER))

            if not disbanded:
                updated = self._logged(faction.without_member(player_id), LogType.MEMBER_KICK, f"{target.name} was removed by an administrator", None)
                with self._index_guard:
                    self._factions[faction_id] = updated
                    if self._player_index.get(player_id) == faction_id:
                        del self._player_index[player_id]

        events = [EngineEvent(EventType.MEMBER_KICKED, (faction_id,), player_id, {"admin": True})]
        if disbanded:
            events.append(EngineEvent(EventType.FACTION_DISBANDED, (faction_id,), None, {"name": faction.name}))
        self._publish(events)
        return FactionResult.SUCCESS

    # --- Settings ----------------------------------------------------------

    def _update_settings(self, faction_id: str, actor_id: Optional[str], permission: Optional[str],
                         mutate: Callable[[Faction], Tuple[FactionResult, Optional[Faction], str]]) -> FactionResult:
        if actor_id is not None and permission is not None and not self._permissions.has_permission(actor_id, permission):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            if actor_id is not None and not self._can_edit_settings(faction, actor_id):
                return FactionResult.NOT_PERMITTED
            result, updated, message = mutate(faction)
            if result is not FactionResult.SUCCESS:
                return result
            self._store(self._logged(updated, LogType.SETTINGS_CHANGE, message, actor_id))

        self._publish([EngineEvent(EventType.FACTION_UPDATED, (faction_id,), actor_id, {"change": message})])
        return FactionResult.SUCCESS

    def set_description(self, faction_id: str, description: str, actor_id: Optional[str]) -> FactionResult:
        return self._update_settings(
            faction_id, actor_id, Permissions.DESC,
            lambda f: (FactionResult.SUCCESS, f.with_settings(description=description), "Description changed"),
        )

    def set_color(self, faction_id: str, color: str, actor_id: Optional[str]) -> FactionResult:
        return self._update_settings(
            faction_id, actor_id, Permissions.COLOR,
            lambda f: (FactionResult.SUCCESS, f.with_settings(color=color), f"Color changed to {color}"),
        )

    def set_open(self, faction_id: str, is_open: bool, actor_id: Optional[str]) -> FactionResult:
        return self._update_settings(
            faction_id, actor_id, Permissions.OPEN,
            lambda f: (FactionResult.SUCCESS, f.with_settings(open=is_open), "Faction opened" if is_open else "Faction closed"),
        )

    def rename(self, faction_id: str, name: str, actor_id: Optional[str]) -> FactionResult:
        cfg = self._config.faction
        if not validate_faction_name(name, cfg.min_name_length, cfg.max_name_length):
            return FactionResult.INVALID_NAME

        def mutate(faction: Faction) -> Tuple[FactionResult, Optional[Faction], str]:
            with self._index_guard:
                owner = self._name_index.get(name.casefold())
                if owner is not None and owner != faction_id:
                    return FactionResult.NAME_TAKEN, None, ""
                self._name_index.pop(faction.name.casefold(), None)
                self._name_index[name.casefold()] = faction_id
            return FactionResult.SUCCESS, faction.with_settings(name=name), f"Renamed from {faction.name} to {name}"

        return self._update_settings(faction_id, actor_id, Permissions.RENAME, mutate)

    def set_tag(self, faction_id: str, tag: str, actor_id: Optional[str]) -> FactionResult:
        if not validate_tag(tag):
            return FactionResult.INVALID_NAME

        def mutate(faction: Faction) -> Tuple[FactionResult, Optional[Faction], str]:
            with self._index_guard:
                owner = self._tag_index.get(tag.casefold())
                if owner is not None and owner != faction_id:
                    return FactionResult.TAG_TAKEN, None, ""
                if faction.tag:
                    self._tag_index.pop(faction.tag.casefold(), None)
                self._tag_index[tag.casefold()] = faction_id
            return FactionResult.SUCCESS, faction.with_settings(tag=tag), f"Tag changed to {tag}"

        return self._update_settings(faction_id, actor_id, Permissions.TAG, mutate)

    def set_permission(self, faction_id: str, flag: str, value: bool, actor_id: Optional[str]) -> FactionResult:
        """Change one territory permission flag. Only the leader may change ``officers_can_edit``."""
        if flag not in TerritoryPermissions.flag_names():
            return FactionResult.INVALID_NAME

        def mutate(faction: Faction) -> Tuple[FactionResult, Optional[Faction], str]:
            if flag == "officers_can_edit" and actor_id is not None and faction.get_role(actor_id) != FactionRole.LEADER:
                return FactionResult.NOT_PERMITTED, None, ""
            permissions = faction.permissions.with_flag(flag, value)
            return FactionResult.SUCCESS, faction.with_settings(permissions=permissions), f"Permission {flag} set to {value}"

        return self._update_settings(faction_id, actor_id, None, mutate)

    # --- Home --------------------------------------------------------------

    def set_home(self, faction_id: str, home: FactionHome, actor_id: str) -> FactionResult:
        """Store the faction home. Territory checks are done by the caller."""
        if not self._permissions.has_permission(actor_id, Permissions.SETHOME):
            return FactionResult.NOT_PERMITTED

        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            member = faction.get_member(actor_id)
            if member is None or not member.is_officer_or_higher:
                return FactionResult.NOT_PERMITTED
            updated = self._logged(
                faction.with_home(home),
                LogType.HOME_SET,
                f"Home set at {home.world} ({home.x:.0f}, {home.y:.0f}, {home.z:.0f})",
                actor_id,
            )
            self._store(updated)

        self._publish([EngineEvent(EventType.FACTION_UPDATED, (faction_id,), actor_id, {"change": "home"})])
        return FactionResult.SUCCESS

    def clear_home(self, faction_id: str, actor_id: Optional[str] = None, reason: str = "Home removed") -> FactionResult:
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return FactionResult.NOT_FOUND
            if actor_id is not None:
                member = faction.get_member(actor_id)
                if member is None or not member.is_officer_or_higher:
                    return FactionResult.NOT_PERMITTED
            if faction.home is None:
                return FactionResult.SUCCESS
            self._store(self._logged(faction.with_home(None), LogType.HOME_SET, reason, actor_id))

        self._publish([EngineEvent(EventType.FACTION_UPDATED, (faction_id,), actor_id, {"change": "home"})])
        return FactionResult.SUCCESS

    def drop_home_in_chunk(self, faction_id: str, world: str, chunk_x: int, chunk_z: int) -> bool:
        """Remove the home if it lies in the given chunk. Publishes nothing; the caller reports it."""
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None or faction.home is None or not faction.home.is_in_chunk(world, chunk_x, chunk_z):
                return False
            self._store(self._logged(faction.with_home(None), LogType.HOME_SET, "Home lost with its territory", None))
        return True

    # --- Audit log ---------------------------------------------------------

    def append_log(self, faction_id: str, log_type: LogType, message: str, actor_id: Optional[str]) -> bool:
        """Record a mutation made by another component on the faction's log."""
        with self._locks.factions.hold(faction_id):
            faction = self._factions.get(faction_id)
            if faction is None:
                return False
            self._store(self._logged(faction, log_type, message, actor_id))
        return True

    # --- Persistence -------------------------------------------------------

    def load(self, factions: List[Faction]) -> bool:
        """
        Replace registry contents with loaded factions and rebuild indices.

        An empty load never wipes a populated registry. Factions with a
        broken leadership are repaired and reported.
        """
        if not factions and self._factions:
            log.error(f"Refusing to replace {len(self._factions)} factions with an empty load")
            return False

        loaded: Dict[str, Faction] = {}
        for faction in factions:
            if not faction.members:
                log.warning(f"Skipping faction '{faction.name}' ({faction.id}) with no members")
                continue
            loaded[faction.id] = self._repair_leadership(faction)

        with self._index_guard:
            self._factions = loaded
            self._name_index = {f.name.casefold(): f.id for f in loaded.values()}
            self._tag_index = {f.tag.casefold(): f.id for f in loaded.values() if f.tag}
            self._player_index = {pid: f.id for f in loaded.values() for pid in f.members}

        log.info(f"Loaded {len(loaded)} factions")
        return True

    def _repair_leadership(self, faction: Faction) -> Faction:
        leaders = [m for m in faction.members.values() if m.is_leader]
        if len(leaders) == 1:
            return faction
        if not leaders:
            successor = find_successor(faction)
            log.warning(f"Faction '{faction.name}' loaded without a leader, promoting {successor.name}")
            return faction.with_member(successor.with_role(FactionRole.LEADER))
        keep = min(leaders, key=lambda m: m.joined_at)
        log.warning(f"Faction '{faction.name}' loaded with {len(leaders)} leaders, keeping {keep.name}")
        return faction.with_members(*[m.with_role(FactionRole.OFFICER) for m in leaders if m is not keep])

    def check_invariants(self) -> None:
        """Raise InvariantViolation if any faction lacks exactly one leader or the player index disagrees."""
        for faction in self.all_factions():
            leaders = [m for m in faction.members.values() if m.is_leader]
            if len(leaders) != 1:
                raise invariant_violation(f"faction {faction.id} has {len(leaders)} leaders")
            for player_id in faction.members:
                if self._player_index.get(player_id) != faction.id:
                    raise invariant_violation(f"player {player_id} not indexed to faction {faction.id}")
