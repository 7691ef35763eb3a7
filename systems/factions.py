"""
Faction data model.

Defines player factions, their members, roles, homes, territory flags and
audit log entries. Every type here is an immutable snapshot: writers build
a replacement with the ``with_*`` helpers and publish it, readers never see
a half-applied change.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Callable, Dict, List, Optional, Tuple

from settings import CHUNK_SHIFT, MAX_LOGS, MAX_TAG_LENGTH


class FactionRole(IntEnum):
    """Member rank inside a faction. Higher value outranks lower."""
    MEMBER = 1
    OFFICER = 2
    LEADER = 3

    @property
    def display_name(self) -> str:
        return self.name.capitalize()

    def outranks(self, other: "FactionRole") -> bool:
        return self > other


class RelationType(Enum):
    """Diplomatic state between two factions."""
    ALLY = "ally"
    ENEMY = "enemy"
    NEUTRAL = "neutral"


class LogType(Enum):
    """Kinds of entries written to a faction's audit log."""
    MEMBER_JOIN = "member_join"
    MEMBER_LEAVE = "member_leave"
    MEMBER_KICK = "member_kick"
    MEMBER_PROMOTE = "member_promote"
    MEMBER_DEMOTE = "member_demote"
    LEADER_TRANSFER = "leader_transfer"
    CLAIM = "claim"
    UNCLAIM = "unclaim"
    OVERCLAIM = "overclaim"
    HOME_SET = "home_set"
    RELATION_ALLY = "relation_ally"
    RELATION_ENEMY = "relation_enemy"
    RELATION_NEUTRAL = "relation_neutral"
    SETTINGS_CHANGE = "settings_change"


RELATION_LOG_TYPES: Dict[RelationType, LogType] = {
    RelationType.ALLY: LogType.RELATION_ALLY,
    RelationType.ENEMY: LogType.RELATION_ENEMY,
    RelationType.NEUTRAL: LogType.RELATION_NEUTRAL,
}


@dataclass(frozen=True)
class FactionLogEntry:
    """One audit log line. ``actor_id`` is None for system actions."""
    type: LogType
    message: str
    actor_id: Optional[str]
    timestamp: float


@dataclass(frozen=True)
class Member:
    """A player's membership record inside one faction."""
    player_id: str
    name: str
    role: FactionRole
    joined_at: float
    last_online: float

    @property
    def is_leader(self) -> bool:
        return self.role == FactionRole.LEADER

    @property
    def is_officer_or_higher(self) -> bool:
        return self.role >= FactionRole.OFFICER

    def with_role(self, role: FactionRole) -> "Member":
        return replace(self, role=role)

    def touched(self, now: float) -> "Member":
        return replace(self, last_online=now)


@dataclass(frozen=True)
class FactionHome:
    """Teleport anchor for a faction. Must sit inside the faction's territory."""
    world: str
    x: float
    y: float
    z: float
    yaw: float = 0.0
    pitch: float = 0.0
    set_at: float = 0.0
    set_by: Optional[str] = None

    @property
    def chunk_x(self) -> int:
        return math.floor(self.x) >> CHUNK_SHIFT

    @property
    def chunk_z(self) -> int:
        return math.floor(self.z) >> CHUNK_SHIFT

    def is_in_chunk(self, world: str, chunk_x: int, chunk_z: int) -> bool:
        return self.world == world and self.chunk_x == chunk_x and self.chunk_z == chunk_z


@dataclass(frozen=True)
class TerritoryPermissions:
    """
    Per-faction overrides for what different groups may do in its territory.

    The protection layer reads these; the engine only stores and edits them.
    """
    outsider_break: bool = False
    outsider_place: bool = False
    outsider_interact: bool = False
    ally_break: bool = False
    ally_place: bool = False
    ally_interact: bool = True
    member_break: bool = True
    member_place: bool = True
    member_interact: bool = True
    pvp_enabled: bool = True
    officers_can_edit: bool = False

    @classmethod
    def flag_names(cls) -> Tuple[str, ...]:
        return tuple(cls.__dataclass_fields__)

    def get(self, flag: str) -> bool:
        if flag not in self.__dataclass_fields__:
            raise KeyError(flag)
        return getattr(self, flag)

    def with_flag(self, flag: str, value: bool) -> "TerritoryPermissions":
        if flag not in self.__dataclass_fields__:
            raise KeyError(flag)
        return replace(self, **{flag: bool(value)})


def new_faction_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True, eq=False)
class Faction:
    """
    Snapshot of a player faction.

    Claims and relations are not stored here; they live in the claim grid
    and relation graph and are read through the engine.
    """
    id: str
    name: str
    tag: Optional[str]
    created_at: float
    members: Dict[str, Member] = field(default_factory=dict)
    description: str = ""
    color: str = "f"
    open: bool = False
    home: Optional[FactionHome] = None
    permissions: TerritoryPermissions = field(default_factory=TerritoryPermissions)
    logs: Tuple[FactionLogEntry, ...] = ()

    # --- Queries -----------------------------------------------------------

    @property
    def leader(self) -> Optional[Member]:
        for member in self.members.values():
            if member.is_leader:
                return member
        return None

    @property
    def leader_id(self) -> Optional[str]:
        leader = self.leader
        return leader.player_id if leader else None

    @property
    def member_count(self) -> int:
        return len(self.members)

    def get_member(self, player_id: str) -> Optional[Member]:
        return self.members.get(player_id)

    def is_member(self, player_id: str) -> bool:
        return player_id in self.members

    def get_role(self, player_id: str) -> Optional[FactionRole]:
        member = self.members.get(player_id)
        return member.role if member else None

    def members_sorted(self) -> List[Member]:
        """Members ordered by role (highest first), then by join time."""
        return sorted(self.members.values(), key=lambda m: (-m.role, m.joined_at))

    def recent_logs(self, limit: int = 10) -> List[FactionLogEntry]:
        """Newest entries first."""
        return list(reversed(self.logs[-limit:])) if limit > 0 else []

    # --- Copy-on-write helpers ---------------------------------------------

    def with_member(self, member: Member) -> "Faction":
        members = dict(self.members)
        members[member.player_id] = member
        return replace(self, members=members)

    def without_member(self, player_id: str) -> "Faction":
        members = dict(self.members)
        members.pop(player_id, None)
        return replace(self, members=members)

    def with_members(self, *updated: Member) -> "Faction":
        members = dict(self.members)
        for member in updated:
            members[member.player_id] = member
        return replace(self, members=members)

    def with_log(self, entry: FactionLogEntry, max_logs: int = MAX_LOGS) -> "Faction":
        logs = self.logs + (entry,)
        if max_logs > 0 and len(logs) > max_logs:
            logs = logs[len(logs) - max_logs:]
        return replace(self, logs=logs)

    def with_home(self, home: Optional[FactionHome]) -> "Faction":
        return replace(self, home=home)

    def with_settings(self, **changes) -> "Faction":
        return replace(self, **changes)


def validate_faction_name(name: str, min_length: int, max_length: int) -> bool:
    """Check length bounds and allowed characters (letters, digits, space, _ and -)."""
    if name is None:
        return False
    stripped = name.strip()
    if stripped != name or not (min_length <= len(name) <= max_length):
        return False
    return all(ch.isalnum() or ch in " _-" for ch in name)


def validate_tag(tag: str) -> bool:
    return 1 <= len(tag) <= MAX_TAG_LENGTH and tag.isalnum()


def generate_tag(name: str, is_taken: Callable[[str], bool]) -> str:
    """
    Derive a unique tag from a faction name.

    Takes the first three alphanumeric characters upper-cased and appends
    a numeric suffix on collision, never exceeding the tag length limit.
    """
    base = "".join(ch.upper() for ch in name if ch.isalnum())[:3] or "F"
    if not is_taken(base):
        return base

    for suffix in range(2, 100):
        digits = str(suffix)
        candidate = base[:MAX_TAG_LENGTH - len(digits)] + digits
        if not is_taken(candidate):
            return candidate

    return base[:2] + uuid.uuid4().hex[:3].upper()
