"""
Invites and join requests.

Both are short-lived proposals keyed by (faction, player). Expiry is
checked lazily on every read, so an expired entry is never returned or
accepted even if the periodic sweep has not run yet.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Generic, List, Optional, Tuple, TypeVar, TYPE_CHECKING

from engine.collaborators import Permissions
from engine.error_handler import get_logger
from engine.events import EngineEvent, EventType
from world.factions.registry import FactionResult

if TYPE_CHECKING:
    from engine.collaborators import PermissionService
    from engine.config import EngineConfig
    from engine.events import EventBus
    from world.factions.registry import FactionRegistry
    from world.time.time_system import TimeSystem

log = get_logger("proposals")


class ProposalResult(Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    NOT_PERMITTED = "not_permitted"
    NOT_IN_FACTION = "not_in_faction"
    ALREADY_IN_FACTION = "already_in_faction"
    ALREADY_REQUESTED = "already_requested"
    FACTION_FULL = "faction_full"
    FACTION_NOT_FOUND = "faction_not_found"
    FACTION_CLOSED = "faction_closed"

    @property
    def success(self) -> bool:
        return self is ProposalResult.SUCCESS


_JOIN_RESULTS = {
    FactionResult.SUCCESS: ProposalResult.SUCCESS,
    FactionResult.ALREADY_IN_FACTION: ProposalResult.ALREADY_IN_FACTION,
    FactionResult.FACTION_FULL: ProposalResult.FACTION_FULL,
    FactionResult.NOT_FOUND: ProposalResult.FACTION_NOT_FOUND,
}


@dataclass(frozen=True)
class PendingInvite:
    faction_id: str
    player_id: str
    inviter_id: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def remaining_seconds(self, now: float) -> float:
        return max(0.0, self.expires_at - now)


@dataclass(frozen=True)
class JoinRequest:
    faction_id: str
    player_id: str
    player_name: str
    message: Optional[str]
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


E = TypeVar("E", PendingInvite, JoinRequest)


class _ProposalDirectory(Generic[E]):
    """Shared storage with lazy expiry for (faction, player) keyed proposals."""

    def __init__(self, clock: "TimeSystem") -> None:
        self._clock = clock
        self._entries: Dict[Tuple[str, str], E] = {}
        self._guard = threading.Lock()

    def _get(self, faction_id: str, player_id: str) -> Optional[E]:
        key = (faction_id, player_id)
        with self._guard:
            entry = self._entries.get(key)
            if entry is not None and entry.is_expired(self._clock.now()):
                del self._entries[key]
                return None
            return entry

    def _put(self, entry: E) -> None:
        with self._guard:
            self._entries[(entry.faction_id, entry.player_id)] = entry

    def _remove(self, faction_id: str, player_id: str) -> bool:
        with self._guard:
            return self._entries.pop((faction_id, player_id), None) is not None

    def _select(self, faction_id: Optional[str] = None, player_id: Optional[str] = None) -> List[E]:
        now = self._clock.now()
        with self._guard:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            entries = [
                e for e in self._entries.values()
                if (faction_id is None or e.faction_id == faction_id) and (player_id is None or e.player_id == player_id)
            ]
        return sorted(entries, key=lambda e: e.created_at)

    def _clear(self, faction_id: Optional[str] = None, player_id: Optional[str] = None) -> int:
        with self._guard:
            keys = [
                k for k in self._entries
                if (faction_id is None or k[0] == faction_id) and (player_id is None or k[1] == player_id)
            ]
            for key in keys:
                del self._entries[key]
        return len(keys)

    def cleanup_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock.now()
        with self._guard:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            log.debug(f"{type(self).__name__}: removed {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class InviteDirectory(_ProposalDirectory[PendingInvite]):
    """Outstanding invites from factions to players."""

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        registry: "FactionRegistry",
        permissions: "PermissionService",
        events: "EventBus",
    ):
        super().__init__(clock)
        self._config = config
        self._registry = registry
        self._permissions = permissions
        self._events = events

    def create_invite(self, faction_id: str, player_id: str, inviter_id: str) -> ProposalResult:
        """Invite a player. Re-inviting refreshes the expiry."""
        if not self._permissions.has_permission(inviter_id, Permissions.INVITE):
            return ProposalResult.NOT_PERMITTED
        faction = self._registry.get_faction(faction_id)
        if faction is None:
            return ProposalResult.FACTION_NOT_FOUND
        inviter = faction.get_member(inviter_id)
        if inviter is None or not inviter.is_officer_or_higher:
            return ProposalResult.NOT_PERMITTED
        if self._registry.is_in_faction(player_id):
            return ProposalResult.ALREADY_IN_FACTION
        if faction.member_count >= self._config.faction.max_members:
            return ProposalResult.FACTION_FULL

        now = self._clock.now()
        self._put(PendingInvite(faction_id, player_id, inviter_id, now, now + self._config.invites.invite_ttl_seconds))
        self._events.publish(EngineEvent(EventType.INVITE_CREATED, (faction_id,), player_id, {"inviter": inviter_id}))
        return ProposalResult.SUCCESS

    def get_invite(self, faction_id: str, player_id: str) -> Optional[PendingInvite]:
        return self._get(faction_id, player_id)

    def has_invite(self, faction_id: str, player_id: str) -> bool:
        return self._get(faction_id, player_id) is not None

    def get_player_invites(self, player_id: str) -> List[PendingInvite]:
        return self._select(player_id=player_id)

    def get_faction_invites(self, faction_id: str) -> List[PendingInvite]:
        return self._select(faction_id=faction_id)

    def accept_invite(self, player_id: str, faction_id: str, display_name: str) -> ProposalResult:
        """Join the inviting faction. The player's other invites and requests are cleared on success."""
        if not self._permissions.has_permission(player_id, Permissions.JOIN):
            return ProposalResult.NOT_PERMITTED
        if self._get(faction_id, player_id) is None:
            return ProposalResult.NOT_FOUND

        result = _JOIN_RESULTS.get(self._registry.add_member(faction_id, player_id, display_name), ProposalResult.NOT_PERMITTED)
        if result in (ProposalResult.SUCCESS, ProposalResult.FACTION_NOT_FOUND, ProposalResult.ALREADY_IN_FACTION):
            self._remove(faction_id, player_id)
        return result

    def decline_invite(self, player_id: str, faction_id: str) -> ProposalResult:
        if self._get(faction_id, player_id) is None:
            return ProposalResult.NOT_FOUND
        self._remove(faction_id, player_id)
        return ProposalResult.SUCCESS

    def revoke_invite(self, actor_id: str, player_id: str) -> ProposalResult:
        """Withdraw an invite sent by the actor's faction."""
        faction = self._registry.get_player_faction(actor_id)
        if faction is None:
            return ProposalResult.NOT_IN_FACTION
        actor = faction.get_member(actor_id)
        if actor is None:
            return ProposalResult.NOT_IN_FACTION
        if not actor.is_officer_or_higher:
            return ProposalResult.NOT_PERMITTED
        if self._get(faction.id, player_id) is None:
            return ProposalResult.NOT_FOUND
        self._remove(faction.id, player_id)
        return ProposalResult.SUCCESS

    def clear_player_invites(self, player_id: str) -> int:
        return self._clear(player_id=player_id)

    def clear_faction_invites(self, faction_id: str) -> int:
        return self._clear(faction_id=faction_id)


class JoinRequestDirectory(_ProposalDirectory[JoinRequest]):
    """Outstanding requests from players to join factions."""

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        registry: "FactionRegistry",
        permissions: "PermissionService",
        events: "EventBus",
    ):
        super().__init__(clock)
        self._config = config
        self._registry = registry
        self._permissions = permissions
        self._events = events

    def create_request(self, faction_id: str, player_id: str, player_name: str, message: Optional[str] = None) -> ProposalResult:
        if not self._permissions.has_permission(player_id, Permissions.JOIN):
            return ProposalResult.NOT_PERMITTED
        if not self._registry.exists(faction_id):
            return ProposalResult.FACTION_NOT_FOUND
        if self._registry.is_in_faction(player_id):
            return ProposalResult.ALREADY_IN_FACTION
        if self._get(faction_id, player_id) is not None:
            return ProposalResult.ALREADY_REQUESTED

        now = self._clock.now()
        ttl = self._config.invites.join_request_ttl_seconds
        self._put(JoinRequest(faction_id, player_id, player_name, message, now, now + ttl))
        self._events.publish(EngineEvent(EventType.JOIN_REQUESTED, (faction_id,), player_id, {"name": player_name}))
        return ProposalResult.SUCCESS

    def join_open_faction(self, player_id: str, faction_id: str, display_name: str) -> ProposalResult:
        """Join a faction that accepts anyone without a request."""
        if not self._permissions.has_permission(player_id, Permissions.JOIN):
            return ProposalResult.NOT_PERMITTED
        faction = self._registry.get_faction(faction_id)
        if faction is None:
            return ProposalResult.FACTION_NOT_FOUND
        if not faction.open:
            return ProposalResult.FACTION_CLOSED
        return _JOIN_RESULTS.get(self._registry.add_member(faction_id, player_id, display_name), ProposalResult.NOT_PERMITTED)

    def get_request(self, faction_id: str, player_id: str) -> Optional[JoinRequest]:
        return self._get(faction_id, player_id)

    def has_request(self, faction_id: str, player_id: str) -> bool:
        return self._get(faction_id, player_id) is not None

    def get_faction_requests(self, faction_id: str) -> List[JoinRequest]:
        """Live requests for a faction, oldest first."""
        return self._select(faction_id=faction_id)

    def get_player_requests(self, player_id: str) -> List[JoinRequest]:
        return self._select(player_id=player_id)

    def _officer_of(self, actor_id: str, faction_id: str) -> bool:
        faction = self._registry.get_faction(faction_id)
        member = faction.get_member(actor_id) if faction else None
        return member is not None and member.is_officer_or_higher

    def accept_request(self, actor_id: str, faction_id: str, player_id: str) -> ProposalResult:
        if not self._officer_of(actor_id, faction_id):
            return ProposalResult.NOT_PERMITTED
        request = self._get(faction_id, player_id)
        if request is None:
            return ProposalResult.NOT_FOUND

        result = _JOIN_RESULTS.get(self._registry.add_member(faction_id, player_id, request.player_name), ProposalResult.NOT_PERMITTED)
        if result in (ProposalResult.SUCCESS, ProposalResult.FACTION_NOT_FOUND, ProposalResult.ALREADY_IN_FACTION):
            self._remove(faction_id, player_id)
        return result

    def decline_request(self, actor_id: str, faction_id: str, player_id: str) -> ProposalResult:
        if not self._officer_of(actor_id, faction_id):
            return ProposalResult.NOT_PERMITTED
        if self._get(faction_id, player_id) is None:
            return ProposalResult.NOT_FOUND
        self._remove(faction_id, player_id)
        return ProposalResult.SUCCESS

    def clear_player_requests(self, player_id: str) -> int:
        return self._clear(player_id=player_id)

    def clear_faction_requests(self, faction_id: str) -> int:
        return self._clear(faction_id=faction_id)
