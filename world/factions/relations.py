"""
Relation graph.

Diplomatic relations between factions and the ally-request handshake.
A relation is stored once per unordered faction pair, so it always reads
the same from both sides. Pairs with no stored relation are neutral.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, TYPE_CHECKING

from engine.collaborators import Permissions
from engine.error_handler import get_logger
from engine.events import EngineEvent, EventType
from engine.locks import pair_key
from systems.factions import RELATION_LOG_TYPES, FactionRole, RelationType

if TYPE_CHECKING:
    from engine.collaborators import PermissionService
    from engine.config import EngineConfig
    from engine.events import EventBus
    from engine.locks import EngineLocks
    from world.factions.registry import FactionRegistry
    from world.time.time_system import TimeSystem

log = get_logger("relations")


class RelationResult(Enum):
    SUCCESS = "success"
    REQUEST_SENT = "request_sent"
    REQUEST_ACCEPTED = "request_accepted"
    ALREADY_ALLIED = "already_allied"
    ALREADY_ENEMY = "already_enemy"
    ALREADY_NEUTRAL = "already_neutral"
    NOT_PERMITTED = "not_permitted"
    NOT_FOUND = "not_found"
    NOT_IN_FACTION = "not_in_faction"
    FACTION_NOT_FOUND = "faction_not_found"
    CANNOT_RELATE_SELF = "cannot_relate_self"
    ALLY_LIMIT_REACHED = "ally_limit_reached"
    ENEMY_LIMIT_REACHED = "enemy_limit_reached"

    @property
    def success(self) -> bool:
        return self in (RelationResult.SUCCESS, RelationResult.REQUEST_SENT, RelationResult.REQUEST_ACCEPTED)


@dataclass(frozen=True)
class Relation:
    type: RelationType
    since: float


@dataclass(frozen=True)
class AllyRequest:
    """Pending alliance proposal from ``requester_id`` to ``target_id``."""
    requester_id: str
    target_id: str
    actor_id: Optional[str]
    created_at: float


class RelationGraph:
    """
    Pairwise relations between factions.

    Writes hold both faction locks (sorted) and then the pair lock.
    Alliances need consent from both sides: a request from A to B becomes
    an alliance when B accepts it or sends its own request back.
    """

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        locks: "EngineLocks",
        permissions: "PermissionService",
        registry: "FactionRegistry",
        events: "EventBus",
    ):
        self._config = config
        self._clock = clock
        self._locks = locks
        self._permissions = permissions
        self._registry = registry
        self._events = events

        self._relations: Dict[Tuple[str, str], Relation] = {}
        self._requests: Dict[Tuple[str, str], AllyRequest] = {}
        self._guard = threading.Lock()

    # --- Queries -----------------------------------------------------------

    def get_relation(self, faction_a: str, faction_b: str) -> RelationType:
        if faction_a == faction_b:
            return RelationType.NEUTRAL
        relation = self._relations.get(pair_key(faction_a, faction_b))
        return relation.type if relation else RelationType.NEUTRAL

    def get_relation_since(self, faction_a: str, faction_b: str) -> Optional[float]:
        relation = self._relations.get(pair_key(faction_a, faction_b))
        return relation.since if relation else None

    def _related(self, faction_id: str, relation_type: RelationType) -> List[str]:
        with self._guard:
            items = list(self._relations.items())
        result = []
        for (a, b), relation in items:
            if relation.type == relation_type and faction_id in (a, b):
                result.append(b if a == faction_id else a)
        return result

    def get_allies(self, faction_id: str) -> List[str]:
        return self._related(faction_id, RelationType.ALLY)

    def get_enemies(self, faction_id: str) -> List[str]:
        return self._related(faction_id, RelationType.ENEMY)

    def are_allies(self, faction_a: str, faction_b: str) -> bool:
        return faction_a != faction_b and self.get_relation(faction_a, faction_b) == RelationType.ALLY

    def are_enemies(self, faction_a: str, faction_b: str) -> bool:
        return self.get_relation(faction_a, faction_b) == RelationType.ENEMY

    def has_pending_request(self, requester_id: str, target_id: str) -> bool:
        return (requester_id, target_id) in self._requests

    def get_pending_requests(self, faction_id: str) -> List[AllyRequest]:
        """Inbound ally requests, oldest first."""
        with self._guard:
            requests = [r for r in self._requests.values() if r.target_id == faction_id]
        return sorted(requests, key=lambda r: r.created_at)

    def get_outbound_requests(self, faction_id: str) -> List[AllyRequest]:
        with self._guard:
            requests = [r for r in self._requests.values() if r.requester_id == faction_id]
        return sorted(requests, key=lambda r: r.created_at)

    def get_player_relation(self, player_a: str, player_b: str) -> Optional[RelationType]:
        """Relation between two players' factions. None if either is unaffiliated or both share a faction."""
        faction_a = self._registry.get_player_faction_id(player_a)
        faction_b = self._registry.get_player_faction_id(player_b)
        if faction_a is None or faction_b is None or faction_a == faction_b:
            return None
        return self.get_relation(faction_a, faction_b)

    # --- Internal helpers --------------------------------------------------

    def _set_locked(self, faction_a: str, faction_b: str, relation_type: RelationType, actor_id: Optional[str]) -> None:
        """Write the pair's relation, drop pending requests and log on both sides. Caller holds both faction locks."""
        key = pair_key(faction_a, faction_b)
        with self._locks.relation_pair(faction_a, faction_b):
            with self._guard:
                if relation_type == RelationType.NEUTRAL:
                    self._relations.pop(key, None)
                else:
                    self._relations[key] = Relation(relation_type, self._clock.now())
                self._requests.pop((faction_a, faction_b), None)
                self._requests.pop((faction_b, faction_a), None)

        name_a = self._faction_name(faction_a)
        name_b = self._faction_name(faction_b)
        log_type = RELATION_LOG_TYPES[relation_type]
        label = relation_type.value
        self._registry.append_log(faction_a, log_type, f"Now {label} with {name_b}", actor_id)
        self._registry.append_log(faction_b, log_type, f"Now {label} with {name_a}", actor_id)
        log.info(f"Relation {name_a} <-> {name_b} set to {label}")

    def _faction_name(self, faction_id: str) -> str:
        faction = self._registry.get_faction(faction_id)
        return faction.name if faction else faction_id

    def _limit_reached(self, faction_id: str, relation_type: RelationType) -> bool:
        limit = self._config.relations.max_allies if relation_type == RelationType.ALLY else self._config.relations.max_enemies
        if limit < 0:
            return False
        return len(self._related(faction_id, relation_type)) >= limit

    def _resolve_actor(self, actor_id: str, target_id: str, permission: str) -> Tuple[Optional[RelationResult], Optional[str]]:
        """Common pre-lock checks. Returns (error, actor_faction_id)."""
        if not self._permissions.has_permission(actor_id, permission):
            return RelationResult.NOT_PERMITTED, None
        actor_faction = self._registry.get_player_faction_id(actor_id)
        if actor_faction is None:
            return RelationResult.NOT_IN_FACTION, None
        if actor_faction == target_id:
            return RelationResult.CANNOT_RELATE_SELF, None
        if not self._registry.exists(target_id):
            return RelationResult.FACTION_NOT_FOUND, None
        return None, actor_faction

    def _check_locked(self, actor_id: str, actor_faction: str, target_id: str) -> Optional[RelationResult]:
        """Re-validate under the faction locks: both still exist and the actor is still an officer of its faction."""
        faction = self._registry.get_faction(actor_faction)
        if faction is None or not faction.is_member(actor_id):
            return RelationResult.NOT_IN_FACTION
        if not self._registry.exists(target_id):
            return RelationResult.FACTION_NOT_FOUND
        if faction.get_role(actor_id) < FactionRole.OFFICER:
            return RelationResult.NOT_PERMITTED
        return None

    # --- Handshake ---------------------------------------------------------

    def request_ally(self, actor_id: str, target_id: str) -> RelationResult:
        """
        Ask ``target_id`` for an alliance on behalf of the actor's faction.

        If the target already asked us, the alliance forms immediately.
        """
        error, actor_faction = self._resolve_actor(actor_id, target_id, Permissions.ALLY)
        if error is not None:
            return error

        with self._locks.factions.hold(actor_faction, target_id):
            error = self._check_locked(actor_id, actor_faction, target_id)
            if error is not None:
                return error

            current = self.get_relation(actor_faction, target_id)
            if current == RelationType.ALLY:
                return RelationResult.ALREADY_ALLIED
            if current == RelationType.ENEMY:
                return RelationResult.ALREADY_ENEMY
            if self._limit_reached(actor_faction, RelationType.ALLY):
                return RelationResult.ALLY_LIMIT_REACHED

            if self.has_pending_request(target_id, actor_faction):
                if self._limit_reached(target_id, RelationType.ALLY):
                    return RelationResult.ALLY_LIMIT_REACHED
                self._set_locked(actor_faction, target_id, RelationType.ALLY, actor_id)
                result = RelationResult.REQUEST_ACCEPTED
            else:
                with self._locks.relation_pair(actor_faction, target_id):
                    with self._guard:
                        if (actor_faction, target_id) not in self._requests:
                            self._requests[(actor_faction, target_id)] = AllyRequest(
                                actor_faction, target_id, actor_id, self._clock.now()
                            )
                result = RelationResult.REQUEST_SENT

        if result is RelationResult.REQUEST_ACCEPTED:
            self._events.publish(EngineEvent(EventType.RELATION_CHANGED, (actor_faction, target_id), actor_id, {"relation": "ally"}))
        else:
            self._events.publish(EngineEvent(EventType.ALLY_REQUESTED, (actor_faction, target_id), actor_id))
        return result

    def accept_ally(self, actor_id: str, requester_id: str) -> RelationResult:
        """Accept an inbound ally request from ``requester_id``."""
        error, actor_faction = self._resolve_actor(actor_id, requester_id, Permissions.ALLY)
        if error is not None:
            return RelationResult.NOT_FOUND if error is RelationResult.FACTION_NOT_FOUND else error

        with self._locks.factions.hold(actor_faction, requester_id):
            error = self._check_locked(actor_id, actor_faction, requester_id)
            if error is not None:
                return RelationResult.NOT_FOUND if error is RelationResult.FACTION_NOT_FOUND else error
            if not self.has_pending_request(requester_id, actor_faction):
                return RelationResult.NOT_FOUND
            if self._limit_reached(actor_faction, RelationType.ALLY) or self._limit_reached(requester_id, RelationType.ALLY):
                return RelationResult.ALLY_LIMIT_REACHED
            self._set_locked(actor_faction, requester_id, RelationType.ALLY, actor_id)

        self._events.publish(EngineEvent(EventType.RELATION_CHANGED, (actor_faction, requester_id), actor_id, {"relation": "ally"}))
        return RelationResult.REQUEST_ACCEPTED

    def decline_ally_request(self, actor_id: str, requester_id: str) -> RelationResult:
        """Reject an inbound ally request. The relation stays as it was."""
        return self._drop_request(actor_id, requester_id, inbound=True)

    def cancel_request(self, actor_id: str, target_id: str) -> RelationResult:
        """Withdraw our own outbound ally request."""
        return self._drop_request(actor_id, target_id, inbound=False)

    def _drop_request(self, actor_id: str, other_id: str, inbound: bool) -> RelationResult:
        if not self._permissions.has_permission(actor_id, Permissions.ALLY):
            return RelationResult.NOT_PERMITTED
        actor_faction = self._registry.get_player_faction_id(actor_id)
        if actor_faction is None:
            return RelationResult.NOT_IN_FACTION

        key = (other_id, actor_faction) if inbound else (actor_faction, other_id)
        with self._locks.factions.hold(actor_faction, other_id):
            faction = self._registry.get_faction(actor_faction)
            if faction is None or not faction.is_member(actor_id):
                return RelationResult.NOT_IN_FACTION
            if faction.get_role(actor_id) < FactionRole.OFFICER:
                return RelationResult.NOT_PERMITTED
            with self._locks.relation_pair(actor_faction, other_id):
                with self._guard:
                    if self._requests.pop(key, None) is None:
                        return RelationResult.NOT_FOUND
        return RelationResult.SUCCESS

    # --- Direct relation changes -------------------------------------------

    def set_enemy(self, actor_id: str, target_id: str) -> RelationResult:
        """Declare ``target_id`` an enemy. Takes effect for both sides at once."""
        error, actor_faction = self._resolve_actor(actor_id, target_id, Permissions.ENEMY)
        if error is not None:
            return error

        with self._locks.factions.hold(actor_faction, target_id):
            error = self._check_locked(actor_id, actor_faction, target_id)
            if error is not None:
                return error
            if self.get_relation(actor_faction, target_id) == RelationType.ENEMY:
                return RelationResult.ALREADY_ENEMY
            if self._limit_reached(actor_faction, RelationType.ENEMY):
                return RelationResult.ENEMY_LIMIT_REACHED
            self._set_locked(actor_faction, target_id, RelationType.ENEMY, actor_id)

        self._events.publish(EngineEvent(EventType.RELATION_CHANGED, (actor_faction, target_id), actor_id, {"relation": "enemy"}))
        return RelationResult.SUCCESS

    def set_neutral(self, actor_id: str, target_id: str) -> RelationResult:
        """Return to neutral with ``target_id``, clearing pending requests either way."""
        error, actor_faction = self._resolve_actor(actor_id, target_id, Permissions.NEUTRAL)
        if error is not None:
            return error

        with self._locks.factions.hold(actor_faction, target_id):
            error = self._check_locked(actor_id, actor_faction, target_id)
            if error is not None:
                return error
            pending = self.has_pending_request(actor_faction, target_id) or self.has_pending_request(target_id, actor_faction)
            if self.get_relation(actor_faction, target_id) == RelationType.NEUTRAL and not pending:
                return RelationResult.ALREADY_NEUTRAL
            self._set_locked(actor_faction, target_id, RelationType.NEUTRAL, actor_id)

        self._events.publish(EngineEvent(EventType.RELATION_CHANGED, (actor_faction, target_id), actor_id, {"relation": "neutral"}))
        return RelationResult.SUCCESS

    def admin_set_relation(self, faction_a: str, faction_b: str, relation_type: RelationType) -> RelationResult:
        """Force a relation without handshake, role or limit checks."""
        if faction_a == faction_b:
            return RelationResult.CANNOT_RELATE_SELF

        with self._locks.factions.hold(faction_a, faction_b):
            if not self._registry.exists(faction_a) or not self._registry.exists(faction_b):
                return RelationResult.FACTION_NOT_FOUND
            self._set_locked(faction_a, faction_b, relation_type, None)

        self._events.publish(EngineEvent(EventType.RELATION_CHANGED, (faction_a, faction_b), None, {"relation": relation_type.value, "admin": True}))
        return RelationResult.SUCCESS

    # --- Cascade / persistence ---------------------------------------------

    def clear_faction(self, faction_id: str) -> int:
        """
        Drop every relation and request involving ``faction_id``.

        Called while the faction's lock is held during disband, so it only
        takes pair locks.

        Returns:
            Number of relations removed
        """
        with self._guard:
            pairs = [key for key in self._relations if faction_id in key]
            request_keys = [key for key in self._requests if faction_id in key]

        for a, b in pairs:
            with self._locks.relation_pair(a, b):
                with self._guard:
                    self._relations.pop((a, b), None)
        with self._guard:
            for key in request_keys:
                self._requests.pop(key, None)
        if pairs:
            log.debug(f"Cleared {len(pairs)} relations of faction {faction_id}")
        return len(pairs)

    def count_references(self, faction_id: str) -> int:
        with self._guard:
            return sum(1 for key in self._relations if faction_id in key) + sum(1 for key in self._requests if faction_id in key)

    def export(self) -> List[Tuple[str, str, str, float]]:
        with self._guard:
            return [(a, b, rel.type.value, rel.since) for (a, b), rel in self._relations.items()]

    def load(self, relations: List[Tuple[str, str, str, float]]) -> None:
        loaded: Dict[Tuple[str, str], Relation] = {}
        for a, b, type_value, since in relations:
            relation_type = RelationType(type_value)
            if a == b or relation_type == RelationType.NEUTRAL:
                continue
            loaded[pair_key(a, b)] = Relation(relation_type, since)
        with self._guard:
            self._relations = loaded
            self._requests = {}
        log.info(f"Loaded {len(loaded)} relations")
