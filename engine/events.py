"""
Engine events.

Components publish an ``EngineEvent`` after a successful mutation, once
their locks are released. Subscribers (page tracker, telemetry, chat
layers) are called synchronously; a failing subscriber is logged and never
affects the publisher or the other subscribers.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from engine.error_handler import log_error


class EventType(Enum):
    FACTION_CREATED = "faction_created"
    FACTION_DISBANDED = "faction_disbanded"
    FACTION_UPDATED = "faction_updated"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    MEMBER_KICKED = "member_kicked"
    ROLE_CHANGED = "role_changed"
    LEADER_TRANSFERRED = "leader_transferred"
    CHUNK_CLAIMED = "chunk_claimed"
    CHUNK_UNCLAIMED = "chunk_unclaimed"
    CHUNK_OVERCLAIMED = "chunk_overclaimed"
    RELATION_CHANGED = "relation_changed"
    ALLY_REQUESTED = "ally_requested"
    POWER_CHANGED = "power_changed"
    INVITE_CREATED = "invite_created"
    JOIN_REQUESTED = "join_requested"


@dataclass(frozen=True)
class EngineEvent:
    """Something that changed. ``faction_ids`` lists every faction affected."""
    type: EventType
    faction_ids: tuple = ()
    player_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "faction_ids": list(self.faction_ids),
            "player_id": self.player_id,
            **self.data,
        }


Subscriber = Callable[[EngineEvent], None]


class EventBus:
    """In-process publish/subscribe hub."""

    def __init__(self) -> None:
        self._subscribers: Dict[Optional[EventType], List[Subscriber]] = {}
        self._guard = threading.Lock()

    def subscribe(self, callback: Subscriber, event_type: Optional[EventType] = None) -> None:
        """Register ``callback`` for one event type, or for all if None."""
        with self._guard:
            subscribers = dict(self._subscribers)
            subscribers[event_type] = subscribers.get(event_type, []) + [callback]
            self._subscribers = subscribers

    def unsubscribe(self, callback: Subscriber, event_type: Optional[EventType] = None) -> None:
        with self._guard:
            subscribers = dict(self._subscribers)
            subscribers[event_type] = [s for s in subscribers.get(event_type, []) if s != callback]
            self._subscribers = subscribers

    def publish(self, event: EngineEvent) -> None:
        subscribers = self._subscribers
        for callback in subscribers.get(event.type, []) + subscribers.get(None, []):
            try:
                callback(event)
            except Exception as e:
                log_error(e, f"event_subscriber:{event.type.value}")

    def publish_all(self, events: List[EngineEvent]) -> None:
        for event in events:
            self.publish(event)
