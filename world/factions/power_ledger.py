"""
Power ledger.

Per-player power records and the faction figures derived from them.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Set, TYPE_CHECKING

from engine.error_handler import get_logger
from engine.events import EngineEvent, EventType
from systems.power import FactionPowerStats, PowerRecord, calculate_max_claims, clamp_power

if TYPE_CHECKING:
    from engine.config import EngineConfig
    from engine.events import EventBus
    from engine.locks import EngineLocks
    from world.time.time_system import TimeSystem

log = get_logger("power")


class PowerLedger:
    """
    Tracks power for every player that has ever been seen.

    Records are created lazily at starting power. Faction statistics are
    computed on demand from the member list and claim count supplied by
    ``bind_roster``.
    """

    def __init__(
        self,
        config: "EngineConfig",
        clock: "TimeSystem",
        locks: "EngineLocks",
        events: "EventBus",
    ):
        self._config = config
        self._clock = clock
        self._locks = locks
        self._events = events

        self._records: Dict[str, PowerRecord] = {}
        self._online: Set[str] = set()
        self._guard = threading.Lock()

        self._member_ids: Callable[[str], List[str]] = lambda faction_id: []
        self._claimed_count: Callable[[str], int] = lambda faction_id: 0

    def bind_roster(self, member_ids: Callable[[str], List[str]], claimed_count: Callable[[str], int]) -> None:
        """Supply faction membership and claim counts. Called once during engine assembly."""
        self._member_ids = member_ids
        self._claimed_count = claimed_count

    # --- Records -----------------------------------------------------------

    def get_player_power(self, player_id: str) -> PowerRecord:
        record = self._records.get(player_id)
        if record is not None:
            return record
        with self._locks.power.hold(player_id):
            record = self._records.get(player_id)
            if record is None:
                cfg = self._config.power
                record = PowerRecord(
                    player_id=player_id,
                    power=clamp_power(cfg.starting_power, cfg.max_player_power),
                    max_power=cfg.max_player_power,
                    last_regen=self._clock.now(),
                )
                with self._guard:
                    self._records[player_id] = record
            return record

    def _store(self, record: PowerRecord) -> None:
        with self._guard:
            self._records[record.player_id] = record

    def records(self) -> List[PowerRecord]:
        with self._guard:
            return list(self._records.values())

    def load(self, records: List[PowerRecord]) -> None:
        with self._guard:
            self._records = {r.player_id: r.with_power(r.power) for r in records}
        log.info(f"Loaded {len(records)} power records")

    # --- Online state ------------------------------------------------------

    def player_online(self, player_id: str) -> None:
        self.get_player_power(player_id)
        with self._guard:
            self._online.add(player_id)

    def player_offline(self, player_id: str) -> None:
        with self._guard:
            self._online.discard(player_id)

    def is_online(self, player_id: str) -> bool:
        return player_id in self._online

    # --- Mutations ---------------------------------------------------------

    def tick_regeneration(self) -> int:
        """
        Regenerate every eligible record by one tick, saturating at max.

        Only online players regenerate unless ``regen_when_offline`` is set.

        Returns:
            Number of records that changed
        """
        cfg = self._config.power
        if cfg.regen_per_tick <= 0:
            return 0

        with self._guard:
            candidates = list(self._records) if cfg.regen_when_offline else [p for p in self._online if p in self._records]

        now = self._clock.now()
        changed = 0
        for player_id in candidates:
            with self._locks.power.hold(player_id):
                record = self._records.get(player_id)
                if record is None or record.is_full:
                    continue
                self._store(record.regenerated(cfg.regen_per_tick, now))
                changed += 1
        if changed:
            log.debug(f"Regenerated power for {changed} players")
        return changed

    def on_death(self, player_id: str, killer_id: Optional[str] = None) -> PowerRecord:
        """Apply the death penalty, and the kill reward to the killer when configured."""
        cfg = self._config.power
        now = self._clock.now()
        self.get_player_power(player_id)
        if killer_id is not None and killer_id != player_id:
            self.get_player_power(killer_id)

        with self._locks.power.hold(player_id, killer_id):
            record = self._records[player_id].died(cfg.death_penalty, now)
            self._store(record)
            if killer_id is not None and killer_id != player_id and cfg.kill_reward > 0:
                killer = self._records[killer_id]
                self._store(killer.with_power(killer.power + cfg.kill_reward))

        self._events.publish(EngineEvent(EventType.POWER_CHANGED, (), player_id, {"power": record.power, "cause": "death"}))
        return record

    def on_respawn(self, player_id: str) -> PowerRecord:
        self.player_online(player_id)
        return self.get_player_power(player_id)

    def set_power(self, player_id: str, power: float) -> PowerRecord:
        """Admin override of current power, clamped to the record's bounds."""
        self.get_player_power(player_id)
        with self._locks.power.hold(player_id):
            record = self._records[player_id].with_power(power)
            self._store(record)
        return record

    def set_max_power(self, player_id: str, max_power: float) -> PowerRecord:
        """Admin override of a player's maximum. Current power is clamped to it."""
        self.get_player_power(player_id)
        with self._locks.power.hold(player_id):
            record = self._records[player_id]
            record = PowerRecord(
                player_id=player_id,
                power=clamp_power(record.power, max(0.0, max_power)),
                max_power=max(0.0, max_power),
                last_death=record.last_death,
                last_regen=record.last_regen,
            )
            self._store(record)
        return record

    # --- Faction aggregates ------------------------------------------------

    def get_faction_power_stats(self, faction_id: str) -> FactionPowerStats:
        current = 0.0
        maximum = 0.0
        for player_id in self._member_ids(faction_id):
            record = self.get_player_power(player_id)
            current += record.power
            maximum += record.max_power

        claims_cfg = self._config.claims
        return FactionPowerStats(
            current_power=current,
            max_power=maximum,
            current_claims=self._claimed_count(faction_id),
            max_claims=calculate_max_claims(current, self._config.power.power_per_claim, claims_cfg.max_claims),
        )
