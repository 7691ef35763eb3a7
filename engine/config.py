"""
Engine configuration: loading, saving and validating the JSON config file.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import settings
from engine.error_handler import get_logger, log_error

log = get_logger("config")


@dataclass
class FactionSettings:
    max_members: int = settings.MAX_MEMBERS
    min_name_length: int = settings.MIN_NAME_LENGTH
    max_name_length: int = settings.MAX_NAME_LENGTH
    max_logs: int = settings.MAX_LOGS


@dataclass
class PowerSettings:
    max_player_power: float = settings.MAX_PLAYER_POWER
    starting_power: float = settings.STARTING_POWER
    power_per_claim: float = settings.POWER_PER_CLAIM
    death_penalty: float = settings.DEATH_PENALTY
    kill_reward: float = settings.KILL_REWARD
    regen_per_tick: float = settings.REGEN_PER_TICK
    regen_when_offline: bool = settings.REGEN_WHEN_OFFLINE


@dataclass
class ClaimSettings:
    max_claims: int = settings.MAX_CLAIMS
    only_adjacent: bool = settings.ONLY_ADJACENT
    decay_enabled: bool = settings.DECAY_ENABLED
    decay_days_inactive: int = settings.DECAY_DAYS_INACTIVE
    world_whitelist: List[str] = field(default_factory=list)
    world_blacklist: List[str] = field(default_factory=list)

    def is_world_allowed(self, world: str) -> bool:
        """A non-empty whitelist wins; otherwise anything not blacklisted is allowed."""
        if self.world_whitelist:
            return world in self.world_whitelist
        return world not in self.world_blacklist


@dataclass
class RelationSettings:
    max_allies: int = settings.MAX_ALLIES  # -1 = unlimited
    max_enemies: int = settings.MAX_ENEMIES


@dataclass
class InviteSettings:
    invite_expiration_minutes: int = settings.INVITE_EXPIRATION_MINUTES
    join_request_expiration_hours: int = settings.JOIN_REQUEST_EXPIRATION_HOURS

    @property
    def invite_ttl_seconds(self) -> float:
        return self.invite_expiration_minutes * 60.0

    @property
    def join_request_ttl_seconds(self) -> float:
        return self.join_request_expiration_hours * 3600.0


@dataclass
class SchedulerSettings:
    regen_interval_seconds: int = settings.REGEN_INTERVAL_SECONDS
    decay_interval_minutes: int = settings.DECAY_INTERVAL_MINUTES
    sweep_interval_minutes: int = settings.SWEEP_INTERVAL_MINUTES
    autosave_interval_minutes: int = settings.AUTOSAVE_INTERVAL_MINUTES


_SECTIONS = {
    "faction": FactionSettings,
    "power": PowerSettings,
    "claims": ClaimSettings,
    "relations": RelationSettings,
    "invites": InviteSettings,
    "scheduler": SchedulerSettings,
}


class EngineConfig:
    """Manages engine configuration. One instance is injected into every component."""

    def __init__(self) -> None:
        self.faction = FactionSettings()
        self.power = PowerSettings()
        self.claims = ClaimSettings()
        self.relations = RelationSettings()
        self.invites = InviteSettings()
        self.scheduler = SchedulerSettings()

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for saving."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}

    def from_dict(self, data: Dict[str, Any]) -> None:
        """Load config from dictionary. Unknown keys are ignored, missing keys keep defaults."""
        for name, section_cls in _SECTIONS.items():
            section_data = data.get(name) or {}
            section = section_cls()
            for f in fields(section_cls):
                if f.name in section_data:
                    setattr(section, f.name, section_data[f.name])
            setattr(self, name, section)

    @classmethod
    def from_file(cls, path: Path) -> "EngineConfig":
        config = cls()
        if config.load(path):
            config.validate()
        return config

    def validate(self) -> List[str]:
        """
        Reset out-of-range values to their defaults.

        Returns:
            One warning per corrected value
        """
        warnings: List[str] = []

        def check(section: Any, name: str, ok: bool) -> None:
            if not ok:
                default = getattr(type(section)(), name)
                warnings.append(f"{name}={getattr(section, name)!r} is invalid, using {default!r}")
                setattr(section, name, default)

        f, p, c, r, i, s = self.faction, self.power, self.claims, self.relations, self.invites, self.scheduler
        check(f, "max_members", f.max_members >= 1)
        check(f, "min_name_length", f.min_name_length >= 1)
        check(f, "max_name_length", f.max_name_length >= f.min_name_length)
        check(f, "max_logs", f.max_logs >= 1)
        check(p, "max_player_power", p.max_player_power > 0)
        check(p, "starting_power", 0 <= p.starting_power <= p.max_player_power)
        check(p, "power_per_claim", p.power_per_claim >= 0)
        check(p, "death_penalty", p.death_penalty >= 0)
        check(p, "kill_reward", p.kill_reward >= 0)
        check(p, "regen_per_tick", p.regen_per_tick >= 0)
        check(c, "max_claims", c.max_claims >= 0)
        check(c, "decay_days_inactive", c.decay_days_inactive >= 1)
        check(r, "max_allies", r.max_allies >= -1)
        check(r, "max_enemies", r.max_enemies >= -1)
        check(i, "invite_expiration_minutes", i.invite_expiration_minutes >= 1)
        check(i, "join_request_expiration_hours", i.join_request_expiration_hours >= 1)
        check(s, "regen_interval_seconds", s.regen_interval_seconds >= 1)
        check(s, "decay_interval_minutes", s.decay_interval_minutes >= 1)
        check(s, "sweep_interval_minutes", s.sweep_interval_minutes >= 1)
        check(s, "autosave_interval_minutes", s.autosave_interval_minutes >= 0)

        for warning in warnings:
            log.warning(f"Config: {warning}")
        return warnings

    def save(self, path: Path) -> bool:
        """Save config to file."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
            return True
        except OSError as e:
            log_error(e, "config_save")
            return False

    def load(self, path: Optional[Path]) -> bool:
        """Load config from file."""
        if path is None or not path.exists():
            return False

        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            self.from_dict(data)
            return True
        except (OSError, ValueError) as e:
            log_error(e, "config_load")
            return False
