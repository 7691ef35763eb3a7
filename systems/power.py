"""
Power model.

Power is the per-player resource that bounds how much territory a faction
may hold. A faction's figures are always derived from its members' records.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class PowerRecord:
    """Power state of a single player."""
    player_id: str
    power: float
    max_power: float
    last_death: Optional[float] = None
    last_regen: float = 0.0

    @property
    def is_full(self) -> bool:
        return self.power >= self.max_power

    @property
    def percent(self) -> int:
        if self.max_power <= 0:
            return 0
        return int(round(self.power / self.max_power * 100))

    def with_power(self, power: float) -> "PowerRecord":
        return replace(self, power=clamp_power(power, self.max_power))

    def regenerated(self, amount: float, now: float) -> "PowerRecord":
        return replace(self, power=clamp_power(self.power + amount, self.max_power), last_regen=now)

    def died(self, penalty: float, now: float) -> "PowerRecord":
        return replace(self, power=clamp_power(self.power - penalty, self.max_power), last_death=now)


@dataclass(frozen=True)
class FactionPowerStats:
    """Aggregate power figures for a faction. Derived, never stored."""
    current_power: float
    max_power: float
    current_claims: int
    max_claims: int

    @property
    def raidable(self) -> bool:
        return self.current_claims > self.max_claims

    @property
    def claim_deficit(self) -> int:
        return max(0, self.current_claims - self.max_claims)

    @property
    def power_percent(self) -> int:
        if self.max_power <= 0:
            return 0
        return int(round(self.current_power / self.max_power * 100))

    @property
    def can_claim_more(self) -> bool:
        return self.current_claims < self.max_claims


def clamp_power(power: float, max_power: float) -> float:
    return max(0.0, min(max_power, power))


def calculate_max_claims(power: float, power_per_claim: float, max_claims_cap: int) -> int:
    """Claims a faction with ``power`` may hold, bounded by the global cap."""
    if power_per_claim <= 0:
        return max_claims_cap
    return min(int(math.floor(power / power_per_claim)), max_claims_cap)
