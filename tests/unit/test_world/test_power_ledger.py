"""
Unit tests for the PowerLedger.
"""

import pytest

from engine.events import EventType


class TestRecords:
    """Tests for per-player records."""

    def test_lazy_record_at_starting_power(self, power, config):
        """Test that unknown players start at the configured power."""
        record = power.get_player_power("alice")
        assert record.power == config.power.starting_power
        assert record.max_power == config.power.max_player_power
        assert power.records() == [record]

    def test_set_power_clamped(self, power, config):
        """Test that admin power changes stay within bounds."""
        assert power.set_power("alice", 1000).power == config.power.max_player_power
        assert power.set_power("alice", -5).power == 0.0

    def test_set_max_power_clamps_current(self, power):
        """Test that lowering the maximum lowers current power."""
        power.set_power("alice", 15)
        record = power.set_max_power("alice", 8)
        assert record.max_power == 8
        assert record.power == 8


class TestRegeneration:
    """Tests for the regeneration tick."""

    def test_online_players_regenerate(self, power, config):
        """Test one tick of regeneration."""
        power.player_online("alice")
        power.set_power("alice", 5)
        assert power.tick_regeneration() == 1
        assert power.get_player_power("alice").power == pytest.approx(5 + config.power.regen_per_tick)

    def test_offline_players_do_not_regenerate(self, power):
        """Test that offline players are skipped by default."""
        power.set_power("alice", 5)
        assert power.tick_regeneration() == 0
        assert power.get_player_power("alice").power == 5

    def test_offline_regen_when_enabled(self, power, config):
        """Test the regen_when_offline switch."""
        config.power.regen_when_offline = True
        power.set_power("alice", 5)
        assert power.tick_regeneration() == 1

    def test_regen_saturates(self, power, config):
        """Test that regeneration never exceeds the maximum."""
        config.power.regen_per_tick = 3
        power.player_online("alice")
        power.set_power("alice", config.power.max_player_power - 1)
        power.tick_regeneration()
        assert power.get_player_power("alice").is_full
        assert power.tick_regeneration() == 0

    def test_player_offline(self, power):
        """Test presence tracking."""
        power.player_online("alice")
        assert power.is_online("alice")
        power.player_offline("alice")
        assert not power.is_online("alice")


class TestDeath:
    """Tests for death and kill handling."""

    def test_death_penalty(self, power, clock, config):
        """Test that death removes the configured penalty."""
        record = power.on_death("alice")
        assert record.power == config.power.starting_power - config.power.death_penalty
        assert record.last_death == clock.now()

    def test_death_never_below_zero(self, power):
        """Test the lower bound on death."""
        power.set_power("alice", 0.5)
        assert power.on_death("alice").power == 0.0

    def test_kill_reward(self, power, config):
        """Test that the killer gains power when a reward is configured."""
        config.power.kill_reward = 2
        power.on_death("alice", killer_id="bob")
        assert power.get_player_power("bob").power == config.power.starting_power + 2

    def test_no_kill_reward_by_default(self, power, config):
        """Test that the default reward leaves the killer unchanged."""
        power.on_death("alice", killer_id="bob")
        assert power.get_player_power("bob").power == config.power.starting_power

    def test_death_published(self, engine):
        """Test the POWER_CHANGED event."""
        seen = []
        engine.events.subscribe(seen.append, EventType.POWER_CHANGED)
        engine.on_death("alice")
        assert seen[0].player_id == "alice"
        assert seen[0].data["cause"] == "death"


class TestFactionStats:
    """Tests for faction power aggregates."""

    def test_stats_sum_members(self, engine, make_faction, config):
        """Test that faction power is the sum of member power."""
        faction_id = make_faction("alice", "Wolves", "bob")
        engine.power.set_power("bob", 4)
        stats = engine.get_faction_power(faction_id)
        assert stats.current_power == config.power.starting_power + 4
        assert stats.max_power == 2 * config.power.max_player_power
        assert stats.max_claims == int((config.power.starting_power + 4) // config.power.power_per_claim)

    def test_stats_count_claims(self, engine, make_faction):
        """Test that current_claims follows the claim grid."""
        faction_id = make_faction("alice", "Wolves")
        engine.claims.claim("alice", "world", 0, 0)
        stats = engine.get_faction_power(faction_id)
        assert stats.current_claims == 1
        assert not stats.raidable

    def test_stats_of_unknown_faction(self, power):
        """Test that unknown factions have no power."""
        stats = power.get_faction_power_stats("nope")
        assert stats.current_power == 0
        assert stats.max_claims == 0
