"""
Unit tests for chunk claiming.
"""

import pytest

from engine.collaborators import Permissions
from engine.events import EventType
from systems.factions import LogType, RelationType
from world.territory import ChunkKey, ClaimResult
from world.zones import ZoneType


@pytest.fixture
def wolves(make_faction):
    """Alice leads Wolves with officer-less member Bob."""
    return make_faction("alice", "Wolves", "bob")


@pytest.fixture
def make_raidable(engine):
    """Drop every member of a faction to zero power."""
    def _drain(faction_id):
        for player_id in engine.registry.member_ids(faction_id):
            engine.power.set_power(player_id, 0)
    return _drain


class TestClaim:
    """Tests for claiming chunks."""

    def test_first_claim_anywhere(self, claims, wolves):
        """Test that the first claim needs no neighbour."""
        assert claims.claim("alice", "world", 5, -3) is ClaimResult.SUCCESS
        assert claims.get_owner("world", 5, -3) == wolves
        assert claims.get_claims(wolves) == frozenset({ChunkKey("world", 5, -3)})

    def test_claim_logged_and_published(self, engine, claims, registry, wolves):
        """Test the audit entry and event for a claim."""
        seen = []
        engine.events.subscribe(seen.append, EventType.CHUNK_CLAIMED)
        claims.claim("alice", "world", 0, 0)
        assert registry.get_faction(wolves).logs[-1].type is LogType.CLAIM
        assert len(seen) == 1 and seen[0].faction_ids == (wolves,)

    def test_member_cannot_claim(self, claims, wolves):
        """Test NOT_OFFICER for plain members."""
        assert claims.claim("bob", "world", 0, 0) is ClaimResult.NOT_OFFICER

    def test_factionless_cannot_claim(self, claims):
        """Test NOT_IN_FACTION."""
        assert claims.claim("zed", "world", 0, 0) is ClaimResult.NOT_IN_FACTION

    def test_permission_checked(self, claims, permissions, wolves):
        """Test NO_PERMISSION from the permission service."""
        permissions.deny("alice", Permissions.CLAIM)
        assert claims.claim("alice", "world", 0, 0) is ClaimResult.NO_PERMISSION

    def test_already_claimed(self, claims, wolves, make_faction):
        """Test self and other ownership results."""
        make_faction("carol", "Bears")
        claims.claim("alice", "world", 0, 0)
        assert claims.claim("alice", "world", 0, 0) is ClaimResult.ALREADY_CLAIMED_SELF
        assert claims.claim("carol", "world", 0, 0) is ClaimResult.ALREADY_CLAIMED_OTHER

    def test_adjacency_required(self, claims, wolves):
        """Test NOT_ADJACENT for a gap and success for an edge neighbour."""
        claims.claim("alice", "world", 0, 0)
        assert claims.claim("alice", "world", 1, 1) is ClaimResult.NOT_ADJACENT
        assert claims.claim("alice", "world", 0, 1) is ClaimResult.SUCCESS

    def test_adjacency_is_per_world(self, claims, wolves):
        """Test that a neighbour in another world does not count."""
        claims.claim("alice", "world", 0, 0)
        assert claims.claim("alice", "nether", 0, 1) is ClaimResult.NOT_ADJACENT

    def test_adjacency_optional(self, claims, wolves, config):
        """Test that disabling only_adjacent allows gaps."""
        config.claims.only_adjacent = False
        claims.claim("alice", "world", 0, 0)
        assert claims.claim("alice", "world", 10, 10) is ClaimResult.SUCCESS

    def test_capacity_from_power(self, claims, wolves, config):
        """Test that capacity follows faction power."""
        config.power.power_per_claim = 10
        # Two members at starting power 10 each -> 2 claims.
        assert claims.claim("alice", "world", 0, 0) is ClaimResult.SUCCESS
        assert claims.claim("alice", "world", 1, 0) is ClaimResult.SUCCESS
        assert claims.claim("alice", "world", 2, 0) is ClaimResult.MAX_CLAIMS_REACHED

    def test_capacity_scenario(self, engine, claims, config, make_faction):
        """Test adjacency before capacity with power 50 and 5 power per claim."""
        config.power.power_per_claim = 5
        faction_id = make_faction("alice", "Wolves")
        engine.power.set_max_power("alice", 50)
        engine.power.set_power("alice", 50)
        for x in range(9):
            assert claims.admin_claim(faction_id, "world", x, 0) is ClaimResult.SUCCESS

        assert claims.claim("alice", "world", 50, 50) is ClaimResult.NOT_ADJACENT
        assert claims.claim("alice", "world", 9, 0) is ClaimResult.SUCCESS
        assert claims.claimed_count(faction_id) == 10
        assert claims.claim("alice", "world", 10, 0) is ClaimResult.MAX_CLAIMS_REACHED

    def test_world_blacklist(self, claims, wolves, config):
        """Test WORLD_NOT_ALLOWED."""
        config.claims.world_blacklist = ["arena"]
        assert claims.claim("alice", "arena", 0, 0) is ClaimResult.WORLD_NOT_ALLOWED

    def test_zone_protected(self, claims, zones, wolves):
        """Test that zoned chunks cannot be claimed."""
        zones.create_zone("Spawn", ZoneType.SAFE, "world", 0, 0)
        assert claims.claim("alice", "world", 0, 0) is ClaimResult.ZONE_PROTECTED

    def test_zone_service_failure_blocks_claim(self, engine, wolves, monkeypatch):
        """Test that a failing zone lookup is treated as protected."""
        def broken(world, x, z):
            raise RuntimeError("zone backend down")
        monkeypatch.setattr(engine.zones, "get_zone", broken)
        assert engine.claims.claim("alice", "world", 0, 0) is ClaimResult.ZONE_PROTECTED

    def test_owner_at_world_coords(self, claims, wolves):
        """Test lookup by block coordinates."""
        claims.claim("alice", "world", -1, 2)
        assert claims.get_owner_at("world", -0.5, 40.0) == wolves
        assert claims.get_owner_at("world", 0.0, 40.0) is None


class TestUnclaim:
    """Tests for releasing chunks."""

    def test_unclaim(self, claims, wolves):
        """Test releasing an owned chunk."""
        claims.claim("alice", "world", 0, 0)
        assert claims.unclaim("alice", "world", 0, 0) is ClaimResult.SUCCESS
        assert not claims.is_claimed("world", 0, 0)
        assert claims.claimed_count(wolves) == 0

    def test_unclaim_errors(self, claims, wolves, make_faction):
        """Test CHUNK_NOT_CLAIMED and NOT_YOUR_CLAIM."""
        make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        assert claims.unclaim("alice", "world", 5, 5) is ClaimResult.CHUNK_NOT_CLAIMED
        assert claims.unclaim("alice", "world", 0, 0) is ClaimResult.NOT_YOUR_CLAIM

    def test_unclaim_may_split_territory(self, claims, wolves):
        """Test that unclaiming the middle of a line is allowed."""
        for x in range(3):
            claims.claim("alice", "world", x, 0)
        assert claims.unclaim("alice", "world", 1, 0) is ClaimResult.SUCCESS
        assert claims.claimed_count(wolves) == 2

    def test_cannot_unclaim_home_chunk(self, engine, claims, wolves):
        """Test CANNOT_UNCLAIM_HOME."""
        claims.claim("alice", "world", 0, 0)
        engine.set_home("alice", "world", 8.0, 64.0, 8.0)
        assert claims.unclaim("alice", "world", 0, 0) is ClaimResult.CANNOT_UNCLAIM_HOME

    def test_unclaim_all(self, claims, wolves):
        """Test bulk release."""
        for x in range(3):
            claims.claim("alice", "world", x, 0)
        assert claims.unclaim_all(wolves) == 3
        assert claims.total_claims() == 0


class TestOverclaim:
    """Tests for taking land from weakened factions."""

    def test_overclaim_raidable_faction(self, engine, claims, wolves, make_faction, make_raidable, registry):
        """Test that a raidable defender loses the chunk in one step."""
        bears = make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        claims.claim("carol", "world", 1, 0)
        make_raidable(bears)

        assert claims.overclaim("alice", "world", 1, 0) is ClaimResult.SUCCESS
        assert claims.get_owner("world", 1, 0) == wolves
        assert claims.get_claims(bears) == frozenset({ChunkKey("world", 0, 0)})
        assert registry.get_faction(bears).logs[-1].type is LogType.OVERCLAIM
        assert registry.get_faction(wolves).logs[-1].type is LogType.OVERCLAIM
        engine.check_invariants()

    def test_overclaim_strong_faction(self, claims, wolves, make_faction):
        """Test TARGET_HAS_POWER."""
        make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.TARGET_HAS_POWER

    def test_overclaim_ally(self, relations, claims, wolves, make_faction, make_raidable):
        """Test that allies are never overclaimed."""
        bears = make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        relations.admin_set_relation(wolves, bears, RelationType.ALLY)
        make_raidable(bears)
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.ALREADY_CLAIMED_ALLY

    def test_overclaim_unclaimed_and_own(self, claims, wolves):
        """Test CHUNK_NOT_CLAIMED and ALREADY_CLAIMED_SELF."""
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.CHUNK_NOT_CLAIMED
        claims.claim("alice", "world", 0, 0)
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.ALREADY_CLAIMED_SELF

    def test_overclaim_needs_adjacency(self, claims, wolves, make_faction, make_raidable):
        """Test that the attacker's territory must touch the chunk."""
        bears = make_faction("carol", "Bears")
        claims.claim("alice", "world", 10, 10)
        claims.claim("carol", "world", 0, 0)
        make_raidable(bears)
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.NOT_ADJACENT

    def test_overclaim_removes_defender_home(self, engine, claims, registry, wolves, make_faction, make_raidable):
        """Test that a home inside the taken chunk is dropped."""
        bears = make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        engine.set_home("carol", "world", 1.0, 64.0, 1.0)
        make_raidable(bears)
        assert claims.overclaim("alice", "world", 0, 0) is ClaimResult.SUCCESS
        assert registry.get_faction(bears).home is None

    def test_overclaim_event_names_both_factions(self, engine, claims, wolves, make_faction, make_raidable):
        """Test that the overclaim event lists attacker and defender."""
        bears = make_faction("carol", "Bears")
        claims.claim("carol", "world", 0, 0)
        make_raidable(bears)
        seen = []
        engine.events.subscribe(seen.append, EventType.CHUNK_OVERCLAIMED)
        claims.overclaim("alice", "world", 0, 0)
        assert seen[0].faction_ids == (wolves, bears)

    def test_member_overclaim_checks_role_first(self, claims, wolves):
        """Test that a plain member gets NOT_OFFICER even on their own chunk."""
        claims.claim("alice", "world", 0, 0)
        assert claims.overclaim("bob", "world", 0, 0) is ClaimResult.NOT_OFFICER
        assert claims.overclaim("bob", "world", 3, 3) is ClaimResult.NOT_OFFICER


class TestAdmin:
    """Tests for admin claim operations."""

    def test_admin_claim_skips_checks(self, claims, wolves, zones):
        """Test that admin claims ignore adjacency and zones."""
        zones.create_zone("Spawn", ZoneType.SAFE, "world", 0, 0)
        assert claims.admin_claim(wolves, "world", 0, 0) is ClaimResult.SUCCESS
        assert claims.admin_claim(wolves, "world", 40, 40) is ClaimResult.SUCCESS

    def test_admin_claim_unknown_faction(self, claims):
        """Test FACTION_NOT_FOUND."""
        assert claims.admin_claim("nope", "world", 0, 0) is ClaimResult.FACTION_NOT_FOUND

    def test_admin_unclaim(self, claims, wolves):
        """Test releasing any chunk."""
        claims.claim("alice", "world", 0, 0)
        assert claims.admin_unclaim("world", 0, 0) is ClaimResult.SUCCESS
        assert claims.admin_unclaim("world", 0, 0) is ClaimResult.CHUNK_NOT_CLAIMED

    def test_admin_unclaim_all_logged_and_published(self, engine, claims, registry, page_tracker, wolves):
        """Test that an admin territory wipe is audited and reaches the page tracker."""
        claims.claim("alice", "world", 0, 0)
        claims.claim("alice", "world", 1, 0)
        seen = []
        engine.events.subscribe(seen.append, EventType.CHUNK_UNCLAIMED)
        logs_before = len(registry.get_faction(wolves).logs)
        page_tracker.changed.clear()

        assert claims.admin_unclaim_all(wolves) == 2
        assert claims.claimed_count(wolves) == 0
        logs = registry.get_faction(wolves).logs
        assert len(logs) == logs_before + 1
        assert logs[-1].type is LogType.UNCLAIM
        assert len(seen) == 1 and seen[0].data["released"] == 2
        assert wolves in page_tracker.changed

    def test_admin_unclaim_all_nothing_to_release(self, engine, claims, wolves):
        """Test that an empty wipe publishes nothing."""
        seen = []
        engine.events.subscribe(seen.append, EventType.CHUNK_UNCLAIMED)
        assert claims.admin_unclaim_all(wolves) == 0
        assert claims.admin_unclaim_all("nope") == 0
        assert seen == []


class TestDecay:
    """Tests for inactivity decay."""

    def test_inactive_faction_loses_claims(self, engine, clock, claims, wolves, config):
        """Test that decay releases all land after the inactivity period."""
        claims.claim("alice", "world", 0, 0)
        claims.claim("alice", "world", 1, 0)
        clock.add_time(days=config.claims.decay_days_inactive + 1)
        assert claims.tick_claim_decay() == 2
        assert claims.claimed_count(wolves) == 0
        assert engine.registry.exists(wolves)

    def test_online_member_prevents_decay(self, engine, clock, claims, wolves, config):
        """Test that any online member keeps the faction active."""
        claims.claim("alice", "world", 0, 0)
        engine.player_online("bob")
        clock.add_time(days=config.claims.decay_days_inactive + 1)
        assert claims.tick_claim_decay() == 0

    def test_decay_disabled(self, clock, claims, wolves, config):
        """Test that nothing decays when disabled."""
        config.claims.decay_enabled = False
        claims.claim("alice", "world", 0, 0)
        clock.add_time(days=365)
        assert claims.tick_claim_decay() == 0
        assert claims.days_until_decay(wolves) is None

    def test_orphaned_claims_released(self, claims, wolves, config):
        """Test that claims of a faction that no longer exists are freed on the next tick."""
        claims.load([("world", 5, 5, "ghost"), ("world", 5, 6, "ghost")])
        assert claims.claim("alice", "world", 5, 5) is ClaimResult.ALREADY_CLAIMED_OTHER

        config.claims.decay_enabled = False
        assert claims.tick_claim_decay() == 2
        assert claims.get_owner("world", 5, 5) is None
        assert claims.claimed_count("ghost") == 0
        assert claims.claim("alice", "world", 5, 5) is ClaimResult.SUCCESS

    def test_days_until_decay(self, clock, claims, wolves, config):
        """Test the countdown."""
        clock.add_time(days=10)
        assert claims.days_until_decay(wolves) == config.claims.decay_days_inactive - 10


class TestPersistence:
    """Tests for export and load."""

    def test_export_and_load(self, claims, wolves):
        """Test that loaded claims rebuild both indices."""
        claims.claim("alice", "world", 0, 0)
        claims.claim("alice", "world", 0, 1)
        exported = claims.export()
        claims.unclaim_all(wolves)
        claims.load(exported)
        assert claims.claimed_count(wolves) == 2
        assert claims.get_owner("world", 0, 1) == wolves

    def test_duplicate_claims_ignored_on_load(self, claims):
        """Test that the first owner wins for a duplicated chunk."""
        claims.load([("world", 0, 0, "a"), ("world", 0, 0, "b")])
        assert claims.get_owner("world", 0, 0) == "a"
        assert claims.claimed_count("b") == 0
