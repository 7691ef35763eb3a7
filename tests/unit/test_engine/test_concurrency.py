"""
Concurrency tests: many threads hammering the same entities.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

from systems.factions import FactionRole, RelationType
from world.factions.registry import FactionResult
from world.territory import ClaimResult


def run_parallel(tasks, workers=8):
    """Run callables on a thread pool behind a start barrier and return their results."""
    barrier = threading.Barrier(len(tasks))

    def wrap(task):
        barrier.wait()
        return task()

    with ThreadPoolExecutor(max_workers=max(workers, len(tasks))) as pool:
        return list(pool.map(wrap, tasks))


class TestConcurrentClaims:
    """Tests for racing claims."""

    def test_one_owner_per_chunk(self, engine, make_faction):
        """Test that racing factions never both win a chunk."""
        leaders = [f"leader{i}" for i in range(6)]
        for i, leader in enumerate(leaders):
            make_faction(leader, f"Faction{i}")

        results = run_parallel([lambda l=leader: engine.claims.claim(l, "world", 0, 0) for leader in leaders])

        assert results.count(ClaimResult.SUCCESS) == 1
        assert results.count(ClaimResult.ALREADY_CLAIMED_OTHER) == len(leaders) - 1
        engine.check_invariants()

    def test_capacity_not_exceeded(self, engine, config, make_faction):
        """Test that officers claiming at once respect the power limit."""
        config.claims.only_adjacent = False
        officers = [f"officer{i}" for i in range(8)]
        faction_id = make_faction("alice", "Wolves", *officers)
        for officer in officers:
            engine.registry.promote_member(faction_id, officer, "alice")
        for player_id in engine.registry.member_ids(faction_id):
            engine.power.set_power(player_id, 0)
        engine.power.set_power("alice", 10)  # 5 claims at 2 power each

        results = run_parallel([lambda o=o, x=x: engine.claims.claim(o, "world", x, 0) for x, o in enumerate(officers)])

        assert results.count(ClaimResult.SUCCESS) == 5
        assert engine.claims.claimed_count(faction_id) == 5

    def test_claim_races_disband(self, engine, make_faction):
        """Test that a claim racing a disband leaves no orphan chunk."""
        for round_number in range(10):
            faction_id = make_faction("alice", f"Wolves{round_number}")
            run_parallel([
                lambda: engine.claims.claim("alice", "world", round_number, 0),
                lambda: engine.registry.disband_faction(faction_id, "alice"),
            ])
            assert not engine.registry.exists(faction_id)
            assert engine.claims.claimed_count(faction_id) == 0
            assert engine.claims.get_owner("world", round_number, 0) is None


class TestConcurrentRoles:
    """Tests for racing role changes."""

    def test_single_leader_under_contention(self, engine, make_faction):
        """Test that promote, demote and transfer never produce two leaders."""
        faction_id = make_faction("alice", "Wolves", "bob", "carol", "dave")
        engine.registry.promote_member(faction_id, "bob", "alice")

        def churn(actor, target):
            def task():
                for _ in range(20):
                    engine.registry.promote_member(faction_id, target, actor)
                    engine.registry.transfer_leadership(faction_id, target, actor)
                    engine.registry.demote_member(faction_id, target, actor)
            return task

        run_parallel([
            churn("alice", "bob"), churn("bob", "alice"),
            churn("alice", "carol"), churn("carol", "dave"),
        ])

        faction = engine.registry.get_faction(faction_id)
        leaders = [m for m in faction.members.values() if m.role == FactionRole.LEADER]
        assert len(leaders) == 1
        engine.check_invariants()

    def test_concurrent_joins_respect_cap(self, engine, config, make_faction):
        """Test that a nearly full faction accepts exactly the free slots."""
        config.faction.max_members = 3
        faction_id = make_faction("alice", "Wolves")
        players = [f"p{i}" for i in range(6)]

        results = run_parallel([lambda p=p: engine.registry.add_member(faction_id, p, p) for p in players])

        assert results.count(FactionResult.SUCCESS) == 2
        assert engine.registry.get_faction(faction_id).member_count == 3

    def test_player_joins_one_faction(self, engine, make_faction):
        """Test that one player racing into several factions lands in exactly one."""
        factions = [make_faction(f"leader{i}", f"Faction{i}") for i in range(5)]

        results = run_parallel([lambda f=f: engine.registry.add_member(f, "bob", "Bob") for f in factions])

        assert results.count(FactionResult.SUCCESS) == 1
        joined = [f for f in factions if engine.registry.get_faction(f).is_member("bob")]
        assert joined == [engine.registry.get_player_faction_id("bob")]


class TestConcurrentRelations:
    """Tests for racing relation changes."""

    def test_reciprocal_requests_form_one_alliance(self, engine, make_faction):
        """Test that both sides asking at once end allied."""
        wolves = make_faction("alice", "Wolves")
        bears = make_faction("carol", "Bears")

        run_parallel([
            lambda: engine.relations.request_ally("alice", bears),
            lambda: engine.relations.request_ally("carol", wolves),
        ])

        assert engine.relations.get_relation(wolves, bears) is RelationType.ALLY
        assert not engine.relations.has_pending_request(wolves, bears)
        assert not engine.relations.has_pending_request(bears, wolves)

    def test_relation_symmetric_under_contention(self, engine, make_faction):
        """Test that the pair reads the same from both sides after a storm of changes."""
        wolves = make_faction("alice", "Wolves")
        bears = make_faction("carol", "Bears")

        def flip(actor, target):
            def task():
                for _ in range(25):
                    engine.relations.set_enemy(actor, target)
                    engine.relations.set_neutral(actor, target)
            return task

        run_parallel([flip("alice", bears), flip("carol", wolves)])

        assert engine.relations.get_relation(wolves, bears) is engine.relations.get_relation(bears, wolves)
        assert len(engine.relations.export()) <= 1


class TestLockTable:
    """Tests for the per-key lock table."""

    def test_entries_dropped_after_release(self):
        """Test that a key leaves the table once its last holder releases."""
        from engine.locks import KeyedLocks
        locks = KeyedLocks("chunk")
        with locks.hold("a", "b"):
            with locks.hold("a"):
                assert len(locks) == 2
            assert len(locks) == 2
        assert len(locks) == 0

    def test_entry_shared_while_contended(self):
        """Test that waiting holders keep the same lock alive."""
        from engine.locks import KeyedLocks
        locks = KeyedLocks("player")
        inside = []

        def worker(i):
            with locks.hold("alice"):
                inside.append(i)
                assert len(inside) == 1
                inside.pop()

        run_parallel([lambda i=i: worker(i) for i in range(8)])
        assert len(locks) == 0

    def test_rejected_claims_leave_no_locks(self, engine, make_faction):
        """Test that many failed claims do not grow the chunk lock table."""
        faction_id = make_faction("alice", "Wolves")
        engine.power.set_power("alice", 50)
        assert engine.claims.claim("alice", "world", 0, 0) is ClaimResult.SUCCESS
        for x in range(10, 210):
            assert engine.claims.claim("alice", "world", x, 0) is ClaimResult.NOT_ADJACENT
        assert len(engine.locks.chunks) == 0
        assert len(engine.locks.factions) == 0
        assert engine.claims.get_owner("world", 0, 0) == faction_id
