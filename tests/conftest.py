"""
Pytest configuration and shared fixtures.

This file is automatically discovered by pytest and provides fixtures
available to all test files.
"""

import pytest
from typing import Callable

from engine.collaborators import InMemoryPersistence, RecordingPageTracker, StaticPermissions
from engine.config import EngineConfig
from engine.faction_engine import FactionEngine
from world.factions.registry import FactionResult
from world.time.time_system import ManualTime
from world.zones import ZoneMap


@pytest.fixture
def clock() -> ManualTime:
    """
    A manually advanced clock starting at a fixed timestamp.
    """
    return ManualTime(start=1_000_000.0)


@pytest.fixture
def config() -> EngineConfig:
    """
    Default engine configuration.
    """
    return EngineConfig()


@pytest.fixture
def permissions() -> StaticPermissions:
    """
    Permission service that allows everything until told otherwise.
    """
    return StaticPermissions()


@pytest.fixture
def zones() -> ZoneMap:
    """
    Empty zone map.
    """
    return ZoneMap()


@pytest.fixture
def page_tracker() -> RecordingPageTracker:
    return RecordingPageTracker()


@pytest.fixture
def persistence() -> InMemoryPersistence:
    return InMemoryPersistence()


@pytest.fixture
def engine(config, clock, permissions, zones, page_tracker, persistence) -> FactionEngine:
    """
    A fully wired engine with test collaborators. Background tasks are not started.
    """
    return FactionEngine(
        config=config,
        clock=clock,
        permissions=permissions,
        zones=zones,
        persistence=persistence,
        page_tracker=page_tracker,
    )


@pytest.fixture
def make_faction(engine) -> Callable[..., str]:
    """
    Factory creating a faction led by ``leader_id`` with optional extra members.

    Returns the new faction id.
    """
    def _make(leader_id: str, name: str, *member_ids: str) -> str:
        result, faction = engine.registry.create_faction(leader_id, name, leader_id.capitalize())
        assert result is FactionResult.SUCCESS
        for member_id in member_ids:
            assert engine.registry.add_member(faction.id, member_id, member_id.capitalize()) is FactionResult.SUCCESS
        return faction.id
    return _make


@pytest.fixture
def registry(engine):
    return engine.registry


@pytest.fixture
def claims(engine):
    return engine.claims


@pytest.fixture
def power(engine):
    return engine.power


@pytest.fixture
def relations(engine):
    return engine.relations
