"""Shared fixtures."""

import pytest

from fynmesh.events import EventBus
from helpers import UnitFarm


@pytest.fixture
def farm() -> UnitFarm:
    return UnitFarm()


@pytest.fixture
async def event_bus() -> EventBus:
    bus = EventBus(max_queue=64)
    await bus.start()
    yield bus
    await bus.stop()
