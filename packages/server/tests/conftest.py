"""
Shared fixtures: an in-memory store seeded with one tenant.
"""

import pytest

from reqflow_server.stores.memory import MemoryStore

from factories import seed_tenant


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
async def tenant(store):
    return await seed_tenant(store)
