"""
Pytest configuration and shared fixtures for the courthouse tests.

- Async tests run under pytest-asyncio (auto mode is enabled in pyproject.toml)
- The platform gateway is an AsyncMock; the repository is real and lives in tmp_path
"""

from unittest.mock import AsyncMock

import pytest

from courthouse import (
    Actor,
    ConfinementManager,
    Dispatcher,
    LawsuitManager,
    Repo,
    Store,
)

GUILD_ID = 1150630510696075404
CATEGORY_ID = 1247290032881008701
ROOM_ID = 1279118293936111707
ROLE_ID = 1327208667568799766
MODERATOR_ID = 1166627731916734504
PLAINTIFF_ID = 1200043628899356702
ACCUSED_ID = 1159097493875871784
JUDGE_ID = 1302331990829174896
BYSTANDER_ID = 1401712141584826489


@pytest.fixture
async def repo(tmp_path) -> Repo:
    """A repository backed by a temporary data directory."""
    repo = Repo(Store(data_dir=str(tmp_path)))
    yield repo
    await repo.close()


@pytest.fixture
def mock_gateway() -> AsyncMock:
    """A platform gateway that accepts every request."""
    gateway = AsyncMock()
    gateway.create_restricted_room = AsyncMock(return_value=ROOM_ID)
    gateway.resolve_category = AsyncMock(return_value=CATEGORY_ID)
    gateway.assign_role = AsyncMock(return_value=None)
    gateway.revoke_role = AsyncMock(return_value=None)
    gateway.lock_room = AsyncMock(return_value=None)
    gateway.send_embed = AsyncMock(return_value=None)
    return gateway


@pytest.fixture
def moderator() -> Actor:
    return Actor(id=MODERATOR_ID, can_manage_guild=True)


@pytest.fixture
def member() -> Actor:
    return Actor(id=BYSTANDER_ID)


@pytest.fixture
def lawsuits(repo: Repo, mock_gateway: AsyncMock) -> LawsuitManager:
    return LawsuitManager(repo, mock_gateway)


@pytest.fixture
def confinement(repo: Repo, mock_gateway: AsyncMock) -> ConfinementManager:
    return ConfinementManager(repo, mock_gateway)


@pytest.fixture
def dispatcher(
    lawsuits: LawsuitManager, confinement: ConfinementManager
) -> Dispatcher:
    return Dispatcher(lawsuits, confinement)
