import pytest

from engine import LendingEngine
from repository import InMemoryRepository
from schemas import User


@pytest.fixture
def repo():
    return InMemoryRepository()


@pytest.fixture
def engine(repo):
    return LendingEngine(repo)


@pytest.fixture
def make_user(repo):
    async def _make(name):
        return await repo.insert_user(User(name=name, email=f"{name.lower()}@example.com"))
    return _make


@pytest.fixture
def make_item(engine):
    async def _make(owner, level=1, title="Cordless drill", category="Tools", description="18V with two batteries",
                    hidden=False):
        return await engine.items.create_item(
            owner.id,
            title=title,
            category=category,
            required_trust_level=level,
            description=description,
            hidden=hidden,
        )
    return _make
