"""
Pytest configuration and fixtures for Trade Journal tests
"""

import pytest

from app.config.settings import Settings
from core.exchange_sync import ExchangeSyncService
from core.profile_integrity import ProfileIntegrityManager
from core.test_data import TestDataGenerator
from core.trade_journal import TradeJournal
from data.database import Database, Access


OWNER = "trader@example.com"
OTHER_OWNER = "other@example.com"


@pytest.fixture
def settings():
    """
    Small page and batch sizes so pagination paths run on small data sets
    """
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite:///:memory:",
        BYBIT_PROXY_URL=None,
        BYBIT_PROXY_SECRET=None,
        GENERATOR_BATCH_SIZE=10,
        DELETE_BATCH_SIZE=7,
        DELETE_BATCH_DELAY_MS=0,
        COUNT_PAGE_SIZE=8,
        SYNC_MAX_CLOSED_PAGES=3,
        SYNC_PAGE_LIMIT=50,
    )


@pytest.fixture
async def database(settings):
    """
    In-memory SQLite database (StaticPool), fresh per test
    """
    db = Database(settings)
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def owner_access():
    return Access.for_owner(OWNER)


@pytest.fixture
def profiles(database, settings):
    return ProfileIntegrityManager(database, settings)


@pytest.fixture
def journal(database, profiles, settings):
    return TradeJournal(database, profiles, settings)


@pytest.fixture
def generator(database, profiles, settings):
    return TestDataGenerator(database, profiles, settings)


@pytest.fixture
async def active_profile(profiles):
    """
    Owner with one active profile (starting balance 10000)
    """
    return await profiles.create_profile(OWNER, "Main", make_active=True, starting_balance=10000.0)


def make_sync_service(database, profiles, settings, client):
    """Sync service whose relay client is the given fake"""
    return ExchangeSyncService(database, profiles, settings, client_factory=lambda key, secret: client)
