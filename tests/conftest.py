"""
Pytest fixtures and test configuration for pup tests.
"""

import pytest

from application.app_context import AppContext, assemble
from domain.context.memory.cache_memory_store import CacheMemoryStore
from infrastructure.config.settings import Settings

from fakes import BOT_USER_ID, FakeClock, FakeLanguageModel, FlakyRepository, RecordingSleep, build_test_callers


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def substrate(clock):
    return CacheMemoryStore(clock=clock)


@pytest.fixture
def repository():
    return FlakyRepository()


@pytest.fixture
def llm():
    return FakeLanguageModel()


@pytest.fixture
def settings():
    return Settings(_env_file=None, openai_api_key="test-key", bot_user_id=BOT_USER_ID)


@pytest.fixture
def app_context(settings, substrate, repository, llm, clock, sleep) -> AppContext:
    return assemble(settings, substrate, repository, llm, callers=build_test_callers(clock, sleep))
