import pytest

from ecs_rollout.settings import get_settings

pytest_plugins = [
    "tests.fixtures.ecs_fixtures",
]


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
