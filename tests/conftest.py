import pytest
import structlog

from tests.fixtures.sites import app_config, make_site
from tests.mocks.fake_runner import FakeRunner


@pytest.fixture(autouse=True)
def reset_structlog():
    """CLI tests point structlog at a log file; start every test from the defaults."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def site(tmp_path):
    """Site directory with an executable drush and a core-only composer.lock."""
    return make_site(tmp_path)


@pytest.fixture
def config():
    return app_config()
