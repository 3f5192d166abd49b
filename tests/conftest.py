import os

import pytest

from src.config import Config
from src.facade import build_facade
from src.web import create_app


@pytest.fixture
def make_config(tmp_path):
    """Config factory rooted in a per-test temp directory."""

    def _make(**overrides):
        defaults = dict(
            log_dir=os.path.join(tmp_path, "logs"),
            archive_dir=os.path.join(tmp_path, "archive"),
            archive_enabled=True,
            partition_refresh_hours=12,
            search_timeout_seconds=5,
        )
        defaults.update(overrides)
        return Config(**defaults)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def facade(config):
    return build_facade(config)


@pytest.fixture
def app(facade):
    """Create a Flask test app."""
    application = create_app(facade)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    """Create a Flask test client."""
    return app.test_client()
