"""Root conftest: shared settings fixture."""

import pytest

from meshgraph.config.settings import Settings
from tests.fakes import make_settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()
