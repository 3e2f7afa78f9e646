from __future__ import annotations

import pytest

from tenantgate.core.config import get_settings
from tenantgate.tests.utils.fakes import Harness, build_harness


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Settings are cached per process; keep env overrides from leaking between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def harness() -> Harness:
    return build_harness()
