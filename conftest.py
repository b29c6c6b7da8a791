import logging

import pytest

from sosheiq.models import Scenario


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    """Capture engine logs at DEBUG so tests can assert on warnings."""
    caplog.set_level(logging.DEBUG, logger="sosheiq")
    yield


@pytest.fixture
def scenario() -> Scenario:
    return Scenario(environment="Coffee Shop", ai_name="Maya Chen", ai_gender="Female")
