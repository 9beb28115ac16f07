"""Session setup for every test package under backend/.

``.env.tests`` at the repository root holds the ROOMS_* overrides the test
suite runs with; ``RoomSettings()`` picks them up from the environment.
"""

from pathlib import Path

import pytest
import structlog
from dotenv import load_dotenv

from shared.logging import configure_structlog

TEST_ENV_FILE = Path(__file__).resolve().parent.parent / ".env.tests"

load_dotenv(TEST_ENV_FILE)
configure_structlog()


@pytest.fixture(autouse=True)
def _isolated_log_context():
    """Room context bound by one test must not leak into the next."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
