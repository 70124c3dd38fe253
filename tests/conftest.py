"""
Shared fixtures for the pipeline tests.
"""

import pytest
from solders.keypair import Keypair

from revenue_distributor.core.config import Settings
from tests.fakes import SleepRecorder


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        environment="development",
        accumulator_file=str(tmp_path / "accumulated_sol.json"),
        token_mint_address=None,
    )


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
