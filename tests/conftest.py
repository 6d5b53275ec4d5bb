"""
Pytest configuration and fixtures for Raz tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from raz.config import Config
from raz.passcode import PasscodeHasher
from raz.realtime import MemoryFanout
from raz.room import RoomPolicy
from raz.service import RoomService
from raz.store import MemoryStore

MASTER_PASSCODE = "master-override-passcode"


class FakeClock:
    """Manually advanced time source in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="raz_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def fanout() -> MemoryFanout:
    return MemoryFanout()


@pytest.fixture
def hasher() -> PasscodeHasher:
    """Argon2 hasher with minimal cost so tests stay fast."""
    return PasscodeHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def master_passcode() -> str:
    return MASTER_PASSCODE


@pytest.fixture
def policy() -> RoomPolicy:
    return RoomPolicy(master_passcode=MASTER_PASSCODE)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """
    Configuration with a master passcode and low-cost Argon2 settings.

    Returns:
        Config backed by a (missing) file in the temporary directory
    """
    config = Config(temp_dir / "config.toml")
    config.set("security", "master_passcode", MASTER_PASSCODE)
    config.set("security", "argon2_time_cost", 1)
    config.set("security", "argon2_memory_cost", 8)
    config.set("security", "argon2_parallelism", 1)
    return config


@pytest.fixture
def service(store: MemoryStore, fanout: MemoryFanout, config: Config, clock: FakeClock) -> RoomService:
    return RoomService(store=store, fanout=fanout, config=config, clock=clock)


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
