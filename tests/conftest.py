"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from copyrelay.storage import CopyRelayStore
from tests.mocks.factories import FOLLOWER_1, FOLLOWER_2, FOLLOWER_3, make_follower


@pytest.fixture
def temp_store():
    """Temporary database for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        yield CopyRelayStore(str(db_path))


@pytest.fixture
def follower():
    return make_follower(FOLLOWER_1, 1)


@pytest.fixture
def followers():
    return [
        make_follower(FOLLOWER_1, 1),
        make_follower(FOLLOWER_2, 2),
        make_follower(FOLLOWER_3, 3),
    ]
