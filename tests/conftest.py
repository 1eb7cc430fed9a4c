import pytest

from quakeapi.db import QuakeStore


@pytest.fixture
def store(tmp_path):
    s = QuakeStore(tmp_path / "quakes.db")
    s.init_db()
    return s
