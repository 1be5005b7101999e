import pytest

from pharmacy_queue.store import Store
from tests.factories import FakeClock, make_store


@pytest.fixture
def store() -> Store:
    return make_store()


@pytest.fixture
def file_store(tmp_path) -> Store:
    """Store on a file database so that threads get their own connections."""
    return make_store(f"sqlite:///{tmp_path / 'pharmacy.db'}")


@pytest.fixture
def store_factory():
    return make_store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
