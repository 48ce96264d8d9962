import os
import tempfile

import pytest

from tunebatch.storage.database import Storage
from tunebatch.workers.lifecycle import JobController

# Keep test runs fast: no backoff and no pause between items
FAST_CONFIG = {"retry_delay_ms": 0, "delay_between_items": 0}


@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except PermissionError:
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def storage(temp_db):
    return Storage(temp_db)


@pytest.fixture
def controller(storage):
    return JobController(storage, pause_poll_interval=0.05)


def create_test_job(controller, count, **config):
    items = [{"n": n} for n in range(1, count + 1)]
    return controller.create_job("test job", "generation", items, {**FAST_CONFIG, **config})


@pytest.fixture
def make_job(controller):
    def _make(count, **config):
        return create_test_job(controller, count, **config)
    return _make
