import os
import tempfile

import pytest

# srv.api.main installs file log handlers at import time
os.environ.setdefault("NK_LOG_DIR", tempfile.mkdtemp(prefix="nk-logs-"))

from app.nk_doses.service import DoseService
from app.nk_doses.settings import Settings
from app.nk_doses.store import MemoryDoseStore

from tests.helpers import CAREGIVER, NOW, OTHER_CAREGIVER, Clock


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def store():
    s = MemoryDoseStore()
    s.add_caregiver(CAREGIVER, "UTC")
    s.add_caregiver(OTHER_CAREGIVER, "UTC")
    s.add_child("child-1", "Mia", caregivers=[CAREGIVER])
    s.add_child("child-2", "Leo", caregivers=[OTHER_CAREGIVER])
    return s


@pytest.fixture
def settings():
    return Settings(dsn="", store="memory")


@pytest.fixture
def service(store, clock, settings):
    return DoseService(store, settings=settings, clock=clock)
