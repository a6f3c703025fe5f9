from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from helpers import make_records

MANILA = ZoneInfo("Asia/Manila")


@pytest.fixture
def now():
    return datetime(2026, 3, 10, 10, 30, tzinfo=MANILA)


@pytest.fixture
def records():
    return make_records()
