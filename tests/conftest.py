"""Shared test fixtures for the dispatch core."""
import shutil
import tempfile
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from models.schemas import Message, MessageClass


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedTime:
    """Wall-clock provider for quota windows."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fixed_time() -> FixedTime:
    return FixedTime(datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc))


@pytest.fixture
def data_dir():
    d = tempfile.mkdtemp(prefix="dispatch_test_")
    yield d
    shutil.rmtree(d, ignore_errors=True)


@pytest_asyncio.fixture
async def database(data_dir):
    from database.session import Database
    db = Database(f"sqlite:///{data_dir}/dispatch.db")
    await db.init()
    yield db
    await db.close()


@pytest.fixture
def email_payload() -> dict:
    return {
        "to": "priya@example.com",
        "subject": "Your invoice",
        "content": "Invoice INV-301 is attached.",
    }


@pytest.fixture
def sms_payload() -> dict:
    return {
        "to": "+14155550123",
        "from": "+14155550999",
        "subject": "Reminder",
        "body": "Your appointment is tomorrow at 10:00.",
    }


@pytest.fixture
def email_message() -> Message:
    return Message(
        message_class=MessageClass.EMAIL,
        tenant_id="acme",
        recipient="priya@example.com",
        subject="Your invoice",
        body="Invoice INV-301 is attached.",
    )


@pytest.fixture
def sms_message() -> Message:
    return Message(
        message_class=MessageClass.SMS,
        tenant_id="acme",
        recipient="+14155550123",
        sender="+14155550999",
        subject="Reminder",
        body="Your appointment is tomorrow at 10:00.",
    )
