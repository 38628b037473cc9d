# tests/conftest.py
"""Pytest configuration and fixtures"""
import pytest
import pytest_asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.errors import ChannelError  # noqa: E402
from app.core.dispatch.services import build_services  # noqa: E402
from app.infra.memory_dispatch_repo import InMemoryDispatchRepository  # noqa: E402

LINK_SECRET = "test-link-secret"
BASE_URL = "https://dispatch.test"


class FakeClock:
    """Settable ``now_fn`` for the services."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChannel:
    """Records every outbound message; sends to ``failing`` addresses raise ChannelError."""

    def __init__(self):
        self.sent: list[dict] = []
        self.acks: list[dict] = []
        self.failing: set[str] = set()

    def _record(self, kind: str, address: str, body: str, **extra) -> None:
        if address in self.failing:
            raise ChannelError(f"send to {address} failed", retryable=True)
        self.sent.append({"kind": kind, "address": address, "body": body, **extra})

    async def send_text(self, address, body):
        self._record("text", address, body)

    async def send_with_two_actions(self, address, body, first, second):
        self._record("offer", address, body, first=first, second=second)

    async def send_with_link(self, address, body, label, url):
        self._record("link", address, body, label=label, url=url)

    async def acknowledge(self, callback_id, text=None, show_alert=False):
        self.acks.append({"callback_id": callback_id, "text": text, "show_alert": show_alert})

    # --- helpers for assertions ---

    def to(self, address: str) -> list[dict]:
        return [m for m in self.sent if m["address"] == address]

    def offers(self) -> list[dict]:
        return [m for m in self.sent if m["kind"] == "offer"]

    def offer_token(self, address: str, action: str = "accept") -> str:
        """Token from the most recent offer sent to ``address``."""
        offer = [m for m in self.to(address) if m["kind"] == "offer"][-1]
        button = offer["first"] if action == "accept" else offer["second"]
        return button.data.split(":", 1)[1]


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 5, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo():
    return InMemoryDispatchRepository()


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def services(repo, channel, clock):
    return build_services(
        repo,
        channel,
        response_minutes=10,
        reminder_hours_ahead=24,
        base_url=BASE_URL,
        link_secret=LINK_SECRET,
        now_fn=clock,
    )


class World:
    """A landlord with one property and four cleaners."""

    landlord = None
    prop = None
    alice = None  # primary
    bob = None  # priority 1
    carol = None  # landlord fallback, not linked to the property
    dave = None  # inactive, priority 0


@pytest_asyncio.fixture
async def world(repo):
    w = World()
    w.landlord = await repo.create_landlord("Lena Landlord", chat_id="chat-landlord")
    w.prop = await repo.create_property(w.landlord.id, "Sea View 4B", "1 Beach Rd")
    w.alice = await repo.create_cleaner(w.landlord.id, "Alice", chat_id="chat-alice")
    w.bob = await repo.create_cleaner(w.landlord.id, "Bob", chat_id="chat-bob")
    w.carol = await repo.create_cleaner(w.landlord.id, "Carol", chat_id="chat-carol")
    w.dave = await repo.create_cleaner(w.landlord.id, "Dave", chat_id="chat-dave", active=False)
    await repo.set_property_cleaners(
        w.prop.id,
        [(w.bob.id, 1, False), (w.alice.id, 5, True), (w.dave.id, 0, False)],
    )
    return w


@pytest_asyncio.fixture
async def job(repo, world, clock):
    start = clock.now + timedelta(hours=6)
    return await repo.create_job(world.landlord.id, world.prop.id, start, start + timedelta(hours=3))
