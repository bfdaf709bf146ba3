import datetime
import pytest
import fakeredis
import matchstakes.storage as storage
import matchstakes.services.state as state
from matchstakes.clock import FixedClock
from matchstakes.notifications import InMemoryNotificationBus
from matchstakes.services.invitations import InvitationSettlement


@pytest.fixture(autouse=True)
def use_sqlite(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "DB_FILE", tmp_path / "matchstakes.db")
    monkeypatch.setattr(storage, "DATABASE_URL", "")
    monkeypatch.setattr(storage, "IS_PG", False)
    monkeypatch.setattr(storage, "_redis", None)
    state.reset()
    yield
    state.reset()


@pytest.fixture
def fake_redis(monkeypatch):
    client = fakeredis.FakeRedis()
    monkeypatch.setattr(storage, "_redis", client)
    return client


@pytest.fixture
def clock():
    return FixedClock(datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc))


@pytest.fixture
def bus():
    return InMemoryNotificationBus()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(received.append)
    return received


@pytest.fixture
def settlement(clock, bus):
    return InvitationSettlement(
        storage.StorageTokenLedger(),
        storage.StorageInvitationStore(),
        storage.StorageSessionFactory(),
        bus=bus,
        clock=clock,
        invitation_ttl=datetime.timedelta(hours=48),
        transaction=storage.transaction,
    )


def fund(player_id, regular=0, premium=0):
    """Give a player a starting balance."""
    if regular:
        storage.credit_tokens(player_id, "regular", regular, "purchase")
    if premium:
        storage.credit_tokens(player_id, "premium", premium, "purchase")
    return storage.get_balance(player_id)


def fetch_balance_row(player_id):
    """Return the raw ``token_balances`` row for ``player_id``."""
    conn = storage._connect()
    try:
        return conn.cursor().execute(
            "SELECT * FROM token_balances WHERE player_id = ?", (player_id,)
        ).fetchone()
    finally:
        conn.close()
