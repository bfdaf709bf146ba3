import datetime
import pickle
import pytest
import matchstakes.storage as storage
from matchstakes.models import Invitation, TokenBalance
from matchstakes.services.exceptions import InsufficientBalance
from conftest import fetch_balance_row


def test_missing_player_has_empty_balance():
    balance = storage.get_balance("ghost")
    assert balance == TokenBalance("ghost")


def test_credit_and_debit_are_recorded():
    storage.credit_tokens("p1", "regular", 100, "purchase")
    storage.credit_tokens("p1", "premium", 5, "gift", earned=False)
    balance = storage.debit_tokens("p1", "regular", 40, "challenge_stakes")

    assert balance.regular_tokens == 60
    assert balance.premium_tokens == 5
    assert balance.lifetime_earned == 100
    assert balance.version == 3

    txs = storage.list_token_transactions("p1")
    assert [t["amount"] for t in txs] == [100, 5, -40]
    assert txs[-1]["reason"] == "challenge_stakes"


def test_debit_never_goes_negative():
    storage.credit_tokens("p1", "regular", 10, "purchase")
    with pytest.raises(InsufficientBalance) as exc:
        storage.debit_tokens("p1", "regular", 11, "challenge_stakes")
    assert exc.value.available == 10
    assert exc.value.needed == 11
    assert exc.value.status_code == 400
    assert storage.get_balance("p1").regular_tokens == 10
    assert len(storage.list_token_transactions("p1")) == 1

    with pytest.raises(InsufficientBalance):
        storage.debit_tokens("nobody", "premium", 1, "challenge_stakes")


def test_invalid_amounts_rejected():
    with pytest.raises(ValueError):
        storage.credit_tokens("p1", "regular", 0, "purchase")
    with pytest.raises(ValueError):
        storage.credit_tokens("p1", "gold", 5, "purchase")


def test_transaction_rolls_back_all_writes():
    storage.credit_tokens("p1", "regular", 50, "purchase")
    with pytest.raises(InsufficientBalance):
        with storage.transaction() as conn:
            storage.debit_tokens("p1", "regular", 30, "a", conn=conn)
            storage.debit_tokens("p1", "regular", 30, "b", conn=conn)
    assert storage.get_balance_record("p1").regular_tokens == 50
    assert fetch_balance_row("p1")["version"] == 1


def test_balance_cache_is_dropped_after_writes(fake_redis):
    storage.credit_tokens("p1", "regular", 20, "purchase")
    assert storage.get_balance("p1").regular_tokens == 20
    cached = pickle.loads(fake_redis.get("matchstakes:balance:p1"))
    assert cached.regular_tokens == 20

    storage.debit_tokens("p1", "regular", 5, "challenge_stakes")
    assert fake_redis.get("matchstakes:balance:p1") is None
    assert storage.get_balance("p1").regular_tokens == 15

    with storage.transaction() as conn:
        storage.credit_tokens("p1", "regular", 5, "refund", earned=False, conn=conn)
    assert storage.get_balance("p1").regular_tokens == 20

    storage.invalidate_cache()
    assert fake_redis.get("matchstakes:balance:p1") is None


def test_balance_read_racing_a_write_is_not_cached(fake_redis, monkeypatch):
    storage.credit_tokens("p1", "regular", 20, "purchase")
    read = storage.get_balance_record

    def read_then_commit_purchase(player_id, conn=None):
        balance = read(player_id, conn)
        storage.credit_tokens(player_id, "regular", 5, "purchase")
        return balance

    monkeypatch.setattr(storage, "get_balance_record", read_then_commit_purchase)
    assert storage.get_balance("p1").regular_tokens == 20
    assert fake_redis.get("matchstakes:balance:p1") is None

    monkeypatch.setattr(storage, "get_balance_record", read)
    assert storage.get_balance("p1").regular_tokens == 25
    assert pickle.loads(fake_redis.get("matchstakes:balance:p1")).regular_tokens == 25


def test_invitation_round_trip_and_compare_and_set():
    created = datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc)
    inv = Invitation(
        inviter_id="a",
        invitee_id="b",
        is_challenge=True,
        stakes_tokens=25,
        session_data={"court": 3},
        created_at=created,
        expires_at=created + datetime.timedelta(hours=48),
        inviter_escrow=25,
    )
    inv_id = storage.create_invitation_record(inv)
    loaded = storage.get_invitation_record(inv_id)
    assert loaded == inv

    assert storage.compare_and_set_invitation_status(
        inv_id, "pending", "accepted", {"session_id": "s1", "invitee_escrow": 25}
    )
    assert not storage.compare_and_set_invitation_status(inv_id, "pending", "declined")
    loaded = storage.get_invitation_record(inv_id)
    assert loaded.status == "accepted"
    assert loaded.session_id == "s1"
    assert loaded.invitee_escrow == 25

    with pytest.raises(ValueError):
        storage.compare_and_set_invitation_status(inv_id, "accepted", "pending", {"stakes_tokens": 0})

    assert storage.claim_invitation_settlement(inv_id, "a", created)
    assert not storage.claim_invitation_settlement(inv_id, "b", created)
    assert storage.get_invitation_record(inv_id).winner_id == "a"


def test_list_player_invitations():
    now = datetime.datetime(2024, 6, 1, tzinfo=datetime.timezone.utc)
    for i, (inviter, invitee) in enumerate([("a", "b"), ("c", "a"), ("b", "c")]):
        storage.create_invitation_record(
            Invitation(inviter, invitee, created_at=now + datetime.timedelta(minutes=i))
        )
    invs = storage.list_player_invitations("a")
    assert [(i.inviter_id, i.invitee_id) for i in invs] == [("c", "a"), ("a", "b")]
    assert storage.list_player_invitations("a", status="accepted") == []


def test_sessions():
    sid = storage.create_session_record("match", ["a", "b"], {"invitation_id": "x"})
    record = storage.get_session_record(sid)
    assert record["participants"] == ["a", "b"]
    assert record["metadata"] == {"invitation_id": "x"}
    storage.delete_session_record(sid)
    assert storage.get_session_record(sid) is None
