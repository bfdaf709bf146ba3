import datetime
from concurrent.futures import ThreadPoolExecutor
import matchstakes.storage as storage
from matchstakes.services.exceptions import InsufficientBalance, InvalidStateTransition
from matchstakes.services.invitations import InvitationSettlement
from conftest import fund


def _engine(clock):
    return InvitationSettlement(
        storage.StorageTokenLedger(),
        storage.StorageInvitationStore(),
        storage.StorageSessionFactory(),
        clock=clock,
        invitation_ttl=datetime.timedelta(hours=48),
        transaction=storage.transaction,
    )


def _attempt(fn, *args):
    try:
        fn(*args)
        return "ok"
    except InvalidStateTransition:
        return "conflict"
    except InsufficientBalance:
        return "insufficient"


def test_concurrent_debits_never_overdraw():
    fund("p1", regular=100)

    def spend(_):
        return _attempt(storage.debit_tokens, "p1", "regular", 20, "challenge_stakes")

    with ThreadPoolExecutor(max_workers=8) as exc:
        results = list(exc.map(spend, range(10)))

    assert results.count("ok") == 5
    assert results.count("insufficient") == 5
    assert storage.get_balance_record("p1").regular_tokens == 0


def test_double_accept_from_separate_engines(clock):
    fund("a", regular=200)
    fund("b", regular=300)
    engines = [_engine(clock), _engine(clock)]
    inv = engines[0].create_invitation("a", "b", stakes_tokens=100, is_challenge=True)

    with ThreadPoolExecutor(max_workers=2) as exc:
        futures = [exc.submit(_attempt, e.accept, inv.id, "b") for e in engines]
        results = [f.result() for f in futures]

    assert sorted(results) == ["conflict", "ok"]
    assert storage.get_balance_record("b").regular_tokens == 200
    record = storage.get_invitation_record(inv.id)
    assert record.status == "accepted"
    assert storage.get_session_record(record.session_id) is not None


def test_accept_and_cancel_race_settles_one_way(clock):
    fund("a", regular=200)
    fund("b", regular=200)
    engines = [_engine(clock), _engine(clock)]
    inv = engines[0].create_invitation("a", "b", stakes_tokens=100, is_challenge=True)

    with ThreadPoolExecutor(max_workers=2) as exc:
        accept = exc.submit(_attempt, engines[0].accept, inv.id, "b")
        cancel = exc.submit(_attempt, engines[1].cancel, inv.id, "a")
        results = {accept.result(), cancel.result()}

    assert results == {"ok", "conflict"}
    status = storage.get_invitation_record(inv.id).status
    a_tokens = storage.get_balance_record("a").regular_tokens
    b_tokens = storage.get_balance_record("b").regular_tokens
    if status == "accepted":
        assert (a_tokens, b_tokens) == (100, 100)
    else:
        assert status == "canceled"
        assert (a_tokens, b_tokens) == (200, 200)


def test_same_engine_serializes_accepts(settlement):
    fund("a", regular=200)
    fund("b", regular=500)
    inv = settlement.create_invitation("a", "b", stakes_tokens=100, is_challenge=True)

    with ThreadPoolExecutor(max_workers=4) as exc:
        results = list(exc.map(lambda _: _attempt(settlement.accept, inv.id, "b"), range(4)))

    assert results.count("ok") == 1
    assert results.count("conflict") == 3
    assert storage.get_balance_record("b").regular_tokens == 400
