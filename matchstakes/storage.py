import json
import datetime
import pickle
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Dict, Generator, Iterable
from contextlib import contextmanager
from urllib.parse import urlparse

import psycopg2
import psycopg2.extras


from .config import (
    DB_FILE,
    get_database_url,
    get_redis_url,
    get_cache_ttl,
)
from .models import (
    Invitation,
    TokenBalance,
    ACCEPTED,
    REGULAR,
    PREMIUM,
)
from .services.exceptions import InsufficientBalance


# ``DB_FILE`` is imported from ``matchstakes.config`` so tests can monkeypatch it.
DATABASE_URL = get_database_url()
IS_PG = DATABASE_URL.startswith("postgres")

# Optional Redis cache
REDIS_URL = get_redis_url()
CACHE_TTL = get_cache_ttl()
_redis = None
if REDIS_URL:
    try:
        import redis  # type: ignore
        _redis = redis.from_url(REDIS_URL)
    except Exception:
        _redis = None

_BALANCE_COLUMNS = {REGULAR: "regular_tokens", PREMIUM: "premium_tokens"}

# Columns a status transition may set alongside the new status
_INVITATION_EXTRA_COLUMNS = {
    "responded_at",
    "session_id",
    "invitee_escrow",
    "invitee_premium_escrow",
}


class _PgCursor:
    def __init__(self, cursor):
        self._c = cursor

    def execute(self, query, params=None):
        q = query.replace("?", "%s")
        self._c.execute(q, params or [])
        return self

    def fetchone(self):
        return self._c.fetchone()

    def fetchall(self):
        return self._c.fetchall()

    def __iter__(self):
        return iter(self._c)

    def __getattr__(self, name):
        return getattr(self._c, name)


class _PgConnection:
    def __init__(self, conn):
        self._conn = conn

    def cursor(self, *a, **kw):
        return _PgCursor(self._conn.cursor(*a, **kw))

    def execute(self, query, params=None):
        return self.cursor().execute(query, params)

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()

    def __getattr__(self, name):
        return getattr(self._conn, name)


# balances touched inside an open transaction, keyed by connection id, so
# their cache entries are dropped only once the write is committed
_pending_balances: Dict[int, set[str]] = {}
_pending_lock = threading.Lock()


def _balance_key(player_id: str) -> str:
    return f"matchstakes:balance:{player_id}"


def _generation_key(player_id: str) -> str:
    return f"matchstakes:balance_gen:{player_id}"


def _load_cache(key: str):
    if not _redis:
        return None
    try:
        data = _redis.get(key)
        if data is not None:
            return pickle.loads(data)
    except Exception:
        return None
    return None


def _cache_generation(player_id: str):
    if not _redis:
        return None
    try:
        return _redis.get(_generation_key(player_id))
    except Exception:
        return None


def _save_balance_cache(balance: TokenBalance, generation) -> None:
    """Cache ``balance`` unless a write committed since ``generation`` was read."""
    if not _redis:
        return
    gen_key = _generation_key(balance.player_id)
    try:
        with _redis.pipeline() as pipe:
            pipe.watch(gen_key)
            if pipe.get(gen_key) != generation:
                return
            pipe.multi()
            pipe.setex(_balance_key(balance.player_id), CACHE_TTL, pickle.dumps(balance))
            pipe.execute()
    except Exception:
        # WatchError included: a concurrent write wins
        pass


def _drop_balance_cache(player_id: str) -> None:
    if not _redis:
        return
    try:
        _redis.incr(_generation_key(player_id))
        _redis.delete(_balance_key(player_id))
    except Exception:
        pass


def _mark_balance_dirty(conn, player_id: str, close: bool) -> None:
    if close:
        _drop_balance_cache(player_id)
        return
    with _pending_lock:
        _pending_balances.setdefault(id(conn), set()).add(player_id)


def _refresh_after_write(conn) -> None:
    """Drop cached balances written by ``conn`` now that it committed."""
    with _pending_lock:
        players = _pending_balances.pop(id(conn), set())
    for pid in players:
        _drop_balance_cache(pid)


def invalidate_cache() -> None:
    """Forget every cached balance."""
    with _pending_lock:
        _pending_balances.clear()
    if not _redis:
        return
    try:
        for key in _redis.scan_iter("matchstakes:balance:*"):
            _redis.delete(key)
    except Exception:
        pass


def _connect():
    """Return a DB connection based on ``DATABASE_URL``."""
    if IS_PG:
        conn = psycopg2.connect(DATABASE_URL, cursor_factory=psycopg2.extras.RealDictCursor)
        _init_schema(conn)
        return _PgConnection(conn)
    else:
        path = DB_FILE
        if DATABASE_URL.startswith("sqlite://"):
            path = Path(urlparse(DATABASE_URL).path)
        conn = sqlite3.connect(path, timeout=30)
        conn.row_factory = sqlite3.Row
        _init_schema(conn)
        return conn


@contextmanager
def transaction() -> Generator[object, None, None]:
    """Context manager yielding a connection with an active transaction."""
    conn = _connect()
    try:
        yield conn
        conn.commit()
        _refresh_after_write(conn)
    except Exception:
        conn.rollback()
        with _pending_lock:
            _pending_balances.pop(id(conn), None)
        raise
    finally:
        conn.close()


def _init_schema(conn) -> None:
    cur = conn.cursor()
    serial = "SERIAL PRIMARY KEY" if IS_PG else "INTEGER PRIMARY KEY AUTOINCREMENT"
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS token_balances (
            player_id TEXT PRIMARY KEY,
            regular_tokens INTEGER NOT NULL DEFAULT 0 CHECK (regular_tokens >= 0),
            premium_tokens INTEGER NOT NULL DEFAULT 0 CHECK (premium_tokens >= 0),
            lifetime_earned INTEGER NOT NULL DEFAULT 0,
            version INTEGER NOT NULL DEFAULT 0
        )
        """
    )
    cur.execute(
        f"""
        CREATE TABLE IF NOT EXISTS token_transactions (
            id {serial},
            player_id TEXT NOT NULL,
            token_type TEXT NOT NULL,
            amount INTEGER NOT NULL,
            reason TEXT,
            created TEXT NOT NULL
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS invitations (
            id TEXT PRIMARY KEY,
            inviter_id TEXT NOT NULL,
            invitee_id TEXT,
            invitee_name TEXT,
            category TEXT NOT NULL,
            invitation_type TEXT,
            status TEXT NOT NULL,
            message TEXT,
            stakes_tokens INTEGER NOT NULL DEFAULT 0,
            stakes_premium_tokens INTEGER NOT NULL DEFAULT 0,
            is_challenge INTEGER NOT NULL DEFAULT 0,
            session_data TEXT,
            session_id TEXT,
            created_at TEXT,
            expires_at TEXT,
            responded_at TEXT,
            inviter_escrow INTEGER NOT NULL DEFAULT 0,
            inviter_premium_escrow INTEGER NOT NULL DEFAULT 0,
            invitee_escrow INTEGER NOT NULL DEFAULT 0,
            invitee_premium_escrow INTEGER NOT NULL DEFAULT 0,
            settled_at TEXT,
            winner_id TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            participants TEXT NOT NULL,
            metadata TEXT,
            created TEXT NOT NULL
        )
        """
    )
    conn.commit()


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _ts(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value) -> datetime.datetime | None:
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        return value
    return datetime.datetime.fromisoformat(value)


def _balance_column(token_type: str) -> str:
    if token_type not in _BALANCE_COLUMNS:
        raise ValueError(f"Unknown token type '{token_type}'")
    return _BALANCE_COLUMNS[token_type]


def _check_amount(amount: int) -> None:
    if not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"Token amount must be a positive integer, got {amount!r}")


# --- Token balances ---

def _read_balance(cur, player_id: str) -> TokenBalance:
    row = cur.execute(
        "SELECT regular_tokens, premium_tokens, lifetime_earned, version FROM token_balances WHERE player_id = ?",
        (player_id,),
    ).fetchone()
    if row is None:
        return TokenBalance(player_id)
    return TokenBalance(
        player_id,
        regular_tokens=row["regular_tokens"],
        premium_tokens=row["premium_tokens"],
        lifetime_earned=row["lifetime_earned"],
        version=row["version"],
    )


def _record_transaction(cur, player_id: str, token_type: str, amount: int, reason: str) -> None:
    cur.execute(
        "INSERT INTO token_transactions(player_id, token_type, amount, reason, created) VALUES (?,?,?,?,?)",
        (player_id, token_type, amount, reason, _now()),
    )


def get_balance_record(player_id: str, conn=None) -> TokenBalance:
    """Read a balance straight from the database."""
    close = conn is None
    if conn is None:
        conn = _connect()
    try:
        return _read_balance(conn.cursor(), player_id)
    finally:
        if close:
            conn.close()


def get_balance(player_id: str) -> TokenBalance:
    """Return a player's balance using the Redis cache when available.

    Players without a balance row read as an all-zero balance. The cache is
    only filled if no write committed between the database read and the
    save.
    """
    cached = _load_cache(_balance_key(player_id))
    if cached is not None:
        return cached
    generation = _cache_generation(player_id)
    balance = get_balance_record(player_id)
    _save_balance_cache(balance, generation)
    return balance


def debit_tokens(
    player_id: str,
    token_type: str,
    amount: int,
    reason: str,
    conn=None,
) -> TokenBalance:
    """Remove ``amount`` tokens, refusing to let the balance go negative.

    The balance check and the write are one conditional ``UPDATE`` so two
    concurrent debits can never both pass against the same tokens.
    """
    column = _balance_column(token_type)
    _check_amount(amount)
    close = conn is None
    if conn is None:
        conn = _connect()
    try:
        cur = conn.cursor()
        cur.execute(
            f"UPDATE token_balances SET {column} = {column} - ?, version = version + 1 "
            f"WHERE player_id = ? AND {column} >= ?",
            (amount, player_id, amount),
        )
        if cur.rowcount == 0:
            current = _read_balance(cur, player_id)
            raise InsufficientBalance(player_id, amount, current.amount(token_type), token_type)
        _record_transaction(cur, player_id, token_type, -amount, reason)
        balance = _read_balance(cur, player_id)
        if close:
            conn.commit()
    except Exception:
        if close:
            conn.rollback()
        raise
    finally:
        if close:
            conn.close()
    _mark_balance_dirty(conn, player_id, close)
    return balance


def credit_tokens(
    player_id: str,
    token_type: str,
    amount: int,
    reason: str,
    earned: bool = True,
    conn=None,
) -> TokenBalance:
    """Add ``amount`` tokens, creating the balance row on first use.

    ``earned`` credits also count towards ``lifetime_earned``; refunds of
    escrowed stakes pass ``earned=False``.
    """
    column = _balance_column(token_type)
    _check_amount(amount)
    earned_amount = amount if earned else 0
    close = conn is None
    if conn is None:
        conn = _connect()
    try:
        cur = conn.cursor()
        cur.execute(
            f"""
            INSERT INTO token_balances(player_id, {column}, lifetime_earned, version)
            VALUES (?,?,?,1)
            ON CONFLICT (player_id) DO UPDATE SET
                {column} = token_balances.{column} + excluded.{column},
                lifetime_earned = token_balances.lifetime_earned + excluded.lifetime_earned,
                version = token_balances.version + 1
            """,
            (player_id, amount, earned_amount),
        )
        _record_transaction(cur, player_id, token_type, amount, reason)
        balance = _read_balance(cur, player_id)
        if close:
            conn.commit()
    except Exception:
        if close:
            conn.rollback()
        raise
    finally:
        if close:
            conn.close()
    _mark_balance_dirty(conn, player_id, close)
    return balance


def list_token_transactions(player_id: str) -> list[dict[str, object]]:
    """Return a player's token movements, oldest first."""
    conn = _connect()
    try:
        rows = conn.cursor().execute(
            "SELECT token_type, amount, reason, created FROM token_transactions WHERE player_id = ? ORDER BY id",
            (player_id,),
        ).fetchall()
    finally:
        conn.close()
    return [
        {
            "token_type": r["token_type"],
            "amount": r["amount"],
            "reason": r["reason"],
            "created": r["created"],
        }
        for r in rows
    ]


# --- Invitations ---

def _row_to_invitation(row) -> Invitation:
    return Invitation(
        id=row["id"],
        inviter_id=row["inviter_id"],
        invitee_id=row["invitee_id"],
        invitee_name=row["invitee_name"],
        category=row["category"],
        invitation_type=row["invitation_type"] or "singles",
        status=row["status"],
        message=row["message"],
        stakes_tokens=row["stakes_tokens"],
        stakes_premium_tokens=row["stakes_premium_tokens"],
        is_challenge=bool(row["is_challenge"]),
        session_data=json.loads(row["session_data"] or "{}"),
        session_id=row["session_id"],
        created_at=_parse_ts(row["created_at"]),
        expires_at=_parse_ts(row["expires_at"]),
        responded_at=_parse_ts(row["responded_at"]),
        inviter_escrow=row["inviter_escrow"],
        inviter_premium_escrow=row["inviter_premium_escrow"],
        invitee_escrow=row["invitee_escrow"],
        invitee_premium_escrow=row["invitee_premium_escrow"],
        settled_at=_parse_ts(row["settled_at"]),
        winner_id=row["winner_id"],
    )


def create_invitation_record(invitation: Invitation, conn=None) -> str:
    """Insert a new invitation, assigning an id when it has none."""
    if invitation.id is None:
        invitation.id = uuid.uuid4().hex
    close = conn is None
    if conn is None:
        conn = _connect()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO invitations(
            id, inviter_id, invitee_id, invitee_name, category, invitation_type,
            status, message, stakes_tokens, stakes_premium_tokens, is_challenge,
            session_data, session_id, created_at, expires_at, responded_at,
            inviter_escrow, inviter_premium_escrow, invitee_escrow,
            invitee_premium_escrow, settled_at, winner_id
        ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            invitation.id,
            invitation.inviter_id,
            invitation.invitee_id,
            invitation.invitee_name,
            invitation.category,
            invitation.invitation_type,
            invitation.status,
            invitation.message,
            invitation.stakes_tokens,
            invitation.stakes_premium_tokens,
            int(invitation.is_challenge),
            json.dumps(invitation.session_data),
            invitation.session_id,
            _ts(invitation.created_at),
            _ts(invitation.expires_at),
            _ts(invitation.responded_at),
            invitation.inviter_escrow,
            invitation.inviter_premium_escrow,
            invitation.invitee_escrow,
            invitation.invitee_premium_escrow,
            _ts(invitation.settled_at),
            invitation.winner_id,
        ),
    )
    if close:
        conn.commit()
        conn.close()
    return invitation.id


def get_invitation_record(invitation_id: str) -> Invitation | None:
    conn = _connect()
    try:
        row = conn.cursor().execute(
            "SELECT * FROM invitations WHERE id = ?", (invitation_id,)
        ).fetchone()
    finally:
        conn.close()
    return _row_to_invitation(row) if row else None


def list_player_invitations(player_id: str, status: str | None = None) -> list[Invitation]:
    """Return invitations sent or received by ``player_id``, newest first."""
    query = "SELECT * FROM invitations WHERE (inviter_id = ? OR invitee_id = ?)"
    params: list[object] = [player_id, player_id]
    if status is not None:
        query += " AND status = ?"
        params.append(status)
    query += " ORDER BY created_at DESC"
    conn = _connect()
    try:
        rows = conn.cursor().execute(query, params).fetchall()
    finally:
        conn.close()
    return [_row_to_invitation(r) for r in rows]


def compare_and_set_invitation_status(
    invitation_id: str,
    expected: str,
    new: str,
    extra: dict[str, object] | None = None,
    conn=None,
) -> bool:
    """Move an invitation from ``expected`` to ``new`` status.

    Returns ``False`` without writing when the stored status is no longer
    ``expected``. ``extra`` may set the response timestamp, the session id
    and the invitee escrow in the same statement.
    """
    extra = dict(extra or {})
    unknown = set(extra) - _INVITATION_EXTRA_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update invitation columns {sorted(unknown)}")
    if isinstance(extra.get("responded_at"), datetime.datetime):
        extra["responded_at"] = _ts(extra["responded_at"])
    columns = ["status = ?"] + [f"{c} = ?" for c in extra]
    params = [new, *extra.values(), invitation_id, expected]
    close = conn is None
    if conn is None:
        conn = _connect()
    cur = conn.cursor()
    cur.execute(
        f"UPDATE invitations SET {', '.join(columns)} WHERE id = ? AND status = ?",
        params,
    )
    changed = cur.rowcount == 1
    if close:
        conn.commit()
        conn.close()
    return changed


def claim_invitation_settlement(
    invitation_id: str,
    winner_id: str,
    settled_at: datetime.datetime,
    conn=None,
) -> bool:
    """Mark an accepted invitation settled; ``False`` if already settled."""
    close = conn is None
    if conn is None:
        conn = _connect()
    cur = conn.cursor()
    cur.execute(
        "UPDATE invitations SET settled_at = ?, winner_id = ? "
        "WHERE id = ? AND status = ? AND settled_at IS NULL",
        (_ts(settled_at), winner_id, invitation_id, ACCEPTED),
    )
    claimed = cur.rowcount == 1
    if close:
        conn.commit()
        conn.close()
    return claimed


# --- Sessions ---

def create_session_record(
    kind: str,
    participants: Iterable[str],
    metadata: dict[str, object] | None = None,
    conn=None,
) -> str:
    session_id = uuid.uuid4().hex
    close = conn is None
    if conn is None:
        conn = _connect()
    cur = conn.cursor()
    cur.execute(
        "INSERT INTO sessions(id, kind, participants, metadata, created) VALUES (?,?,?,?,?)",
        (session_id, kind, json.dumps(list(participants)), json.dumps(metadata or {}), _now()),
    )
    if close:
        conn.commit()
        conn.close()
    return session_id


def get_session_record(session_id: str) -> dict[str, object] | None:
    conn = _connect()
    try:
        row = conn.cursor().execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
    finally:
        conn.close()
    if row is None:
        return None
    return {
        "id": row["id"],
        "kind": row["kind"],
        "participants": json.loads(row["participants"]),
        "metadata": json.loads(row["metadata"] or "{}"),
        "created": row["created"],
    }


def delete_session_record(session_id: str, conn=None) -> None:
    close = conn is None
    if conn is None:
        conn = _connect()
    conn.cursor().execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    if close:
        conn.commit()
        conn.close()


# --- Collaborators backed by this module ---

class StorageTokenLedger:
    """``TokenLedger`` over the ``token_balances`` table."""

    def get_balance(self, player_id: str) -> TokenBalance:
        return get_balance(player_id)

    def debit(self, player_id: str, token_type: str, amount: int, reason: str, conn=None) -> TokenBalance:
        return debit_tokens(player_id, token_type, amount, reason, conn=conn)

    def credit(
        self,
        player_id: str,
        token_type: str,
        amount: int,
        reason: str,
        earned: bool = True,
        conn=None,
    ) -> TokenBalance:
        return credit_tokens(player_id, token_type, amount, reason, earned=earned, conn=conn)


class StorageInvitationStore:
    """``InvitationStore`` over the ``invitations`` table."""

    def get(self, invitation_id: str) -> Invitation | None:
        return get_invitation_record(invitation_id)

    def add(self, invitation: Invitation) -> str:
        return create_invitation_record(invitation)

    def compare_and_set_status(
        self,
        invitation_id: str,
        expected: str,
        new: str,
        extra: dict[str, object] | None = None,
        conn=None,
    ) -> bool:
        return compare_and_set_invitation_status(invitation_id, expected, new, extra, conn=conn)

    def claim_settlement(
        self, invitation_id: str, winner_id: str, settled_at: datetime.datetime, conn=None
    ) -> bool:
        return claim_invitation_settlement(invitation_id, winner_id, settled_at, conn=conn)

    def list_for_player(self, player_id: str, status: str | None = None) -> list[Invitation]:
        return list_player_invitations(player_id, status)


class StorageSessionFactory:
    """``SessionFactory`` writing rows to the ``sessions`` table."""

    def create_session(
        self,
        kind: str,
        participants: Iterable[str],
        metadata: dict[str, object] | None = None,
    ) -> str:
        return create_session_record(kind, participants, metadata)

    def discard_session(self, session_id: str) -> None:
        delete_session_record(session_id)


__all__ = [
    "transaction",
    "invalidate_cache",
    "get_balance",
    "get_balance_record",
    "debit_tokens",
    "credit_tokens",
    "list_token_transactions",
    "create_invitation_record",
    "get_invitation_record",
    "list_player_invitations",
    "compare_and_set_invitation_status",
    "claim_invitation_settlement",
    "create_session_record",
    "get_session_record",
    "delete_session_record",
    "StorageTokenLedger",
    "StorageInvitationStore",
    "StorageSessionFactory",
]
