from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from reportguard.storage.models import RefreshToken
from reportguard.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConn:
    """Records statements; answers from ``responses`` keyed by SQL fragment."""

    def __init__(self, responses):
        self.responses = responses
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        for fragment, cursor in self.responses.items():
            if fragment in sql:
                return cursor
        return FakeCursor()

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(responses):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConn(responses)
    store.pool = FakePool(conn)
    return store, conn


def _token_row(token="old", **overrides):
    row = {
        "token": token,
        "user_id": "u1",
        "session_id": "s1",
        "issued_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "created_by_ip": None,
        "revoked": False,
        "revoked_at": None,
        "revoked_by_ip": None,
        "reason_revoked": None,
        "replaced_by_token": None,
    }
    row.update(overrides)
    return row


def _new_record():
    return RefreshToken(
        token="new", user_id="u1", session_id="s1", issued_at=NOW, expires_at=NOW + timedelta(days=7)
    )


class TestRotateRefreshToken:
    def test_rotation_locks_inserts_then_links(self):
        store, conn = _store({"FOR UPDATE": FakeCursor([_token_row()])})

        assert store.rotate_refresh_token(
            "old", _new_record(), revoked_at=NOW, revoked_by_ip="10.0.0.1", reason="Token refresh"
        )

        sql = [statement for statement, _ in conn.statements]
        assert conn.transactions == 1
        assert "FOR UPDATE" in sql[0]
        assert sql[1].startswith("INSERT INTO refresh_token")
        assert sql[2].startswith("UPDATE refresh_token")
        assert conn.statements[2][1][3] == "new"

    def test_rotation_refused_for_revoked_token(self):
        store, conn = _store({"FOR UPDATE": FakeCursor([_token_row(revoked=True)])})

        assert not store.rotate_refresh_token(
            "old", _new_record(), revoked_at=NOW, revoked_by_ip=None, reason="Token refresh"
        )
        assert len(conn.statements) == 1

    def test_rotation_refused_for_missing_token(self):
        store, _ = _store({})

        assert not store.rotate_refresh_token(
            "old", _new_record(), revoked_at=NOW, revoked_by_ip=None, reason="Token refresh"
        )


class TestConditionalUpdates:
    def test_revoke_session_is_conditional(self):
        store, conn = _store({"UPDATE user_session": FakeCursor(rowcount=0)})

        assert store.revoke_session("s1", reason="User logout", revoked_at=NOW) is False
        assert "AND is_active AND NOT is_revoked" in conn.statements[0][0]

    def test_revoke_refresh_token_reports_change(self):
        store, conn = _store({"UPDATE refresh_token": FakeCursor(rowcount=1)})

        assert store.revoke_refresh_token("t", revoked_at=NOW, revoked_by_ip=None, reason="x")
        assert "AND NOT revoked" in conn.statements[0][0]

    def test_mfa_failure_uses_shared_transition(self):
        locked_row = {
            "user_id": "u1",
            "encrypted_secret": "enc",
            "encrypted_backup_codes": [],
            "created_at": NOW,
            "enabled_at": NOW,
            "failed_attempts": 4,
            "locked_until": None,
        }
        store, conn = _store(
            {
                "FOR UPDATE": FakeCursor([locked_row]),
                "UPDATE user_mfa": FakeCursor([{**locked_row, "failed_attempts": 5, "locked_until": NOW + timedelta(minutes=15)}]),
            }
        )

        updated = store.record_mfa_failure("u1", now=NOW, threshold=5, lockout=timedelta(minutes=15))

        assert updated.failed_attempts == 5
        assert updated.is_locked(NOW)
        assert conn.statements[1][1] == (5, NOW + timedelta(minutes=15), "u1")

    def test_consume_backup_code_missing(self):
        store, _ = _store({})

        assert store.consume_backup_code("u1", "enc-code") is None
