from datetime import datetime, timedelta, timezone

from portalauth.storage.postgres import PostgresStore


class FakeResult:
    def __init__(self, row=None, rows=None):
        self.row = row
        self.rows = rows or []

    def fetchone(self):
        return self.row

    def fetchall(self):
        return self.rows


class FakeTransaction:
    def __init__(self, connection):
        self.connection = connection

    def __enter__(self):
        self.connection.in_transaction = True
        return self

    def __exit__(self, *exc):
        self.connection.in_transaction = False
        return False


class FakeConnection:
    def __init__(self, results):
        self.results = list(results)
        self.statements = []
        self.transactional = []
        self.in_transaction = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def transaction(self):
        return FakeTransaction(self)

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        self.transactional.append(self.in_transaction)
        return self.results.pop(0) if self.results else FakeResult()


class FakePool:
    def __init__(self, connection):
        self._connection = connection

    def connection(self):
        return self._connection


def _store(results):
    conn = FakeConnection(results)
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(conn)
    return store, conn


def _user_row(**overrides):
    row = {
        "id": "2b1f4c1e-0000-4000-8000-000000000001",
        "name": "Ada",
        "email": "ada@example.com",
        "password_hash": "hash",
        "role": "employer",
        "status": "active",
        "verified": True,
        "verified_at": None,
        "last_login": None,
        "failed_login_attempts": None,
        "locked_until": None,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_row_to_principal():
    principal = PostgresStore._row_to_principal(_user_row())

    assert principal.role == "employer"
    assert principal.verified is True
    assert principal.failed_login_attempts == 0


def test_get_user_by_email_normalizes():
    store, conn = _store([FakeResult(row=_user_row())])

    principal = store.get_user_by_email(" ADA@example.com ")

    assert principal.email == "ada@example.com"
    assert conn.statements[0][1] == ("ada@example.com",)


def test_register_login_failure_is_single_statement():
    locked = datetime.now(timezone.utc) + timedelta(minutes=15)
    store, conn = _store([FakeResult(row={"failed_login_attempts": 5, "locked_until": locked})])

    attempts, locked_until = store.register_login_failure(
        "u-1", threshold=5, lockout=timedelta(minutes=15)
    )

    assert (attempts, locked_until) == (5, locked)
    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE app_user SET failed_login_attempts = failed_login_attempts + 1")
    assert params[0] == 5


def test_register_login_failure_unknown_user():
    store, _ = _store([FakeResult(row=None)])

    assert store.register_login_failure("u-1", threshold=5, lockout=timedelta(minutes=15)) == (0, None)


def test_consume_password_reset_token_rejects_expired():
    expired = datetime.now(timezone.utc) - timedelta(seconds=1)
    store, conn = _store([FakeResult(row={"identifier": "ada@example.com", "expires_at": expired})])

    assert store.consume_password_reset_token("digest") is None
    assert conn.statements[0][0].startswith("DELETE FROM password_reset_token")


def test_consume_password_reset_token_returns_email():
    valid = datetime.now(timezone.utc) + timedelta(minutes=5)
    store, _ = _store([FakeResult(row={"identifier": "ada@example.com", "expires_at": valid})])

    assert store.consume_password_reset_token("digest") == "ada@example.com"


def test_register_otp_failure_locks_row_inside_transaction():
    store, conn = _store([FakeResult(row={"id": "otp-1", "attempts": 2})])

    attempts, locked_until = store.register_otp_failure(
        " ADA@example.com", threshold=3, lockout=timedelta(minutes=15)
    )

    assert attempts == 3
    assert locked_until is not None
    assert len(conn.statements) == 2
    select_sql, select_params = conn.statements[0]
    assert select_sql.startswith("SELECT id, attempts FROM verification_token")
    assert select_sql.endswith("FOR UPDATE")
    assert select_params == ("ada@example.com",)
    update_sql, update_params = conn.statements[1]
    assert update_sql.startswith("UPDATE verification_token")
    assert update_params == (3, locked_until, "otp-1")
    assert conn.transactional == [True, True]
    assert conn.in_transaction is False


def test_register_otp_failure_below_threshold_keeps_lock_column():
    store, conn = _store([FakeResult(row={"id": "otp-1", "attempts": 0})])

    assert store.register_otp_failure(
        "ada@example.com", threshold=3, lockout=timedelta(minutes=15)
    ) == (1, None)
    assert conn.statements[1][1] == (1, None, "otp-1")
