import pytest

from app import create_app
from routes.auth import issue_token
from services import catalog


@pytest.fixture(autouse=True)
def no_audit_writes(monkeypatch):
    """Audit rows go nowhere during tests."""
    calls = []
    monkeypatch.setattr("services.system_log.execute", lambda sql, params=(): calls.append(params) or 1)
    return calls


@pytest.fixture(autouse=True)
def empty_catalog_cache():
    catalog.invalidate_cache()
    yield
    catalog.invalidate_cache()


@pytest.fixture
def app():
    return create_app({"TESTING": True, "SECRET_KEY": "test-secret"})


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    """Factory: bearer headers for a given role."""

    def _make(role="admin", user_id="u-1", email="staff@udm.edu.cm"):
        identity = {"user_id": user_id, "email": email, "name": "Test User", "role": role, "source": "local"}
        with app.app_context():
            token = issue_token(identity)
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def login_session(client):
    """Factory: put an identity in the cookie session."""

    def _login(role="etudiant", user_id="u-2"):
        with client.session_transaction() as sess:
            sess["logged_in"] = True
            sess["user_id"] = user_id
            sess["email"] = "etudiant@udm.edu.cm"
            sess["name"] = "Étudiant Test"
            sess["role"] = role
            sess["source"] = "active_directory"
        return client

    return _login


class FakeCursor:
    def __init__(self, db):
        self.db = db
        self.rowcount = 0
        self._rows = []

    def execute(self, sql, params=()):
        self._rows, self.rowcount = self.db.answer(sql, params)

    def fetchall(self):
        return list(self._rows)

    def close(self):
        pass


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.autocommit = True

    def cursor(self, dictionary=False):
        return FakeCursor(self.db)

    def commit(self):
        self.db.commits += 1

    def rollback(self):
        self.db.rollbacks += 1

    def close(self):
        pass


class FakeMySQL:
    """
    Scripted stand-in for the MySQL pool.

    `on(fragment, rows)` answers every statement containing `fragment`
    (whitespace-insensitive); the first matching rule wins. `rows` may be a
    callable taking the params. Unmatched statements return no rows.
    """

    def __init__(self):
        self.rules = []
        self.statements = []
        self.commits = 0
        self.rollbacks = 0

    def on(self, fragment, rows=None, rowcount=None):
        self.rules.append((" ".join(fragment.split()), rows, rowcount))
        return self

    def answer(self, sql, params):
        flat = " ".join(sql.split())
        self.statements.append((flat, tuple(params or ())))
        for fragment, rows, rowcount in self.rules:
            if fragment in flat:
                if callable(rows):
                    rows = rows(params)
                rows = [dict(r) for r in (rows or [])]
                return rows, len(rows) if rowcount is None else rowcount
        return [], 0

    def executed(self, fragment):
        fragment = " ".join(fragment.split())
        return [params for sql, params in self.statements if fragment in sql]


@pytest.fixture
def fake_db(monkeypatch):
    """Route every db_mysql helper and transaction() through a FakeMySQL."""
    db = FakeMySQL()
    monkeypatch.setattr("db_mysql.get_conn", lambda: FakeConnection(db))
    return db
