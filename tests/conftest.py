import json
from typing import Any, Dict, List, Optional

import pytest

from phonepe_client import AuthClient, AuthToken, TokenCache


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: Optional[str] = None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else json.dumps(json_data)

    def json(self):
        if self._json is not None:
            return self._json
        return json.loads(self.text)


class FakeSession:
    """Stands in for requests.Session; answers by URL substring, records calls."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes = dict(routes or {})
        self.calls: List[Dict[str, Any]] = []

    def _answer(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for fragment, answer in self.routes.items():
            if fragment in url:
                if isinstance(answer, Exception):
                    raise answer
                if callable(answer):
                    return answer(url, **kwargs)
                return answer
        raise AssertionError(f"unexpected {method} {url}")

    def post(self, url, **kwargs):
        return self._answer("POST", url, **kwargs)

    def get(self, url, **kwargs):
        return self._answer("GET", url, **kwargs)

    def calls_to(self, fragment):
        return [c for c in self.calls if fragment in c["url"]]


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class StubAuthClient:
    def __init__(self, tokens=None, error=None):
        self.tokens = list(tokens or ["tok-1", "tok-2", "tok-3"])
        self.error = error
        self.calls = 0

    def fetch_token(self):
        self.calls += 1
        if self.error:
            raise self.error
        return AuthToken(value=self.tokens[self.calls - 1], scheme="O-Bearer", expires_at=0)


# ----------------------------------------------------------------------
# Supabase query builder fake: table().select().eq().execute() etc.
# ----------------------------------------------------------------------
class _Result:
    def __init__(self, data):
        self.data = data


class _Query:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []

    def select(self, *_cols):
        self.op = "select"
        return self

    def insert(self, row):
        self.op = "insert"
        self.payload = dict(row)
        return self

    def update(self, row):
        self.op = "update"
        self.payload = dict(row)
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def _matches(self, row):
        return all(row.get(c) == v for c, v in self.filters)

    def execute(self):
        self.db.ops.append((self.table, self.op))
        if self.db.fail_on and (self.table, self.op) in self.db.fail_on:
            raise RuntimeError(f"supabase {self.op} on {self.table} failed")
        rows = self.db.tables.setdefault(self.table, [])
        if self.op == "insert":
            row = {"id": len(rows) + 1, **self.payload}
            rows.append(row)
            return _Result([dict(row)])
        matched = [r for r in rows if self._matches(r)]
        if self.op == "update":
            for r in matched:
                r.update(self.payload)
        return _Result([dict(r) for r in matched])


class FakeSupabase:
    def __init__(self, fail_on=None):
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.ops = []
        self.fail_on = set(fail_on or ())

    def table(self, name):
        return _Query(self, name)


# ----------------------------------------------------------------------
# fixtures
# ----------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def supabase_fake():
    return FakeSupabase()


@pytest.fixture
def token_ok():
    return FakeResponse(200, {"access_token": "abc", "token_type": "O-Bearer", "expires_at": 1_900_000_000})


@pytest.fixture
def make_token_cache(clock):
    def _make(session):
        auth = AuthClient(
            token_url="https://gw.test/v1/oauth/token",
            client_id="cid",
            client_secret="secret",
            client_version="1",
            session=session,
        )
        return TokenCache(auth, ttl=1500, safety_margin=60, clock=clock)
    return _make
