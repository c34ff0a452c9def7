"""
In-memory stand-in for the Supabase client.

Implements the slice of the postgrest query builder the billing code uses
(select/eq/is_/order/limit/insert/upsert/update/execute) plus auth.get_user.
"""

import copy
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

_EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


class _Result:
    def __init__(self, data):
        self.data = data


class _Table:
    def __init__(self, db, name):
        self.db = db
        self.name = name
        self._filters = []
        self._op = "select"
        self._payload = None
        self._order = None
        self._limit = None
        self._on_conflict = None
        self._ignore_duplicates = False

    # ---- query building ----

    def select(self, *_cols, **_kwargs):
        self._op = "select"
        return self

    def eq(self, field, value):
        self._filters.append(lambda row: row.get(field) == value)
        return self

    def is_(self, field, value):
        if value in (None, "null"):
            self._filters.append(lambda row: row.get(field) is None)
        else:
            self._filters.append(lambda row: row.get(field) == value)
        return self

    def order(self, column, desc=False):
        self._order = (column, desc)
        return self

    def limit(self, count):
        self._limit = count
        return self

    def insert(self, payload):
        self._op = "insert"
        self._payload = payload
        return self

    def upsert(self, payload, on_conflict="id", ignore_duplicates=False, **_kwargs):
        self._op = "upsert"
        self._payload = payload
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, payload):
        self._op = "update"
        self._payload = payload
        return self

    # ---- execution ----

    def _rows(self):
        return self.db.tables.setdefault(self.name, [])

    def _match(self, row):
        return all(predicate(row) for predicate in self._filters)

    def execute(self):
        if self.db.fail_with is not None:
            raise self.db.fail_with

        self.db.operations.append((self.name, self._op))
        if self._op != "select":
            self.db.writes.append((self.name, self._op, copy.deepcopy(self._payload)))

        if self._op == "insert":
            return _Result([copy.deepcopy(self.db.insert_row(self.name, self._payload))])

        if self._op == "upsert":
            key = self._on_conflict
            for row in self._rows():
                if row.get(key) == self._payload.get(key):
                    if self._ignore_duplicates:
                        return _Result([])
                    row.update(copy.deepcopy(self._payload))
                    return _Result([copy.deepcopy(row)])
            return _Result([copy.deepcopy(self.db.insert_row(self.name, self._payload))])

        if self._op == "update":
            updated = []
            for row in self._rows():
                if self._match(row):
                    row.update(copy.deepcopy(self._payload))
                    updated.append(copy.deepcopy(row))
            return _Result(updated)

        rows = [row for row in self._rows() if self._match(row)]
        if self._order is not None:
            column, desc = self._order
            rows.sort(key=lambda row: row.get(column) or "", reverse=desc)
        if self._limit is not None:
            rows = rows[: self._limit]
        return _Result(copy.deepcopy(rows))


class _FakeAuth:
    def __init__(self):
        self.users = {}

    def get_user(self, token):
        user = self.users.get(token)
        if user is None:
            raise Exception("invalid JWT: unable to parse or verify signature")
        return SimpleNamespace(user=user)


class FakeSupabase:
    def __init__(self):
        self.tables = {"subscriptions": [], "stripe_webhook_events": []}
        self.writes = []
        self.operations = []
        self.fail_with = None
        self.auth = _FakeAuth()
        self._ticks = 0

    def table(self, name):
        return _Table(self, name)

    def insert_row(self, name, payload):
        self._ticks += 1
        row = {
            "id": self._ticks,
            "created_at": (_EPOCH + timedelta(seconds=self._ticks)).isoformat(),
            **copy.deepcopy(payload),
        }
        self.tables.setdefault(name, []).append(row)
        return row

    def add_user(self, token, user_id, email=None):
        self.auth.users[token] = SimpleNamespace(id=user_id, email=email)

    def rows(self, name="subscriptions"):
        return self.tables.get(name, [])

    def clear_all(self):
        for rows in self.tables.values():
            rows.clear()
        self.writes.clear()
        self.operations.clear()
        self.fail_with = None
