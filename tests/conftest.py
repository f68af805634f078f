"""
Fakes for the vendor clients (OpenAI, Anthropic, Supabase) shared by the test modules.
"""
import os
import sys
import uuid
from types import SimpleNamespace

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, ROOT)

import pytest

from tennis_trainer import retry


class FakeAPIError(Exception):
    """Looks like an openai/anthropic APIStatusError to the error translators."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class APITimeoutError(Exception):
    pass


# ── Anthropic ──

class FakeMessages:
    """Replies are consumed in order; the last one repeats. Exceptions are raised."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=reply)],
            stop_reason="end_turn",
        )


class FakeClaude:
    def __init__(self, *replies):
        self.messages = FakeMessages(replies)


# ── OpenAI ──

class FakeTranscriptions:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, file, **params):
        self.calls.append({"filename": file.name, "content": file.read(), **params})
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeOpenAI:
    def __init__(self, *replies):
        self.audio = SimpleNamespace(transcriptions=FakeTranscriptions(replies))


# ── Supabase ──

class FakeResult:
    def __init__(self, data):
        self.data = data


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.columns = "*"
        self.filters = []
        self.ordering = None
        self.max_rows = None

    def select(self, columns="*"):
        self.columns = columns
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, changes):
        self.op, self.payload = "update", changes
        return self

    def eq(self, column, value):
        self.filters.append((column, lambda v, value=value: v == value))
        return self

    def gte(self, column, value):
        self.filters.append((column, lambda v, value=value: v is not None and v >= value))
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def _matching(self):
        rows = self.db.tables.setdefault(self.table, [])
        return [r for r in rows if all(test(r.get(col)) for col, test in self.filters)]

    def execute(self):
        self.db.executed.append(self)
        if self.table in self.db.failing:
            raise RuntimeError(f"{self.table} is unavailable")

        if self.op == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            stored = []
            for row in rows:
                record = {"id": str(uuid.uuid4()), "created_at": "2026-10-01T10:00:00+00:00", **row}
                self.db.tables.setdefault(self.table, []).append(record)
                stored.append(dict(record))
            return FakeResult(stored)

        matched = self._matching()
        if self.op == "update":
            for row in matched:
                row.update(self.payload)
            return FakeResult([dict(r) for r in matched])

        if self.ordering:
            column, desc = self.ordering
            matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
        if self.max_rows is not None:
            matched = matched[:self.max_rows]
        return FakeResult([dict(r) for r in matched])


class FakeAuth:
    def __init__(self, users):
        self.users = users

    def get_user(self, token):
        if token not in self.users:
            raise FakeAPIError("invalid JWT", status_code=401)
        return SimpleNamespace(user=SimpleNamespace(id=self.users[token], email="player@example.com"))


class FakeSupabase:
    def __init__(self, users=None):
        self.tables = {}
        self.failing = set()
        self.executed = []
        self.auth = FakeAuth(users or {})

    def table(self, name):
        return FakeQuery(self, name)


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(retry, "BASE_DELAY", 0)


@pytest.fixture
def supabase():
    return FakeSupabase()
