import copy
import importlib
import operator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from codepods.db import TABLE_COLUMNS, get_db_dependency
from codepods.main import app
from codepods.services.auth import create_token
from codepods.services.ratelimit import reset_limits

# Modules that import the db helpers by name
PATCHED_MODULES = [
    "codepods.dependencies",
    "codepods.routers.users",
    "codepods.routers.pods",
    "codepods.routers.tasks",
    "codepods.routers.rewards",
    "codepods.routers.notifications",
    "codepods.routers.github_auth",
    "codepods.routers.ai",
    "codepods.services.notifications",
    "codepods.services.rewards",
    "codepods.services.github",
]

DB_HELPERS = [
    "add_item",
    "get_item_by_id",
    "get_items_by_filter",
    "get_item_by_filter",
    "count_items",
    "update_item",
    "update_items_by_filter",
]

# Column defaults from sql/init_db.sql
DEFAULTS = {
    "users": {"role": "user", "tech_stack": [], "reliability_score": 100, "dynamics_metrics": {}},
    "pod_members": {"role": "member", "status": "pending"},
    "tasks": {"status": "pending"},
    "activities": {"meta": {}, "value": 0},
    "rewards": {"points": 0, "badges": []},
    "notifications": {"type": "info", "read": False},
}

COMPARISONS = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


def _matches(row: dict, filters: dict) -> bool:
    for key, value in filters.items():
        if key == "$or":
            if not any(_matches(row, sub_filter) for sub_filter in value):
                return False
            continue

        actual = row.get(key)
        if isinstance(value, dict):
            if "$in" in value:
                ok = actual in value["$in"]
            elif "$ne" in value:
                ok = actual != value["$ne"]
            elif "$ilike" in value:
                ok = actual is not None and value["$ilike"].lower() in actual.lower()
            else:
                ok = actual is not None and all(
                    COMPARISONS[op](actual, expected) for op, expected in value.items()
                )
        else:
            ok = actual == value
        if not ok:
            return False
    return True


class FakeDatabase:
    """In-memory stand-in for the codepods.db helpers."""

    def __init__(self):
        self.tables = {table: {} for table in TABLE_COLUMNS}
        self._clock = datetime.now(timezone.utc) - timedelta(minutes=5)
        self._sequence = 0

    def _next_id(self, table: str) -> str:
        self._sequence += 1
        return f"{table}-{self._sequence}"

    def _now(self) -> datetime:
        # Strictly increasing so newest-first ordering is deterministic
        self._sequence += 1
        return self._clock + timedelta(milliseconds=self._sequence)

    def add_item(self, table, item):
        row = {column: None for column in TABLE_COLUMNS[table]}
        row.update(copy.deepcopy(DEFAULTS.get(table, {})))
        row["created_at"] = self._now()
        row.update({k: copy.deepcopy(v) for k, v in item.items() if k in row})
        row["id"] = item.get("id") or self._next_id(table)
        self.tables[table][row["id"]] = row
        return copy.deepcopy(row)

    def get_item_by_id(self, table, item_id):
        row = self.tables[table].get(str(item_id))
        return copy.deepcopy(row) if row else None

    def get_items_by_filter(self, table, filters=None, order_by=None, limit=None):
        rows = [row for row in self.tables[table].values() if _matches(row, filters or {})]
        if order_by:
            column = order_by.lstrip("-")
            rows.sort(key=lambda row: row[column], reverse=order_by.startswith("-"))
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    def get_item_by_filter(self, table, filters):
        items = self.get_items_by_filter(table, filters, limit=1)
        return items[0] if items else None

    def count_items(self, table, filters=None):
        return len(self.get_items_by_filter(table, filters))

    def update_item(self, table, item_id, updates):
        row = self.tables[table].get(str(item_id))
        if row is None:
            return None
        row.update(copy.deepcopy(updates))
        return copy.deepcopy(row)

    def update_items_by_filter(self, table, filters, updates):
        rows = [row for row in self.tables[table].values() if _matches(row, filters)]
        for row in rows:
            row.update(copy.deepcopy(updates))
        return len(rows)

    def rows(self, table):
        return list(self.tables[table].values())


def _delegate(name):
    def helper(db, *args, **kwargs):
        return getattr(db, name)(*args, **kwargs)

    return helper


@pytest.fixture(autouse=True)
def env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-jwt-secret")
    monkeypatch.setenv("ENCRYPTION_KEY", "test-encryption-key")
    monkeypatch.setenv("AI_ENABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("FRONTEND_URL", "http://frontend.test")
    reset_limits()
    yield
    reset_limits()


@pytest.fixture
def db(monkeypatch):
    fake = FakeDatabase()
    for module_name in PATCHED_MODULES:
        module = importlib.import_module(module_name)
        for helper in DB_HELPERS:
            if hasattr(module, helper):
                monkeypatch.setattr(module, helper, _delegate(helper))

    app.dependency_overrides[get_db_dependency] = lambda: fake
    yield fake
    app.dependency_overrides.clear()


@pytest.fixture
def client(db):
    # No context manager: the lifespan would open a real connection pool
    return TestClient(app)


def make_user(db, **fields) -> dict:
    user = {"email": f"user{db._sequence}@example.com", "name": "Test User"}
    user.update(fields)
    return db.add_item("users", user)


def auth_headers(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_token(user)}"}


def make_pod(db, admin: dict, **fields) -> dict:
    pod = db.add_item("pods", {"name": "Test Pod", "description": "A pod", **fields})
    db.add_item(
        "pod_members",
        {"user_id": admin["id"], "pod_id": pod["id"], "role": "admin", "status": "accepted"},
    )
    return pod


def add_member(db, pod: dict, user: dict, role="member", status="accepted") -> dict:
    return db.add_item(
        "pod_members",
        {"user_id": user["id"], "pod_id": pod["id"], "role": role, "status": status},
    )
