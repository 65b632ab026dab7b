import copy
import itertools
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from postgrest.exceptions import APIError

NOW = datetime(2030, 1, 7, 12, 0, tzinfo=timezone.utc)


def api_error(message="boom"):
    return APIError({"message": message, "code": "500", "hint": None, "details": None})


class FakeQuery:
    """Just enough of the postgrest builder chain for the portal's queries."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload = None
        self.filters = []
        self.order_by = []
        self.max_rows = None

    # --- operations ---
    def select(self, *columns):
        self.op = "select"
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, values):
        self.op, self.payload = "update", values
        return self

    def upsert(self, rows):
        self.op, self.payload = "upsert", rows
        return self

    def delete(self):
        self.op = "delete"
        return self

    # --- filters ---
    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column, value):
        if value == "null":
            self.filters.append(lambda row: row.get(column) is None)
        else:
            self.filters.append(lambda row: row.get(column) == value)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def order(self, column, desc=False):
        self.order_by.append((column, desc))
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    # --- execution ---
    def _matches(self, row):
        return all(f(row) for f in self.filters)

    def execute(self):
        if (self.table, self.op) in self.db.failures or (self.table, "*") in self.db.failures:
            raise api_error(f"{self.op} on {self.table} failed")

        rows = self.db.tables.setdefault(self.table, [])
        self.db.calls.append((self.table, self.op, copy.deepcopy(self.payload)))

        if self.op == "insert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            created = []
            for item in items:
                row = dict(item)
                row.setdefault("id", self.db.next_id(self.table))
                rows.append(row)
                created.append(copy.deepcopy(row))
            return SimpleNamespace(data=created)

        if self.op == "upsert":
            items = self.payload if isinstance(self.payload, list) else [self.payload]
            out = []
            for item in items:
                existing = next((r for r in rows if "id" in item and r.get("id") == item["id"]), None)
                if existing is not None:
                    existing.update(item)
                    out.append(copy.deepcopy(existing))
                else:
                    row = dict(item)
                    row.setdefault("id", self.db.next_id(self.table))
                    rows.append(row)
                    out.append(copy.deepcopy(row))
            return SimpleNamespace(data=out)

        matched = [r for r in rows if self._matches(r)]

        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=copy.deepcopy(matched))

        if self.op == "delete":
            self.db.tables[self.table] = [r for r in rows if r not in matched]
            return SimpleNamespace(data=copy.deepcopy(matched))

        for column, desc in reversed(self.order_by):
            matched = sorted(matched, key=lambda r: (r.get(column) is None, str(r.get(column))),
                             reverse=desc)
        if self.max_rows is not None:
            matched = matched[: self.max_rows]
        return SimpleNamespace(data=copy.deepcopy(matched))


class FakeAdmin:
    def __init__(self, auth):
        self.auth = auth

    def create_user(self, attrs):
        user_id = f"auth-{len(self.auth.accounts) + 1}"
        self.auth.accounts[attrs["email"]] = (attrs["password"], user_id)
        self.auth.created.append(attrs)
        return SimpleNamespace(user=SimpleNamespace(id=user_id))


class FakeAuth:
    def __init__(self):
        self.accounts = {}
        self.created = []
        self.admin = FakeAdmin(self)

    def sign_in_with_password(self, credentials):
        password, user_id = self.accounts.get(credentials["email"], (None, None))
        if password is None or password != credentials["password"]:
            return SimpleNamespace(user=None)
        return SimpleNamespace(user=SimpleNamespace(id=user_id))


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.failures = set()
        self.calls = []
        self.auth = FakeAuth()
        self._ids = itertools.count(1)

    def next_id(self, table):
        return f"{table}-{next(self._ids)}"

    def table(self, name):
        return FakeQuery(self, name)

    # --- test helpers ---
    def seed(self, table, *rows):
        self.tables.setdefault(table, []).extend(dict(r) for r in rows)

    def rows(self, table, **match):
        return [r for r in self.tables.get(table, [])
                if all(r.get(k) == v for k, v in match.items())]

    def one(self, table, row_id):
        found = self.rows(table, id=row_id)
        return found[0] if found else None

    def fail(self, table, op="*"):
        self.failures.add((table, op))


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def fleet_db(db):
    """A partner with two vehicles and one registered driver."""
    db.seed("users",
            {"id": "drv-1", "email": "sam@fleetmail.co.uk", "full_name": "Sam Driver",
             "phone": "07700900001", "role": "driver"},
            {"id": "ptn-user-1", "email": "ops@northcars.co.uk", "full_name": "Priya Owner",
             "company_name": "North Cars", "role": "partner",
             "bank_details": {"account_number": "12345678", "sort_code": "12-34-56"}})
    db.seed("partners",
            {"id": "ptn-1", "user_id": "ptn-user-1", "company_name": "North Cars",
             "status": "active", "fleet_size": 2})
    db.seed("vehicles",
            {"id": "veh-1", "partner_id": "ptn-user-1", "make": "Toyota", "model": "Prius",
             "registration_number": "AB12CDE", "status": "available", "weekly_rate": 280},
            {"id": "veh-2", "partner_id": "ptn-user-1", "make": "Kia", "model": "Niro",
             "registration_number": "XY34ZZZ", "status": "available", "price_per_week": 350})
    return db


@pytest.fixture
def booking_row():
    def make(**overrides):
        row = {
            "id": "bk-1",
            "driver_id": "drv-1",
            "partner_id": "ptn-user-1",
            "vehicle_id": "veh-1",
            "current_vehicle_id": "veh-1",
            "start_date": "2030-01-01T09:00:00+00:00",
            "end_date": "2030-01-29T09:00:00+00:00",
            "weekly_rate": 280,
            "total_amount": 1120,
            "status": "active",
            "payment_status": "paid",
            "payment_method": "bank_transfer",
            "car": {"make": "Toyota", "model": "Prius", "registration_number": "AB12CDE"},
            "car_plate": "AB12CDE",
            "created_at": "2030-01-01T08:00:00+00:00",
        }
        row.update(overrides)
        return row
    return make
