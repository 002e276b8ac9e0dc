import sqlite3
import itertools
from datetime import datetime, timedelta, timezone

import pytest
from werkzeug.security import generate_password_hash

import app as app_module

_counter = itertools.count(1)


@pytest.fixture
def db(monkeypatch):
    """In-memory database shared by the app and the test."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    app_module.init_schema(conn)
    monkeypatch.setattr("app.get_db_connection", lambda: conn)
    monkeypatch.setattr("app.DATABASE", ":memory:")
    yield conn
    conn.close()


@pytest.fixture
def client(db):
    """Create a test client with in-memory database."""
    app_module.app.config["TESTING"] = True
    with app_module.app.test_client() as client_obj:
        yield client_obj


def auth_headers(user_id, role, email="user@lab.test"):
    token = app_module._generate_token({"userId": user_id, "role": role, "email": email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_user(db):
    """Insert a user directly and return (user_id, headers)."""
    def _make_user(role="student", password="Password1", email=None):
        n = next(_counter)
        email = email or f"{role}{n}@lab.test"
        cursor = db.execute(
            "INSERT INTO users (student_id, full_name, email, password_hash, role, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                f"S{n:05d}" if role == "student" else None,
                f"{role.title()} {n}",
                email,
                generate_password_hash(password),
                role,
                app_module._now(),
            ),
        )
        db.commit()
        return cursor.lastrowid, auth_headers(cursor.lastrowid, role, email)
    return _make_user


@pytest.fixture
def admin(make_user):
    return make_user("admin")


@pytest.fixture
def student(make_user):
    return make_user("student")


@pytest.fixture
def make_component(db):
    def _make_component(total=10, available=None, code=None, name="Arduino Uno", **extra):
        n = next(_counter)
        cursor = db.execute(
            "INSERT INTO components (component_code, component_name, category, status, "
            "total_quantity, available_quantity, damaged_quantity, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                code or f"CMP-{n}",
                name,
                extra.get("category", "Microcontroller"),
                extra.get("status", "active"),
                total,
                total if available is None else available,
                extra.get("damaged", 0),
                app_module._now(),
            ),
        )
        db.commit()
        return cursor.lastrowid
    return _make_component


def future_date(days=7):
    return (datetime.now(timezone.utc) + timedelta(days=days)).strftime("%Y-%m-%d")


def available_quantity(db, component_id):
    return db.execute(
        "SELECT available_quantity FROM components WHERE component_id = ?", (component_id,)
    ).fetchone()["available_quantity"]


def total_penalties(db, user_id):
    return db.execute(
        "SELECT total_penalties FROM users WHERE user_id = ?", (user_id,)
    ).fetchone()["total_penalties"]
