from datetime import date

import pytest

from app import create_app
from database_manager import DatabaseManager
from ledger import SeatLedger, build_plan

ACTOR = "user-1"


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture()
def db(database_url):
    manager = DatabaseManager(database_url)
    yield manager
    manager.dispose()


@pytest.fixture()
def ledger(db):
    return SeatLedger(db)


@pytest.fixture()
def library(db):
    """A three-seat library with the default Morning/Afternoon/Evening/Night shifts."""
    created = db.onboard_library(name="Central Reading Room", total_seats=3, actor=ACTOR)
    created["shift"] = {shift["name"]: shift["id"] for shift in created["shifts"]}
    created["seat"] = {seat["seat_number"]: seat["id"] for seat in db.get_seat_grid(created["id"])["seats"]}
    return created


@pytest.fixture()
def plan():
    def make(cost="1000", paid="0", discount="0", start=date(2026, 1, 1), end=date(2026, 1, 31)):
        return build_plan(start, end, cost, paid, discount)
    return make


@pytest.fixture()
def register(ledger, plan):
    """Register a fresh student; keyword overrides go to create_registration."""
    counter = {"n": 0}

    def make(library, shift_ids, seat_id, cost="1000", paid="0", discount="0", **kwargs):
        counter["n"] += 1
        student = {
            "student_name": f"Student {counter['n']}",
            "mobile_no": f"98765{counter['n']:05d}",
            "gender": "female" if counter["n"] % 2 else "male",
            "admission_date": date(2026, 1, 1),
        }
        return ledger.create_registration(
            library["id"], student, shift_ids, seat_id,
            plan(cost=cost, paid=paid, discount=discount), ACTOR, **kwargs
        )
    return make


@pytest.fixture()
def app(database_url):
    app = create_app(database_url)
    app.config["TESTING"] = True
    yield app
    app.extensions["ledger_db"].dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


def actor_headers(role="staff", actor="user-1"):
    return {"X-Actor-Id": actor, "X-Actor-Role": role}


@pytest.fixture()
def staff():
    return actor_headers("staff")


@pytest.fixture()
def admin():
    return actor_headers("admin")


@pytest.fixture()
def super_admin():
    return actor_headers("super_admin", "root")
