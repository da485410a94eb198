"""Shared pytest fixtures: an in-memory SQLite app with seeded users, labs and tests.

Environment is set before `app` is imported because `config.Config` reads it at
import time.
"""

from __future__ import annotations

import os
from decimal import Decimal
from types import SimpleNamespace

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "true"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["WTF_CSRF_ENABLED"] = "false"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ["LEDGER_AUDIT_SCHEDULE_ENABLED"] = "false"
os.environ["LEDGER_STRICT_VALIDATION"] = "false"
os.environ["LOG_TO_FILE"] = "false"

import pytest


@pytest.fixture
def app():
    from app import app as flask_app, db

    with flask_app.app_context():
        db.create_all()

    yield flask_app

    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_as(client):
    def _login(user_id: int):
        # Flask-Login stores the user id in the session under '_user_id'.
        with client.session_transaction() as sess:
            sess["_user_id"] = str(user_id)
            sess["_fresh"] = True
    return _login


@pytest.fixture
def seed(app):
    from app import db, User, Client, Patient, TestTemplate

    with app.app_context():
        lab = Client(name="City Diagnostic Center", type="REFERRAL_LAB", balance=0)
        other = Client(name="Metro Path Lab", type="REFERRAL_LAB", balance=0)
        walk_in = Client(name="Walk-in Counter", type="WALK_IN", balance=0)
        db.session.add_all([lab, other, walk_in])
        db.session.flush()

        admin = User(username="admin", email="admin@example.com", role="admin", is_active=True)
        admin.set_password("admin-pass")
        reception = User(username="reception", role="reception", is_active=True)
        reception.set_password("front-desk")
        portal = User(username="citylab", role="b2b_client", client_id=lab.id, is_active=True)
        portal.set_password("Client123")

        patient = Patient(name="Asha Verma", age_years=34, sex="F")
        cbc = TestTemplate(code="CBC", name="Complete Blood Count", price=Decimal("400.00"),
                           b2b_price=Decimal("300.00"))
        lft = TestTemplate(code="LFT", name="Liver Function Test", price=Decimal("900.00"))

        db.session.add_all([admin, reception, portal, patient, cbc, lft])
        db.session.commit()

        return SimpleNamespace(
            lab=lab.id,
            other=other.id,
            walk_in=walk_in.id,
            admin=admin.id,
            reception=reception.id,
            portal=portal.id,
            patient=patient.id,
            cbc=cbc.id,
            lft=lft.id,
        )


@pytest.fixture
def make_visit(client, login_as, seed):
    """Register a visit through the API as admin and return its JSON."""
    def _make(total_cost=None, client_id=None, payment_mode="CREDIT", amount_paid=0, **extra):
        login_as(seed.admin)
        body = {
            "patient_id": seed.patient,
            "ref_customer_id": seed.lab if client_id is None else client_id,
            "payment_mode": payment_mode,
            "amount_paid": amount_paid,
        }
        if total_cost is not None:
            body["total_cost"] = total_cost
        body.update(extra)
        resp = client.post("/api/visits", json=body)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return _make


@pytest.fixture
def balance_of(app):
    def _balance(client_id: int) -> Decimal:
        from app import db, Client

        with app.app_context():
            return Decimal(db.session.get(Client, client_id).balance)
    return _balance
