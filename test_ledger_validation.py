"""Reconciliation of stored balances against ledger history."""

import logging
from decimal import Decimal

import pytest

import app as app_module
from app import (
    db,
    AuditLog,
    Client,
    ClientNotFound,
    LedgerValidationError,
    Visit,
    append_ledger_entry,
    fix_client_balance,
    scheduled_ledger_audit,
    utcnow,
    validate_all_ledgers,
    validate_client_ledger,
    validate_ledger_or_raise,
)


def _tamper_balance(app, client_id, value):
    with app.app_context():
        db.session.get(Client, client_id).balance = Decimal(value)
        db.session.commit()


def test_clean_ledger_is_valid(app, make_visit, seed):
    make_visit(total_cost="625")
    make_visit(total_cost="375", amount_paid="75")

    with app.app_context():
        result = validate_client_ledger(seed.lab)

    assert result.is_valid
    assert result.warnings == []
    assert result.client_name == "City Diagnostic Center"
    assert result.stored_balance == Decimal("925.00")
    assert result.calculated_balance == Decimal("925.00")
    assert result.total_debits == Decimal("1000.00")
    assert result.total_credits == Decimal("75.00")
    assert result.entry_count == 3


def test_client_without_history_is_valid(app, seed):
    with app.app_context():
        result = validate_client_ledger(seed.other)
    assert result.is_valid
    assert result.entry_count == 0
    assert result.calculated_balance == Decimal("0.00")


def test_balance_mismatch_is_reported(app, make_visit, seed):
    make_visit(total_cost="1000")
    _tamper_balance(app, seed.lab, "1500")

    with app.app_context():
        result = validate_client_ledger(seed.lab)

    assert not result.is_valid
    assert result.difference == Decimal("500.00")
    assert result.warnings == [
        "Balance mismatch: Stored=₹1500.00, Calculated=₹1000.00, Difference=₹500.00"
    ]


def test_sub_cent_difference_is_tolerated(app, make_visit, seed):
    make_visit(total_cost="100")
    _tamper_balance(app, seed.lab, "100.004")

    with app.app_context():
        assert validate_client_ledger(seed.lab).is_valid


def test_orphaned_entries_are_flagged(app, seed):
    with app.app_context():
        lab = db.session.get(Client, seed.lab)
        append_ledger_entry(lab, "DEBIT", Decimal("50"), "Legacy import", visit_id=9999)
        db.session.commit()

        result = validate_client_ledger(seed.lab)

    assert result.is_valid
    assert "Found 1 orphaned ledger entries (referencing deleted visits)" in result.warnings
    assert any(w.startswith("Visit cost mismatch") for w in result.warnings)


def test_credit_visit_without_debit_is_flagged(app, seed):
    with app.app_context():
        db.session.add(Visit(
            visit_code="VIS-LEGACY-1",
            patient_id=seed.patient,
            ref_customer_id=seed.lab,
            registration_datetime=utcnow(),
            total_cost=Decimal("400"),
            amount_paid=Decimal("0"),
            due_amount=Decimal("400"),
            payment_mode="CREDIT",
        ))
        db.session.commit()

        result = validate_client_ledger(seed.lab)

    assert result.is_valid
    assert result.warnings == [
        "Found 1 credit visits without ledger entries",
        "Visit cost mismatch: Total visit costs=₹400.00, Total debits=₹0.00",
    ]
    assert result.has_issues


def test_unknown_client_raises(app, seed):
    with app.app_context():
        with pytest.raises(ClientNotFound):
            validate_client_ledger(9999)


def test_validate_all_covers_b2b_types_only(app, make_visit, seed):
    make_visit(total_cost="200")
    _tamper_balance(app, seed.other, "10")

    with app.app_context():
        results = validate_all_ledgers()

    by_id = {r.client_id: r for r in results}
    assert set(by_id) == {seed.lab, seed.other}
    assert by_id[seed.lab].is_valid
    assert not by_id[seed.other].is_valid


def test_fix_client_balance(app, make_visit, seed):
    make_visit(total_cost="1000")
    _tamper_balance(app, seed.lab, "1500")

    with app.app_context():
        result, changed = fix_client_balance(seed.lab)
        db.session.commit()
        assert changed
        assert result.calculated_balance == Decimal("1000.00")
        assert Decimal(db.session.get(Client, seed.lab).balance) == Decimal("1000.00")

        log = AuditLog.query.filter_by(action="ledger_balance_fixed").one()
        assert log.old_values == {"balance": 1500.0}
        assert log.new_values == {"balance": 1000.0}

        _, changed_again = fix_client_balance(seed.lab)
        assert not changed_again


def test_validate_ledger_or_raise(app, make_visit, seed):
    make_visit(total_cost="300")
    with app.app_context():
        assert validate_ledger_or_raise(seed.lab).is_valid

    _tamper_balance(app, seed.lab, "0")
    with app.app_context():
        with pytest.raises(LedgerValidationError) as exc:
            validate_ledger_or_raise(seed.lab)
    assert exc.value.status_code == 409
    assert exc.value.result.difference == Decimal("300.00")


def test_strict_mode_blocks_payment_on_broken_ledger(app, client, login_as, make_visit, seed, balance_of, monkeypatch):
    make_visit(total_cost="1000")
    _tamper_balance(app, seed.lab, "1500")
    monkeypatch.setitem(app.config, "LEDGER_STRICT_VALIDATION", True)

    login_as(seed.admin)
    resp = client.post(f"/api/clients/{seed.lab}/payment", json={"amount": "100"})

    assert resp.status_code == 409
    assert "Ledger validation failed" in resp.get_json()["error"]
    assert balance_of(seed.lab) == Decimal("1500.00")


def test_strict_mode_allows_consistent_settlement(client, login_as, make_visit, seed, balance_of, app, monkeypatch):
    make_visit(total_cost="800")
    monkeypatch.setitem(app.config, "LEDGER_STRICT_VALIDATION", True)

    login_as(seed.admin)
    resp = client.post(f"/api/clients/{seed.lab}/settle",
                       json={"paymentMode": "Cash", "description": "x", "receivedAmount": "700"})
    assert resp.status_code == 200
    assert balance_of(seed.lab) == Decimal("0.00")


def test_validate_ledger_endpoint(client, login_as, make_visit, seed):
    make_visit(total_cost="250")
    login_as(seed.reception)

    resp = client.get(f"/api/clients/{seed.lab}/validate-ledger")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["isValid"] is True
    assert data["storedBalance"] == 250.0
    assert data["entryCount"] == 1

    assert client.get("/api/clients/9999/validate-ledger").status_code == 404

    login_as(seed.portal)
    assert client.get(f"/api/clients/{seed.lab}/validate-ledger").status_code == 403


def test_validate_all_and_fix_endpoints(app, client, login_as, make_visit, seed):
    make_visit(total_cost="250")
    _tamper_balance(app, seed.lab, "260")
    login_as(seed.admin)

    resp = client.get("/api/clients/validate-all-ledgers")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["summary"] == {"total": 2, "valid": 1, "invalid": 1}
    assert "LEDGER VALIDATION REPORT" in data["report"]
    assert "Client: City Diagnostic Center" in data["report"]

    resp = client.post(f"/api/clients/{seed.lab}/fix-balance")
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "changed": True, "previousBalance": 260.0, "newBalance": 250.0}

    resp = client.get("/api/clients/validate-all-ledgers")
    assert resp.get_json()["summary"]["invalid"] == 0

    login_as(seed.reception)
    assert client.get("/api/clients/validate-all-ledgers").status_code == 403
    assert client.post(f"/api/clients/{seed.lab}/fix-balance").status_code == 403


def test_scheduled_audit_returns_counts(app, make_visit, seed):
    make_visit(total_cost="90")
    _tamper_balance(app, seed.other, "5")

    assert scheduled_ledger_audit() == {"total": 2, "valid": 1, "invalid": 1}


def test_validate_all_logs_and_skips_failing_client(app, make_visit, seed, monkeypatch, caplog):
    make_visit(total_cost="200")
    real_validate = app_module.validate_client_ledger

    def flaky(client_id):
        if client_id == seed.lab:
            raise ClientNotFound(client_id)
        return real_validate(client_id)

    monkeypatch.setattr(app_module, "validate_client_ledger", flaky)

    with caplog.at_level(logging.ERROR):
        with app.app_context():
            results = validate_all_ledgers()

    assert [r.client_id for r in results] == [seed.other]
    assert f"Error validating ledger for client {seed.lab}" in caplog.text
