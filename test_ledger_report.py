from decimal import Decimal

from utils.ledger_report import LedgerValidationResult, generate_validation_report, summarize


def _result(client_id, name, stored, calculated, warnings=None):
    stored = Decimal(stored)
    calculated = Decimal(calculated)
    difference = abs(calculated - stored)
    return LedgerValidationResult(
        is_valid=difference < Decimal("0.01"),
        client_id=client_id,
        client_name=name,
        stored_balance=stored,
        calculated_balance=calculated,
        difference=difference,
        total_debits=calculated,
        total_credits=Decimal("0"),
        entry_count=2,
        warnings=warnings or [],
    )


def test_to_dict_uses_camel_case_and_floats():
    data = _result(7, "City Diagnostic Center", "625.00", "625.00").to_dict()
    assert data == {
        "isValid": True,
        "clientId": 7,
        "clientName": "City Diagnostic Center",
        "storedBalance": 625.0,
        "calculatedBalance": 625.0,
        "difference": 0.0,
        "totalDebits": 625.0,
        "totalCredits": 0.0,
        "entryCount": 2,
        "warnings": [],
    }


def test_warnings_alone_count_as_issues():
    valid_with_warning = _result(1, "A", "10", "10", ["Found 1 orphaned ledger entries (referencing deleted visits)"])
    assert valid_with_warning.is_valid
    assert valid_with_warning.has_issues


def test_summarize_counts():
    results = [
        _result(1, "A", "10", "10"),
        _result(2, "B", "10", "25"),
        _result(3, "C", "0", "0", ["Found 2 credit visits without ledger entries"]),
    ]
    assert summarize(results) == {"total": 3, "valid": 1, "invalid": 2}


def test_report_lists_issues_and_valid_clients():
    results = [
        _result(1, "City Diagnostic Center", "1500.00", "1000.00", ["Balance mismatch: Stored=₹1500.00"]),
        _result(2, "Metro Path Lab", "250.00", "250.00"),
    ]
    report = generate_validation_report(results)

    assert "LEDGER VALIDATION REPORT" in report
    assert "Total Clients: 2" in report
    assert "Valid: 1" in report
    assert "Issues: 1" in report
    assert "CLIENTS WITH ISSUES:" in report
    assert "Client: City Diagnostic Center (ID: 1)" in report
    assert "  Difference: ₹500.00" in report
    assert "    - Balance mismatch: Stored=₹1500.00" in report
    assert "VALID CLIENTS:" in report
    assert "Metro Path Lab (ID: 2): ₹250.00 (2 entries)" in report


def test_report_without_results_has_no_sections():
    report = generate_validation_report([], currency="$")
    assert "Total Clients: 0" in report
    assert "CLIENTS WITH ISSUES:" not in report
    assert "VALID CLIENTS:" not in report
