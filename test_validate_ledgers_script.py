from decimal import Decimal

from app import db, Client
from scripts.validate_ledgers import main


def test_cli_reports_then_fixes_mismatch(app, make_visit, seed, capsys):
    make_visit(total_cost="100")
    with app.app_context():
        db.session.get(Client, seed.lab).balance = Decimal("130")
        db.session.commit()

    assert main([]) == 1
    out = capsys.readouterr().out
    assert "Issues: 1" in out
    assert "Client: City Diagnostic Center" in out

    assert main(["--fix"]) == 0
    out = capsys.readouterr().out
    assert "130.00 -> 100.00" in out
    assert "1 balance(s) fixed." in out

    assert main(["--client", str(seed.lab)]) == 0


def test_cli_unknown_client(app, seed, capsys):
    assert main(["--client", "9999"]) == 2
    assert "Client 9999 not found" in capsys.readouterr().out
