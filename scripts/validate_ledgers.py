"""Reconcile B2B client balances against the ledger.

Usage:
  python scripts/validate_ledgers.py            # report only
  python scripts/validate_ledgers.py --client 3 # one client
  python scripts/validate_ledgers.py --fix      # reset mismatched balances from the ledger

Exit status is 1 when any client still has issues after the run.
"""

import argparse
import os
import sys

# Add the project root to the Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import (  # noqa: E402
    app,
    db,
    LedgerError,
    fix_client_balance,
    validate_all_ledgers,
    validate_client_ledger,
)
from utils.ledger_report import generate_validation_report, summarize  # noqa: E402


def run(client_id=None, fix=False):
    with app.app_context():
        if client_id is not None:
            results = [validate_client_ledger(client_id)]
        else:
            results = validate_all_ledgers()

        print(generate_validation_report(results, app.config['CURRENCY_SYMBOL']))

        if fix:
            fixed = 0
            for result in results:
                if result.is_valid:
                    continue
                try:
                    _, changed = fix_client_balance(result.client_id)
                    db.session.commit()
                except Exception as e:
                    db.session.rollback()
                    print(f"Failed to fix client {result.client_id}: {e}")
                    continue
                if changed:
                    fixed += 1
                    print(f"Fixed balance for {result.client_name} (ID: {result.client_id}): "
                          f"{result.stored_balance:.2f} -> {result.calculated_balance:.2f}")
            print(f"{fixed} balance(s) fixed.")
            if fixed:
                results = [validate_client_ledger(r.client_id) for r in results]

        return summarize(results)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Validate B2B client ledgers.')
    parser.add_argument('--client', type=int, default=None, help='Validate a single client ID.')
    parser.add_argument('--fix', action='store_true', help='Overwrite invalid stored balances with the ledger balance.')
    args = parser.parse_args(argv)

    try:
        counts = run(args.client, args.fix)
    except LedgerError as e:
        print(f"Error: {e.message}")
        return 2
    return 1 if counts['invalid'] else 0


if __name__ == '__main__':
    sys.exit(main())
