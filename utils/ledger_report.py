"""utils/ledger_report.py

Result container and plain-text report for ledger reconciliation runs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Sequence


RULE = "=" * 44


@dataclass
class LedgerValidationResult:
    is_valid: bool
    client_id: int
    client_name: str
    stored_balance: Decimal
    calculated_balance: Decimal
    difference: Decimal
    total_debits: Decimal
    total_credits: Decimal
    entry_count: int
    warnings: List[str] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return (not self.is_valid) or bool(self.warnings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "clientId": self.client_id,
            "clientName": self.client_name,
            "storedBalance": float(self.stored_balance),
            "calculatedBalance": float(self.calculated_balance),
            "difference": float(self.difference),
            "totalDebits": float(self.total_debits),
            "totalCredits": float(self.total_credits),
            "entryCount": self.entry_count,
            "warnings": list(self.warnings),
        }


def summarize(results: Sequence[LedgerValidationResult]) -> Dict[str, int]:
    invalid = sum(1 for r in results if r.has_issues)
    return {"total": len(results), "valid": len(results) - invalid, "invalid": invalid}


def _money(symbol: str, value: Decimal) -> str:
    return f"{symbol}{value:.2f}"


def generate_validation_report(results: Sequence[LedgerValidationResult], currency: str = "₹") -> str:
    """Render results as the text block printed by the CLI and the admin endpoint."""
    valid = [r for r in results if not r.has_issues]
    with_issues = [r for r in results if r.has_issues]

    lines = ["", RULE, "LEDGER VALIDATION REPORT", RULE, ""]
    lines.append(f"Total Clients: {len(results)}")
    lines.append(f"Valid: {len(valid)}")
    lines.append(f"Issues: {len(with_issues)}")
    lines.append("")

    if with_issues:
        lines += ["CLIENTS WITH ISSUES:", RULE, ""]
        for r in with_issues:
            lines.append(f"Client: {r.client_name} (ID: {r.client_id})")
            lines.append(f"  Stored Balance: {_money(currency, r.stored_balance)}")
            lines.append(f"  Calculated Balance: {_money(currency, r.calculated_balance)}")
            lines.append(f"  Difference: {_money(currency, r.difference)}")
            lines.append(f"  Total Debits: {_money(currency, r.total_debits)}")
            lines.append(f"  Total Credits: {_money(currency, r.total_credits)}")
            lines.append(f"  Entry Count: {r.entry_count}")
            if r.warnings:
                lines.append("  Warnings:")
                lines.extend(f"    - {w}" for w in r.warnings)
            lines.append("")

    if valid:
        lines += ["VALID CLIENTS:", RULE, ""]
        for r in valid:
            lines.append(
                f"{r.client_name} (ID: {r.client_id}): {_money(currency, r.stored_balance)} ({r.entry_count} entries)"
            )

    lines += ["", RULE]
    return "\n".join(lines) + "\n"
