import csv
import hashlib
import re
from datetime import datetime
from io import StringIO
from typing import Sequence

from models import Transaction
from money import format_cents, parse_amount
from schemas import ImportedTransactionIn

EXPORT_HEADER = ["Date", "Account", "Payee", "Category", "Memo", "Amount", "Cleared"]


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    if value.startswith(("=", "+", "-", "@", "\t", "\r")):
        return "\t" + value

    for pattern in (r"^cmd\s*", r"^powershell\s*", r"^http[s]?://"):
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%d.%m.%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognised date {value!r}")


def _row_key(raw: dict[str, str]) -> str:
    return "|".join(
        (raw.get(column) or "").strip() for column in ("Date", "Payee", "Amount", "Memo")
    )


def _fallback_import_id(key: str, occurrence: int) -> str:
    digest = hashlib.sha1(f"{key}|{occurrence}".encode("utf-8")).hexdigest()
    return f"csv:{digest[:32]}"


def parse_csv(content: str) -> tuple[list[ImportedTransactionIn], list[str]]:
    """
    Parse a ``Date,Payee,Amount,Memo,Category,Id`` statement.

    Rows without an ``Id`` get a stable id derived from their contents, so
    importing the same file twice does not duplicate anything.
    """
    reader = csv.DictReader(StringIO(content))
    rows: list[ImportedTransactionIn] = []
    errors: list[str] = []
    occurrences: dict[str, int] = {}
    for idx, raw in enumerate(reader, start=1):
        try:
            date_value = parse_date(raw.get("Date") or "")
            amount_value = parse_amount(raw.get("Amount") or "")
            import_id = (raw.get("Id") or "").strip()
            if not import_id:
                key = _row_key(raw)
                occurrences[key] = occurrences.get(key, 0) + 1
                import_id = _fallback_import_id(key, occurrences[key])
            rows.append(
                ImportedTransactionIn(
                    import_id=import_id,
                    date=date_value,
                    amount_cents=amount_value,
                    payee_name=(raw.get("Payee") or "").strip() or None,
                    memo=(raw.get("Memo") or "").strip() or None,
                    category_name=(raw.get("Category") or "").strip() or None,
                    pending=False,
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for txn in transactions:
        if txn.is_split:
            category = "Split"
        elif txn.is_transfer and txn.transfer_account is not None:
            category = f"Transfer: {txn.transfer_account.name}"
        else:
            category = txn.category.name if txn.category else ""
        writer.writerow(
            [
                txn.date.isoformat(),
                sanitize_csv_value(txn.account.name),
                sanitize_csv_value(txn.payee.name if txn.payee else ""),
                sanitize_csv_value(category),
                sanitize_csv_value(txn.memo or ""),
                format_cents(txn.amount_cents),
                txn.cleared.value,
            ]
        )
    return output.getvalue()
