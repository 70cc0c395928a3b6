import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence, Union

from models import MAX_AMOUNT_CENTS, Transaction
from schemas import ImportRow


def sanitize_csv_value(value: str) -> str:
    """
    Sanitize CSV values to prevent formula injection by prefixing dangerous patterns with tab.
    """
    if not value or value.strip() == "":
        return ""

    value = value.strip()

    formula_triggers = ("=", "+", "-", "@", "\t", "\r")

    if value.startswith(formula_triggers):
        return "\t" + value

    dangerous_patterns = [
        r"^cmd\s*",
        r"^powershell\s*",
        r"^bash\s*",
        r"^sh\s*",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_date(value: str):
    value = value.strip()
    for fmt in ("%Y-%m-%d", "%d.%m.%Y", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Invalid date '{value}'")


def parse_amount(
    value: Union[str, int, float, Decimal, None], *, allow_negative: bool = False
) -> int:
    """Convert a money amount to integer cents, rejecting anything non-finite."""
    if value is None or isinstance(value, bool):
        raise ValueError("Invalid amount")
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    else:
        raw = value.strip().replace("€", "").replace("$", "").replace(" ", "")
        raw = raw.replace(",", ".")
        if raw.count(".") > 1:
            parts = raw.split(".")
            raw = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(raw)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Amount must be a finite number")
    try:
        cents = int((amount * 100).quantize(Decimal("1")))
    except InvalidOperation as exc:
        raise ValueError("Amount out of range") from exc
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValueError("Amount out of range")
    if cents < 0 and not allow_negative:
        raise ValueError("Amount must be positive")
    return cents


def parse_csv(content: str) -> tuple[list[ImportRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[ImportRow] = []
    errors: list[str] = []
    for idx, raw in enumerate(reader, start=1):
        try:
            date_raw = (raw.get("Date") or "").strip()
            account_raw = (raw.get("Account") or "").strip()
            rows.append(
                ImportRow(
                    date=parse_date(date_raw) if date_raw else None,
                    amount=(raw.get("Amount") or "").strip(),
                    description=(raw.get("Description") or raw.get("Memo") or "").strip()
                    or None,
                    vendor=(raw.get("Vendor") or "").strip() or None,
                    purchaser=(raw.get("Purchaser") or "").strip() or None,
                    note=(raw.get("Note") or "").strip() or None,
                    type=(raw.get("Type") or "").strip().lower() or None,
                    category=(raw.get("Category") or "").strip() or None,
                    account_id=int(account_raw) if account_raw else None,
                )
            )
        except ValueError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Type", "Amount", "Category", "Description", "Vendor", "Account"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                f"{txn.amount_cents / 100:.2f}",
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.description or ""),
                sanitize_csv_value(txn.vendor or ""),
                txn.account_id if txn.account_id is not None else "",
            ]
        )
    return output.getvalue()
