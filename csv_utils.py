import csv
import re
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Sequence

from accounting import format_cents
from errors import ValidationFailed
from models import Transaction

MAX_AMOUNT_CENTS = 10**15


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
        r"^\.",
        r"^http[s]?://",
    ]

    for pattern in dangerous_patterns:
        if re.match(pattern, value, re.IGNORECASE):
            return "\t" + value

    return value


def parse_amount(
    value: str, *, allow_negative: bool = False, allow_zero: bool = False
) -> int:
    """Convert a decimal amount string such as ``"12.50"`` to integer cents."""
    clean = str(value).strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValidationFailed(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationFailed(f"Invalid amount: {value!r}")
    scaled = amount * 100
    if scaled != scaled.to_integral_value():
        raise ValidationFailed("Amount cannot have more than two decimal places")
    cents = int(scaled)
    if abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationFailed("Amount is too large")
    if cents < 0 and not allow_negative:
        raise ValidationFailed("Amount must be positive")
    if cents == 0 and not allow_zero:
        raise ValidationFailed("Amount must be greater than zero")
    return cents


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Date", "Type", "Kind", "Amount", "Account", "Category", "Description"]
    )
    for txn in transactions:
        writer.writerow(
            [
                txn.date.isoformat(),
                txn.type.value,
                txn.kind.value,
                format_cents(txn.amount_cents),
                sanitize_csv_value(txn.account.name if txn.account else ""),
                sanitize_csv_value(txn.category.name if txn.category else ""),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
