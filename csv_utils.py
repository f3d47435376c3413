import csv
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from io import StringIO
from typing import Optional, Sequence

from models import Transaction, TransactionType
from schemas import CSVRow


CSV_HEADERS = ["ID", "Account", "Amount", "Type", "Category", "Date", "Description"]
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_AMOUNT = Decimal("1000000000000")


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


def format_date(value: datetime) -> str:
    return value.strftime(DATE_FORMAT)


def parse_date(value: str) -> datetime:
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT)
    except ValueError as exc:
        raise ValueError("Invalid date format. Use yyyy-MM-dd HH:mm:ss") from exc


def parse_amount(value: str) -> Decimal:
    clean = value.strip()
    try:
        amount = Decimal(clean)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be positive")
    if amount >= MAX_AMOUNT:
        raise ValueError("Amount is too large")
    if amount.normalize().as_tuple().exponent < -2:
        raise ValueError("Amount cannot have more than 2 decimal places")
    return amount


def parse_type(value: str) -> TransactionType:
    try:
        return TransactionType(value.strip().upper())
    except ValueError as exc:
        raise ValueError("Invalid transaction type. Must be INCOME or EXPENSE") from exc


def parse_csv(
    content: str, *, now: Optional[datetime] = None
) -> tuple[list[CSVRow], list[str]]:
    reader = csv.DictReader(StringIO(content))
    rows: list[CSVRow] = []
    errors: list[str] = []
    for raw in reader:
        # physical line, so skipped blank lines still count
        line = reader.line_num
        try:
            amount = parse_amount(raw.get("Amount") or "")
            txn_type = parse_type(raw.get("Type") or "")
            txn_date = parse_date(raw.get("Date") or "")
            if now is not None and txn_date > now:
                raise ValueError("Date cannot be in the future")
            category = (raw.get("Category") or "").strip()
            if not category:
                raise ValueError("Category is required")
            description_raw = (raw.get("Description") or "").strip()
            rows.append(
                CSVRow(
                    line=line,
                    amount=amount,
                    type=txn_type,
                    category=category,
                    date=txn_date,
                    description=description_raw or None,
                )
            )
        except ValueError as exc:
            errors.append(f"Line {line}: {exc}")
    return rows, errors


def export_transactions(transactions: Sequence[Transaction]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADERS)
    for txn in transactions:
        writer.writerow(
            [
                txn.id,
                sanitize_csv_value(txn.account.name if txn.account else ""),
                f"{txn.amount:.2f}",
                txn.type.value,
                sanitize_csv_value(txn.category),
                format_date(txn.date),
                sanitize_csv_value(txn.description or ""),
            ]
        )
    return output.getvalue()
