import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d/%m/%y",
    "%d-%m-%Y",
    "%d.%m.%Y",
)
_DAY_MONTH_FORMATS = ("%d/%m", "%d-%m")


def parse_amount(value: str) -> int:
    """Parse a money string from a bank message into cents.

    Handles currency symbols and both ``1,234.56`` and ``1.234,56``. A lone
    separator followed by exactly three digits is read as a thousands
    separator (``$1,500`` is fifteen hundred).
    """
    clean = re.sub(r"[^\d,.]", "", value.strip())
    if not clean or not any(ch.isdigit() for ch in clean):
        raise ValueError("Invalid amount")

    last_sep = max(clean.rfind(","), clean.rfind("."))
    if last_sep == -1:
        normalized = clean
    elif len(clean) - last_sep - 1 == 3:
        normalized = clean.replace(",", "").replace(".", "")
    else:
        integer_part = clean[:last_sep].replace(",", "").replace(".", "")
        normalized = f"{integer_part or '0'}.{clean[last_sep + 1:]}"

    try:
        amount = Decimal(normalized)
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_date(value: str, *, reference: Optional[date] = None) -> date:
    """Parse a date captured from a notification.

    Day/month-only values take the year of ``reference``.
    """
    value = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    if reference is not None:
        for fmt in _DAY_MONTH_FORMATS:
            try:
                parsed = datetime.strptime(f"{value}/{reference.year}", f"{fmt}/%Y")
            except ValueError:
                continue
            return parsed.date()
    raise ValueError(f"Invalid date: {value}")


def clean_text(value: Optional[str], *, max_length: int) -> Optional[str]:
    if value is None:
        return None
    collapsed = " ".join(value.split())
    if not collapsed:
        return None
    return collapsed[:max_length]
