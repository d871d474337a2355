from datetime import date

import pytest

from parsing import clean_text, parse_amount, parse_date


@pytest.mark.parametrize(
    ("raw", "cents"),
    [
        ("$500", 50_000),
        ("$1,500.00", 150_000),
        ("1.234,56", 123_456),
        ("$1,500", 150_000),
        ("MXN 89.9", 8_990),
        ("12,5", 1_250),
    ],
)
def test_parse_amount(raw: str, cents: int) -> None:
    assert parse_amount(raw) == cents


def test_parse_amount_rejects_text() -> None:
    with pytest.raises(ValueError, match="Invalid amount"):
        parse_amount("sin monto")


def test_parse_date_formats() -> None:
    assert parse_date("2025-03-05") == date(2025, 3, 5)
    assert parse_date("05/03/2025") == date(2025, 3, 5)
    assert parse_date("05.03.2025") == date(2025, 3, 5)


def test_parse_day_month_uses_reference_year() -> None:
    assert parse_date("05/03", reference=date(2025, 6, 1)) == date(2025, 3, 5)
    with pytest.raises(ValueError):
        parse_date("05/03")


def test_clean_text_collapses_whitespace() -> None:
    assert clean_text("  OXXO   Centro ", max_length=100) == "OXXO Centro"
    assert clean_text("   ", max_length=100) is None
    assert clean_text("abcdef", max_length=3) == "abc"
