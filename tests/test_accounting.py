import pytest

from accounting import delta, expected_balance, format_cents, inverse_delta
from csv_utils import parse_amount
from errors import ValidationFailed
from models import TransactionType


def test_income_adds_and_expense_subtracts() -> None:
    assert delta(TransactionType.income, 1_250) == 1_250
    assert delta(TransactionType.expense, 1_250) == -1_250


def test_inverse_delta_cancels_delta() -> None:
    for txn_type in TransactionType:
        assert delta(txn_type, 999) + inverse_delta(txn_type, 999) == 0


def test_expected_balance_sums_signed_legs() -> None:
    legs = [
        (TransactionType.income, 10_000),
        (TransactionType.expense, 2_500),
        (TransactionType.expense, 500),
    ]
    assert expected_balance(100_000, legs) == 107_000
    assert expected_balance(-5_000, []) == -5_000


def test_format_cents() -> None:
    assert format_cents(0) == "0.00"
    assert format_cents(5) == "0.05"
    assert format_cents(123_456) == "1234.56"
    assert format_cents(-1_999) == "-19.99"


def test_parse_amount_accepts_common_spellings() -> None:
    assert parse_amount("12.34") == 1_234
    assert parse_amount("12") == 1_200
    assert parse_amount("12,5") == 1_250
    assert parse_amount(" €1 000.00 ") == 100_000
    assert parse_amount("-20", allow_negative=True) == -2_000
    assert parse_amount("0", allow_zero=True) == 0


@pytest.mark.parametrize(
    "raw", ["abc", "", "NaN", "Infinity", "1.234", "0", "-5"]
)
def test_parse_amount_rejects_invalid_input(raw: str) -> None:
    with pytest.raises(ValidationFailed):
        parse_amount(raw)


def test_parse_amount_rejects_amounts_beyond_the_ledger_range() -> None:
    assert parse_amount("10000000000000.00") == 10**15
    assert parse_amount("-10000000000000", allow_negative=True) == -(10**15)
    for raw in ("1e20", "10000000000000.01", "92233720368547758.00"):
        with pytest.raises(ValidationFailed, match="too large"):
            parse_amount(raw, allow_negative=True)
