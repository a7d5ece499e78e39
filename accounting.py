"""Balance accounting rules.

Every transaction contributes a signed delta to the balance of the account it
is posted on. These helpers are the only place that sign convention lives;
the services apply their results to the store.
"""

from typing import Iterable

from models import TransactionType


def delta(type: TransactionType, amount_cents: int) -> int:
    if type == TransactionType.income:
        return amount_cents
    return -amount_cents


def inverse_delta(type: TransactionType, amount_cents: int) -> int:
    """Delta that undoes ``delta(type, amount_cents)``, used on archive."""
    return -delta(type, amount_cents)


def expected_balance(
    initial_balance_cents: int, legs: Iterable[tuple[TransactionType, int]]
) -> int:
    return initial_balance_cents + sum(delta(t, amount) for t, amount in legs)


def format_cents(cents: int) -> str:
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"
