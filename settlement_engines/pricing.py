"""
Module: settlement_engines.pricing
Responsibility:
    NAV-derived prices: token price from total NAV and outstanding supply,
    redemption value of a token amount, and NAV after a milestone burn.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Token prices carry 7 fractional digits (the network precision).
    - With no tokens outstanding the token price is the floor price
      1.0000000 rather than a division by zero.
    - Redemption values are quantized to minor units (2 dp).
"""

from decimal import Decimal

from settlement_engines.tracer import traced_engine
from settlement_kernel.db.types import (
    MONEY_DECIMAL_PLACES,
    NETWORK_DECIMAL_PLACES,
    round_money,
)
from settlement_kernel.exceptions import InvalidValueError

FLOOR_TOKEN_PRICE = Decimal("1.0000000")


@traced_engine("pricing.token_price", "1.0", fingerprint_fields=("nav", "tokens_outstanding"))
def token_price(*, nav: Decimal, tokens_outstanding: Decimal) -> Decimal:
    """nav / tokens_outstanding at 7 dp, or the floor price when nothing is outstanding."""
    if nav < 0:
        raise InvalidValueError("nav", nav, "must not be negative")
    if tokens_outstanding < 0:
        raise InvalidValueError("tokens_outstanding", tokens_outstanding, "must not be negative")
    if tokens_outstanding == 0:
        return FLOOR_TOKEN_PRICE
    return round_money(nav / tokens_outstanding, NETWORK_DECIMAL_PLACES)


@traced_engine("pricing.redemption_value", "1.0", fingerprint_fields=("tokens", "nav_per_token"))
def redemption_value(*, tokens: Decimal, nav_per_token: Decimal) -> Decimal:
    if tokens <= 0:
        raise InvalidValueError("tokens", tokens, "must be positive")
    if nav_per_token <= 0:
        raise InvalidValueError("nav_per_token", nav_per_token, "must be positive")
    return round_money(tokens * nav_per_token, MONEY_DECIMAL_PLACES)


def post_burn_nav(*, nav: Decimal, burn_amount: Decimal) -> Decimal:
    """NAV after burning ``burn_amount``.  A negative result is rejected."""
    if burn_amount <= 0:
        raise InvalidValueError("burn_amount", burn_amount, "must be positive")
    remaining = nav - burn_amount
    if remaining < 0:
        raise InvalidValueError("burn_amount", burn_amount, f"exceeds NAV {nav}")
    return remaining
