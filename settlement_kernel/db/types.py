"""
Module: settlement_kernel.db.types
Responsibility: Column helpers and the sanctioned money conversions.
    Internal money is Numeric(38, 9); ledger amounts are quantized to minor
    units (2 dp); asset network amounts are exact strings at 7 dp.
Architecture position: Kernel > DB.  MUST NOT import from models/, domain/,
    or services/.

Invariants enforced:
    - No floats anywhere.  Amounts are Decimal with explicit precision.
    - round_money() is the only rounding function for ledger values.
    - to_network_amount() is the only formatter for the network boundary
      and never drops precision.
"""

from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from sqlalchemy import Enum as SAEnum

from settlement_kernel.exceptions import InvalidValueError

STORAGE_DECIMAL_PLACES = 9
MONEY_DECIMAL_PLACES = 2
NETWORK_DECIMAL_PLACES = 7
PERCENT_DECIMAL_PLACES = 7
DEFAULT_ROUNDING = ROUND_HALF_UP


def decimal_from_db(value) -> Decimal:
    """Normalize a numeric value read back from the database to a 9 dp Decimal.

    SQLite returns aggregates such as SUM() as floats.
    """
    if value is None:
        return Decimal("0")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(Decimal(1).scaleb(-STORAGE_DECIMAL_PLACES))


def money_from_int(value: int, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """
    Create a Money value from integer minor units.

    Example:
        money_from_int(1050, 2) -> Decimal("10.50")
    """
    return (Decimal(value) / (Decimal(10) ** decimal_places)).quantize(
        Decimal(1).scaleb(-decimal_places)
    )


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value to the given number of decimal places."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def require_minor_units(value: Decimal, field: str) -> Decimal:
    """Reject a ledger amount carrying more than 2 fractional digits."""
    if value != round_money(value):
        raise InvalidValueError(
            field, value, f"more than {MONEY_DECIMAL_PLACES} fractional digits",
        )
    return value


def to_network_amount(value: Decimal) -> str:
    """Format an amount for the asset network boundary (7 fractional digits).

    Raises InvalidValueError rather than dropping digits the network
    cannot carry.
    """
    quantized = value.quantize(Decimal(1).scaleb(-NETWORK_DECIMAL_PLACES))
    if quantized != value:
        raise InvalidValueError(
            "amount", value, f"more than {NETWORK_DECIMAL_PLACES} fractional digits",
        )
    return format(quantized, "f")


def enum_column(enum_cls: type[Enum]) -> SAEnum:
    """String-backed enum column storing member values, loading enum members."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
        length=50,
    )
