"""
Asset network client contract.

The settlement core depends only on this interface.  Every amount crossing
it is an exact decimal string with at most seven fractional digits; the
core never hands the network a float.

Outcomes:
    - Success returns a NetworkReceipt carrying the transaction reference.
    - "Already exists" (account or trustline) is a success with
      ``already_exists=True`` and no new reference.
    - Definite failures raise an AssetNetworkError subclass
      (UnderfundedError, NoTrustlineError, LimitExceededError).  Nothing
      happened on the network; the caller may retry.
    - NetworkTimeoutError means the outcome is unknown.  The caller must
      not resend an irreversible transfer until the outcome is established.

Every submitting call takes ``timeout``, the deadline in seconds for a
response.  No response by then is a NetworkTimeoutError.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol

from settlement_kernel.db.types import NETWORK_DECIMAL_PLACES, to_network_amount
from settlement_kernel.exceptions import InvalidValueError


@dataclass(frozen=True)
class Keypair:
    address: str
    secret: str


@dataclass(frozen=True)
class NetworkReceipt:
    tx_ref: str | None
    already_exists: bool = False


class AssetNetworkClient(Protocol):

    def generate_keypair(self) -> Keypair:
        ...

    def create_account(
        self, address: str, starting_reserve: str, timeout: float | None = None,
    ) -> NetworkReceipt:
        ...

    def establish_trustline(
        self, address: str, asset_code: str, issuer: str, timeout: float | None = None,
    ) -> NetworkReceipt:
        ...

    def transfer(
        self,
        from_address: str,
        to_address: str,
        asset_code: str,
        amount: str,
        timeout: float | None = None,
    ) -> NetworkReceipt:
        ...

    def get_balance(self, address: str, asset_code: str) -> Decimal:
        ...


class SecretStore(Protocol):
    """Holds account secrets; the database only ever stores the reference."""

    def put(self, secret: str) -> str:
        ...

    def get(self, reference: str) -> str:
        ...


def parse_amount(amount: str) -> Decimal:
    """Parse a boundary amount, rejecting anything but a positive 7 dp decimal string."""
    try:
        value = Decimal(amount)
    except (InvalidOperation, TypeError):
        raise InvalidValueError("amount", amount, "not a decimal string") from None
    if not value.is_finite() or value <= 0:
        raise InvalidValueError("amount", amount, "must be positive")
    if -value.as_tuple().exponent > NETWORK_DECIMAL_PLACES:
        raise InvalidValueError(
            "amount", amount, f"more than {NETWORK_DECIMAL_PLACES} fractional digits",
        )
    return value


format_amount = to_network_amount
