"""
In-memory asset network.

A deterministic stand-in for the external network, used by tests and local
runs.  It keeps accounts, trustlines, and balances in dictionaries, records
every call, and lets a test inject failures for the next call to a given
operation.

The issuer account has unlimited supply: a transfer from the issuer mints,
a transfer to the issuer burns.

Usage:
    network = InMemoryAssetNetwork(issuer="GISSUER")
    network.fail_next("transfer", UnderfundedError("transfer", "low balance"))
    network.timeout_next("transfer", applied=True)  # transfer lands, caller times out
    network.set_latency("transfer", 2.0)  # slower than a 1s timeout: deadline exceeded
"""

import hashlib
import secrets
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from decimal import Decimal

from settlement_kernel.exceptions import (
    AssetNetworkError,
    LimitExceededError,
    NetworkTimeoutError,
    NoTrustlineError,
    UnderfundedError,
)
from settlement_kernel.logging_config import get_logger
from settlement_kernel.network.contract import Keypair, NetworkReceipt, parse_amount

logger = get_logger("network.memory")

NATIVE_ASSET = "native"


@dataclass
class _Account:
    address: str
    trustlines: set[str] = field(default_factory=set)
    balances: dict[str, Decimal] = field(default_factory=lambda: defaultdict(Decimal))
    limits: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class NetworkCall:
    operation: str
    args: tuple


class InMemoryAssetNetwork:

    def __init__(self, issuer: str = "GISSUER", asset_code: str = "NGNTS"):
        self.issuer = issuer
        self.asset_code = asset_code
        self._accounts: dict[str, _Account] = {issuer: _Account(issuer)}
        self._failures: dict[str, deque] = defaultdict(deque)
        self._latency: dict[str, float] = {}
        self._tx_counter = 0
        self._lock = threading.Lock()
        self.calls: list[NetworkCall] = []

    # -----------------------------------------------------------------
    # Failure injection and inspection
    # -----------------------------------------------------------------

    def fail_next(self, operation: str, error: AssetNetworkError) -> None:
        """Raise ``error`` on the next call to ``operation``; nothing is applied."""
        self._failures[operation].append(("fail", error))

    def timeout_next(self, operation: str, applied: bool = False) -> None:
        """
        Time out the next call to ``operation``.

        With ``applied=True`` the effect lands on the network before the
        timeout is raised, which is the case the caller cannot tell apart.
        """
        self._failures[operation].append(("timeout", applied))

    def set_latency(self, operation: str, seconds: float) -> None:
        """
        Delay every response to ``operation`` by ``seconds``.

        A call whose timeout is shorter waits out its deadline and raises
        NetworkTimeoutError.  The effect still lands when the network accepts it.
        """
        self._latency[operation] = seconds

    def call_count(self, operation: str | None = None) -> int:
        if operation is None:
            return len(self.calls)
        return sum(1 for call in self.calls if call.operation == operation)

    def account_exists(self, address: str) -> bool:
        return address in self._accounts

    def has_trustline(self, address: str, asset_code: str) -> bool:
        account = self._accounts.get(address)
        return account is not None and asset_code in account.trustlines

    def set_limit(self, address: str, asset_code: str, limit: Decimal) -> None:
        self._accounts[address].limits[asset_code] = limit

    def seed_account(self, address: str, balance: Decimal = Decimal("0")) -> None:
        """Create a funded account with a trustline to the settlement asset, off the record."""
        account = self._accounts.setdefault(address, _Account(address))
        account.trustlines.add(self.asset_code)
        account.balances[self.asset_code] += balance

    # -----------------------------------------------------------------
    # Contract
    # -----------------------------------------------------------------

    def _next_tx_ref(self) -> str:
        self._tx_counter += 1
        return hashlib.sha256(f"tx-{self._tx_counter}".encode()).hexdigest()

    def _call(self, operation: str, args: tuple, apply, timeout: float | None):
        with self._lock:
            self.calls.append(NetworkCall(operation, args))
            pending = self._failures[operation]
            if pending:
                kind, value = pending.popleft()
                if kind == "fail":
                    logger.info(
                        "network_failure_injected",
                        extra={"operation": operation, "code": value.code},
                    )
                    raise value
                if value:
                    apply()
                logger.info(
                    "network_timeout_injected",
                    extra={"operation": operation, "applied": value},
                )
                raise NetworkTimeoutError(operation, "no response before deadline")

            latency = self._latency.get(operation, 0.0)
            if timeout is None or latency <= timeout:
                time.sleep(latency)
                return apply()

            # The response arrives after the caller's deadline.
            time.sleep(timeout)
            try:
                apply()
                landed = True
            except AssetNetworkError:
                landed = False
            logger.info(
                "network_deadline_exceeded",
                extra={"operation": operation, "timeout": timeout, "landed": landed},
            )
            raise NetworkTimeoutError(operation, f"no response within {timeout}s")

    def generate_keypair(self) -> Keypair:
        secret = "S" + secrets.token_hex(28).upper()
        address = "G" + hashlib.sha256(secret.encode()).hexdigest()[:55].upper()
        return Keypair(address=address, secret=secret)

    def create_account(
        self, address: str, starting_reserve: str, timeout: float | None = None,
    ) -> NetworkReceipt:
        reserve = parse_amount(starting_reserve)

        def apply():
            if address in self._accounts:
                return NetworkReceipt(tx_ref=None, already_exists=True)
            account = _Account(address)
            account.balances[NATIVE_ASSET] = reserve
            self._accounts[address] = account
            return NetworkReceipt(tx_ref=self._next_tx_ref())

        return self._call("create_account", (address, starting_reserve), apply, timeout)

    def establish_trustline(
        self, address: str, asset_code: str, issuer: str, timeout: float | None = None,
    ) -> NetworkReceipt:
        def apply():
            account = self._accounts.get(address)
            if account is None:
                raise AssetNetworkError("establish_trustline", f"account {address} not found")
            if issuer != self.issuer:
                raise AssetNetworkError("establish_trustline", f"unknown issuer {issuer}")
            if asset_code in account.trustlines:
                return NetworkReceipt(tx_ref=None, already_exists=True)
            account.trustlines.add(asset_code)
            return NetworkReceipt(tx_ref=self._next_tx_ref())

        return self._call("establish_trustline", (address, asset_code, issuer), apply, timeout)

    def transfer(
        self,
        from_address: str,
        to_address: str,
        asset_code: str,
        amount: str,
        timeout: float | None = None,
    ) -> NetworkReceipt:
        value = parse_amount(amount)

        def apply():
            source = self._accounts.get(from_address)
            destination = self._accounts.get(to_address)
            if source is None:
                raise AssetNetworkError("transfer", f"source {from_address} not found")
            if destination is None:
                raise NoTrustlineError("transfer", f"destination {to_address} not found")
            if to_address != self.issuer and asset_code not in destination.trustlines:
                raise NoTrustlineError("transfer", f"{to_address} has no {asset_code} trustline")
            if from_address != self.issuer and source.balances[asset_code] < value:
                raise UnderfundedError(
                    "transfer",
                    f"{from_address} holds {source.balances[asset_code]}, needs {value}",
                )
            limit = destination.limits.get(asset_code)
            if limit is not None and destination.balances[asset_code] + value > limit:
                raise LimitExceededError("transfer", f"{to_address} limit {limit}")

            if from_address != self.issuer:
                source.balances[asset_code] -= value
            if to_address != self.issuer:
                destination.balances[asset_code] += value
            return NetworkReceipt(tx_ref=self._next_tx_ref())

        return self._call(
            "transfer", (from_address, to_address, asset_code, amount), apply, timeout,
        )

    def get_balance(self, address: str, asset_code: str) -> Decimal:
        account = self._accounts.get(address)
        if account is None:
            raise AssetNetworkError("get_balance", f"account {address} not found")
        return account.balances[asset_code]


class InMemorySecretStore:

    def __init__(self):
        self._secrets: dict[str, str] = {}

    def put(self, secret: str) -> str:
        reference = f"mem:{hashlib.sha256(secret.encode()).hexdigest()[:16]}"
        self._secrets[reference] = secret
        return reference

    def get(self, reference: str) -> str:
        return self._secrets[reference]
