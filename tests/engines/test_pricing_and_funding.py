"""
Tests for settlement_engines.pricing and settlement_engines.funding.
"""

from decimal import Decimal

import pytest

from settlement_engines.funding import FundingCandidate, select_funding_source
from settlement_engines.pricing import (
    FLOOR_TOKEN_PRICE,
    post_burn_nav,
    redemption_value,
    token_price,
)
from settlement_kernel.domain.types import FundingSource
from settlement_kernel.exceptions import InsufficientFundsError, InvalidValueError


class TestTokenPrice:

    def test_nav_over_outstanding_at_seven_places(self):
        assert token_price(nav=Decimal("1000"), tokens_outstanding=Decimal("3")) == Decimal(
            "333.3333333"
        )

    def test_floor_price_when_nothing_outstanding(self):
        assert token_price(nav=Decimal("5000"), tokens_outstanding=Decimal("0")) == FLOOR_TOKEN_PRICE
        assert FLOOR_TOKEN_PRICE == Decimal("1.0000000")

    def test_negative_nav_rejected(self):
        with pytest.raises(InvalidValueError):
            token_price(nav=Decimal("-1"), tokens_outstanding=Decimal("10"))


class TestRedemptionValue:

    def test_rounds_to_cents(self):
        assert redemption_value(
            tokens=Decimal("3"), nav_per_token=Decimal("3.3333333"),
        ) == Decimal("10.00")

    def test_half_up(self):
        assert redemption_value(
            tokens=Decimal("1"), nav_per_token=Decimal("0.0050000"),
        ) == Decimal("0.01")

    @pytest.mark.parametrize("tokens,price", [
        (Decimal("0"), Decimal("1")),
        (Decimal("1"), Decimal("0")),
    ])
    def test_non_positive_rejected(self, tokens, price):
        with pytest.raises(InvalidValueError):
            redemption_value(tokens=tokens, nav_per_token=price)


class TestPostBurnNav:

    def test_reduces_nav(self):
        assert post_burn_nav(nav=Decimal("10000"), burn_amount=Decimal("2500")) == Decimal("7500")

    def test_burn_to_zero_allowed(self):
        assert post_burn_nav(nav=Decimal("100"), burn_amount=Decimal("100")) == Decimal("0")

    def test_negative_result_rejected(self):
        with pytest.raises(InvalidValueError):
            post_burn_nav(nav=Decimal("100"), burn_amount=Decimal("100.01"))


class TestFundingSelection:

    def test_first_sufficient_source_in_order(self):
        decision = select_funding_source(
            required=Decimal("50"),
            candidates=[
                FundingCandidate(FundingSource.PROJECT_CASHFLOW, Decimal("10")),
                FundingCandidate(FundingSource.TREASURY, Decimal("500"), Decimal("100")),
                FundingCandidate(FundingSource.LIQUIDITY_POOL, Decimal("1000")),
            ],
        )
        assert decision.source == FundingSource.TREASURY
        assert decision.available == Decimal("400")
        assert len(decision.breakdown) == 3

    def test_reserve_floor_blocks_source(self):
        """balance 100, reserve 20, request 85: only 80 is available."""
        with pytest.raises(InsufficientFundsError) as exc_info:
            select_funding_source(
                required=Decimal("85"),
                candidates=[FundingCandidate(FundingSource.TREASURY, Decimal("100"), Decimal("20"))],
            )

        breakdown = exc_info.value.breakdown
        assert breakdown[0]["available"] == "80"
        assert breakdown[0]["sufficient"] is False

    def test_exact_available_is_sufficient(self):
        decision = select_funding_source(
            required=Decimal("80"),
            candidates=[FundingCandidate(FundingSource.TREASURY, Decimal("100"), Decimal("20"))],
        )
        assert decision.source == FundingSource.TREASURY

    def test_never_splits_across_sources(self):
        with pytest.raises(InsufficientFundsError):
            select_funding_source(
                required=Decimal("100"),
                candidates=[
                    FundingCandidate(FundingSource.PROJECT_CASHFLOW, Decimal("60")),
                    FundingCandidate(FundingSource.TREASURY, Decimal("60")),
                ],
            )

    def test_non_positive_requirement_rejected(self):
        with pytest.raises(InvalidValueError):
            select_funding_source(required=Decimal("0"), candidates=[])
