"""Closed sets of names shared by configuration, engines, and services."""

from enum import Enum


class FundingSource(str, Enum):
    """Ordered candidates for paying out a redemption."""

    PROJECT_CASHFLOW = "project_cashflow"
    TREASURY = "treasury"
    LIQUIDITY_POOL = "liquidity_pool"


class RevenueDestination(str, Enum):
    """Buckets of the fixed revenue split."""

    TOKEN_HOLDERS = "token_holders"
    LIQUIDITY_POOL = "liquidity_pool"
    TREASURY = "treasury"
    PROJECT_REINVESTMENT = "project_reinvestment"


class LiquidityProviderSplit(str, Enum):
    """How the liquidity share is divided across providers."""

    EQUAL = "equal"
    CONTRIBUTION_WEIGHTED = "contribution_weighted"
