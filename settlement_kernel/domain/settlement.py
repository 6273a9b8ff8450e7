"""
Settlement state machine shared by every two-phase flow.

    IDLE --> STAGED --> EXTERNAL_PENDING --> CONFIRMED
                ^              |
                |              +--------> DIVERGENT (terminal until resolved)
                +--- (definite external failure, or operator release)

STAGED means local intent is durable and nothing has been sent to the
network.  EXTERNAL_PENDING means the irreversible call may have happened;
no automatic retry is allowed from here.  DIVERGENT means the external call
succeeded and local confirmation failed; a reconciliation record exists.
"""

from enum import Enum


class SettlementState(str, Enum):
    IDLE = "idle"
    STAGED = "staged"
    EXTERNAL_PENDING = "external_pending"
    CONFIRMED = "confirmed"
    DIVERGENT = "divergent"


VALID_SETTLEMENT_TRANSITIONS: dict[SettlementState, frozenset[SettlementState]] = {
    SettlementState.IDLE: frozenset({SettlementState.STAGED, SettlementState.EXTERNAL_PENDING}),
    SettlementState.STAGED: frozenset(
        {SettlementState.EXTERNAL_PENDING, SettlementState.CONFIRMED}
    ),
    SettlementState.EXTERNAL_PENDING: frozenset(
        {
            SettlementState.CONFIRMED,
            SettlementState.DIVERGENT,
            SettlementState.STAGED,
        }
    ),
    SettlementState.CONFIRMED: frozenset(),
    SettlementState.DIVERGENT: frozenset({SettlementState.CONFIRMED}),
}


def can_transition(current: SettlementState, target: SettlementState) -> bool:
    return target in VALID_SETTLEMENT_TRANSITIONS[current]
