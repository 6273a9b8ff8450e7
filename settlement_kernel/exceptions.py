"""
Typed Exception Hierarchy for the Settlement Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Settlement errors decide whether money may move again. A caller that has to
parse a message to tell "insufficient balance" from "the transfer already
happened" will eventually retry an irreversible transfer. Every error here:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE attribute (machine-readable, API-safe)
  3. Carries structured DATA (not just a message string)

Example:
    try:
        disbursement.disburse(milestone_id, actor_id)
    except ExceedsNavError as e:
        api_response(code=e.code, nav=e.nav, requested=e.amount)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    SettlementKernelError (base)
    |
    +-- ValidationError                 bad input / missing precondition
    |   +-- InvalidValueError
    |   +-- SplitPercentageError
    |   +-- NoNavAvailableError
    |   +-- MissingBankTransferError
    |   +-- OutstandingTokensRequiredError
    |   +-- DegenerateTokenPriceError
    |   +-- InsufficientTokensError
    |   +-- WalletNotReadyError
    |
    +-- DomainStateError                wrong state for the transition
    |   +-- EntityNotFoundError
    |   +-- InvalidTransitionError
    |   +-- ExceedsNavError
    |   +-- InsufficientFundsError
    |   +-- NoEligibleHoldersError
    |   +-- AlreadySettledError
    |   +-- SettlementPendingError
    |   +-- ReconciliationRequiredError
    |   +-- WithdrawalExceedsAvailableError
    |
    +-- ExternalTransientError          stage 2 failed, nothing confirmed
    |   +-- AssetNetworkError
    |       +-- UnderfundedError
    |       +-- NoTrustlineError
    |       +-- LimitExceededError
    |       +-- NetworkTimeoutError     outcome unknown
    |
    +-- DivergenceError                 external succeeded, local did not
    |   +-- ConfirmationConflictError
    |
    +-- ImmutabilityViolationError
    +-- AuditChainBrokenError
    +-- ConfigurationError
    +-- BatchError
        +-- BatchJobNotFoundError
        +-- BatchAlreadyRunningError
        +-- BatchIdempotencyError
        +-- TaskNotRegisteredError

===============================================================================
PROPAGATION
===============================================================================

ValidationError and DomainStateError are converted to failure results at the
service boundary; nothing irreversible has happened. ExternalTransientError
carries ``retryable = True``. DivergenceError never reaches a caller as an
exception: the settlement orchestrator persists a reconciliation record and
returns a partial-success result instead.
"""

from decimal import Decimal


class SettlementKernelError(Exception):
    """Base exception for all settlement kernel errors."""

    code: str = "SETTLEMENT_KERNEL_ERROR"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# =============================================================================
# Validation errors
# =============================================================================


class ValidationError(SettlementKernelError):
    """Input rejected before any side effect."""

    code: str = "VALIDATION_ERROR"


class InvalidValueError(ValidationError):
    """A value that must be positive (or non-negative) was not."""

    code: str = "INVALID_VALUE"

    def __init__(self, field: str, value: Decimal | int | str | None, reason: str):
        self.field = field
        self.value = str(value)
        self.reason = reason
        super().__init__(f"Invalid {field} '{value}': {reason}")


class SplitPercentageError(ValidationError):
    """Percentages of a fixed split do not sum to exactly 100."""

    code: str = "SPLIT_PERCENTAGE_MISMATCH"

    def __init__(self, total: Decimal):
        self.total = str(total)
        super().__init__(f"Split percentages must sum to exactly 100, got {total}")


class NoNavAvailableError(ValidationError):
    """The project has no active NAV record."""

    code: str = "NO_NAV_AVAILABLE"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"No active NAV for project {project_id}")


class MissingBankTransferError(ValidationError):
    """Milestone disbursement requested without a bank transfer reference."""

    code: str = "MISSING_BANK_TRANSFER"

    def __init__(self, milestone_id: str):
        self.milestone_id = milestone_id
        super().__init__(
            f"Milestone {milestone_id} has no bank transfer reference on file"
        )


class OutstandingTokensRequiredError(ValidationError):
    """A token price cannot be derived with zero tokens outstanding."""

    code: str = "NO_OUTSTANDING_TOKENS"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} has no outstanding tokens")


class DegenerateTokenPriceError(ValidationError):
    """A burn would leave the project with a token price that is not positive."""

    code: str = "DEGENERATE_TOKEN_PRICE"

    def __init__(self, project_id: str, amount: Decimal, price: Decimal):
        self.project_id = project_id
        self.amount = str(amount)
        self.price = str(price)
        super().__init__(
            f"Burning {amount} leaves project {project_id} at token price {price}"
        )


class InsufficientTokensError(ValidationError):
    """Holder does not have enough liquid (unlocked) tokens."""

    code: str = "INSUFFICIENT_TOKENS"

    def __init__(self, holder_id: str, requested: Decimal, liquid: Decimal):
        self.holder_id = holder_id
        self.requested = str(requested)
        self.liquid = str(liquid)
        super().__init__(
            f"Holder {holder_id} requested {requested} tokens but only "
            f"{liquid} are liquid"
        )


class WalletNotReadyError(ValidationError):
    """Project wallet is missing or not yet funded."""

    code: str = "WALLET_NOT_READY"

    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} has no funded wallet")


# =============================================================================
# Domain-state errors
# =============================================================================


class DomainStateError(SettlementKernelError):
    """Request is well-formed but the entity is in the wrong state."""

    code: str = "DOMAIN_STATE_ERROR"


class EntityNotFoundError(DomainStateError):
    """Referenced entity does not exist."""

    code: str = "ENTITY_NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidTransitionError(DomainStateError):
    """Lifecycle transition not allowed from the current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id: str, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"{entity_type} {entity_id} cannot move from {from_status} to {to_status}"
        )


class ExceedsNavError(DomainStateError):
    """Burn amount is larger than the project's current NAV."""

    code: str = "EXCEEDS_NAV"

    def __init__(self, project_id: str, amount: Decimal, nav: Decimal):
        self.project_id = project_id
        self.amount = str(amount)
        self.nav = str(nav)
        super().__init__(
            f"Disbursement of {amount} exceeds NAV {nav} for project {project_id}"
        )


class InsufficientFundsError(DomainStateError):
    """No pool can cover the required amount."""

    code: str = "INSUFFICIENT_FUNDS"

    def __init__(self, required: Decimal, breakdown: list[dict] | None = None):
        self.required = str(required)
        self.breakdown = breakdown or []
        super().__init__(f"No funding source has {required} available")


class NoEligibleHoldersError(DomainStateError):
    """Allocation requested with zero total weight."""

    code: str = "NO_ELIGIBLE_HOLDERS"

    def __init__(self, context: str = ""):
        self.context = context
        suffix = f" for {context}" if context else ""
        super().__init__(f"No eligible holders with positive weight{suffix}")


class AlreadySettledError(DomainStateError):
    """The irreversible action for this entity already happened."""

    code: str = "ALREADY_SETTLED"

    def __init__(self, entity_type: str, entity_id: str, external_ref: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.external_ref = external_ref
        super().__init__(
            f"{entity_type} {entity_id} already settled with external reference "
            f"{external_ref}"
        )


class SettlementPendingError(DomainStateError):
    """A previous attempt reached the network and its outcome is unknown."""

    code: str = "SETTLEMENT_OUTCOME_UNKNOWN"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} has an external action pending with "
            "unknown outcome; verify on the network before retrying"
        )


class ReconciliationRequiredError(DomainStateError):
    """Entity is divergent and blocked until an operator resolves it."""

    code: str = "RECONCILIATION_REQUIRED"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type} {entity_id} is divergent and requires manual reconciliation"
        )


class WithdrawalExceedsAvailableError(DomainStateError):
    """Withdrawal is larger than the allocation's available amount."""

    code: str = "WITHDRAWAL_EXCEEDS_AVAILABLE"

    def __init__(self, allocation_id: str, amount: Decimal, available: Decimal):
        self.allocation_id = allocation_id
        self.amount = str(amount)
        self.available = str(available)
        super().__init__(
            f"Withdrawal {amount} exceeds available {available} on allocation "
            f"{allocation_id}"
        )


# =============================================================================
# External-transient errors
# =============================================================================


class ExternalTransientError(SettlementKernelError):
    """External step failed before any local confirmation."""

    code: str = "EXTERNAL_TRANSIENT"
    retryable: bool = True


class AssetNetworkError(ExternalTransientError):
    """Asset network rejected or failed a call."""

    code: str = "NETWORK_ERROR"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Asset network {operation} failed: {detail}")


class UnderfundedError(AssetNetworkError):
    code: str = "NETWORK_UNDERFUNDED"


class NoTrustlineError(AssetNetworkError):
    code: str = "NETWORK_NO_TRUSTLINE"


class LimitExceededError(AssetNetworkError):
    code: str = "NETWORK_LIMIT_EXCEEDED"


class NetworkTimeoutError(AssetNetworkError):
    """The call timed out; the transfer may or may not have happened."""

    code: str = "NETWORK_TIMEOUT"
    retryable: bool = False


# =============================================================================
# Divergence errors
# =============================================================================


class DivergenceError(SettlementKernelError):
    """External action succeeded but local state could not be confirmed."""

    code: str = "DIVERGENCE"


class ConfirmationConflictError(DivergenceError):
    """Compare-and-swap on confirm did not match the staged value."""

    code: str = "CONFIRMATION_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, field: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.field = field
        super().__init__(
            f"{entity_type} {entity_id} changed between stage and confirm "
            f"({field} no longer matches)"
        )


# =============================================================================
# Integrity / configuration
# =============================================================================


class ImmutabilityViolationError(SettlementKernelError):
    """Attempted to modify or delete an immutable record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


class ConfigurationError(SettlementKernelError):
    """Configuration file missing or invalid."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = errors or []
        super().__init__(message)


class AuditChainBrokenError(SettlementKernelError):
    """Recomputed audit hash or chain link does not match the stored value."""

    code: str = "AUDIT_CHAIN_BROKEN"

    def __init__(self, audit_event_id: str, expected_hash: str, actual_hash: str):
        self.audit_event_id = audit_event_id
        self.expected_hash = expected_hash
        self.actual_hash = actual_hash
        super().__init__(
            f"Audit chain broken at {audit_event_id}: expected {expected_hash}, "
            f"got {actual_hash}"
        )


# =============================================================================
# Batch
# =============================================================================


class BatchError(SettlementKernelError):
    """Base for batch job lifecycle errors."""

    code: str = "BATCH_ERROR"


class BatchJobNotFoundError(BatchError):
    code: str = "BATCH_JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Batch job {job_id} not found")


class BatchAlreadyRunningError(BatchError):
    """The job is running or has already finished."""

    code: str = "BATCH_ALREADY_RUNNING"

    def __init__(self, job_name: str, job_id: str):
        self.job_name = job_name
        self.job_id = job_id
        super().__init__(f"Batch job '{job_name}' ({job_id}) is not pending")


class BatchIdempotencyError(BatchError):
    code: str = "BATCH_IDEMPOTENCY_CONFLICT"

    def __init__(self, idempotency_key: str, existing_job_id: str):
        self.idempotency_key = idempotency_key
        self.existing_job_id = existing_job_id
        super().__init__(
            f"Idempotency key '{idempotency_key}' already used by job {existing_job_id}"
        )


class TaskNotRegisteredError(BatchError):
    code: str = "TASK_NOT_REGISTERED"

    def __init__(self, task_type: str, available: tuple[str, ...] = ()):
        self.task_type = task_type
        self.available = available
        super().__init__(
            f"No batch task registered for '{task_type}'. Available: {list(available)}"
        )
