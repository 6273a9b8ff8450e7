"""
OperationResult -- the value every settlement entry point returns.

Three shapes:

    OperationResult.ok(data)            {"success": True, "data": ...}
    OperationResult.fail(exc)           {"success": False, "error": ..., "code": ...}
    OperationResult.partial(ref, rid)   {"partial_success": True,
                                         "external_ref": ...,
                                         "requires_manual_reconciliation": True,
                                         "reconciliation_id": ...}

The partial shape is produced only by the settlement orchestrator's
divergence path.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from settlement_kernel.exceptions import SettlementKernelError


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL_SUCCESS = "partial_success"


@dataclass(frozen=True)
class OperationResult:
    status: ResultStatus
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    code: str | None = None
    retryable: bool = False
    external_ref: str | None = None
    reconciliation_id: str | None = None

    @classmethod
    def ok(cls, data: dict[str, Any] | None = None) -> "OperationResult":
        return cls(status=ResultStatus.SUCCESS, data=data or {})

    @classmethod
    def fail(
        cls,
        error: SettlementKernelError | str,
        code: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> "OperationResult":
        if isinstance(error, SettlementKernelError):
            return cls(
                status=ResultStatus.FAILURE,
                error=str(error),
                code=code or error.code,
                retryable=error.retryable,
                data=data or {},
            )
        return cls(
            status=ResultStatus.FAILURE,
            error=error,
            code=code or "ERROR",
            data=data or {},
        )

    @classmethod
    def partial(
        cls,
        external_ref: str,
        reconciliation_id: str | None,
        data: dict[str, Any] | None = None,
    ) -> "OperationResult":
        return cls(
            status=ResultStatus.PARTIAL_SUCCESS,
            external_ref=external_ref,
            reconciliation_id=reconciliation_id,
            data=data or {},
        )

    @property
    def success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @property
    def partial_success(self) -> bool:
        return self.status == ResultStatus.PARTIAL_SUCCESS

    @property
    def requires_manual_reconciliation(self) -> bool:
        return self.status == ResultStatus.PARTIAL_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        match self.status:
            case ResultStatus.SUCCESS:
                return {"success": True, "data": self.data}
            case ResultStatus.FAILURE:
                body: dict[str, Any] = {
                    "success": False,
                    "error": self.error,
                    "code": self.code,
                }
                if self.retryable:
                    body["retryable"] = True
                if self.data:
                    body["data"] = self.data
                return body
            case ResultStatus.PARTIAL_SUCCESS:
                return {
                    "partial_success": True,
                    "external_ref": self.external_ref,
                    "requires_manual_reconciliation": True,
                    "reconciliation_id": self.reconciliation_id,
                }
