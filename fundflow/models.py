from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class FundStatus(StrEnum):
    CREATED = "CREATED"
    UPLOADING = "UPLOADING"
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    EXTRACTED = "EXTRACTED"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


# Fields that only exist while the fund sits in a success state.
SUCCESS_ONLY_FIELDS = ("payload", "result_bucket", "result_key", "result_path")


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class OutcomeKind(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class JobOutcome:
    kind: OutcomeKind
    fund_id: str = ""
    reason: str = ""
    error: Exception | None = None
    payload: Any = None
    result_location: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def completed(
        cls,
        *,
        fund_id: str,
        payload: Any = None,
        result_location: str | None = None,
        reason: str = "",
        details: dict[str, Any] | None = None,
    ) -> "JobOutcome":
        return cls(
            kind=OutcomeKind.COMPLETED,
            fund_id=fund_id,
            payload=payload,
            result_location=result_location,
            reason=reason,
            details=dict(details or {}),
        )

    @classmethod
    def skipped(cls, *, fund_id: str, reason: str) -> "JobOutcome":
        return cls(kind=OutcomeKind.SKIPPED, fund_id=fund_id, reason=reason)

    @classmethod
    def failed(cls, *, fund_id: str, error: Exception, reason: str | None = None) -> "JobOutcome":
        code = getattr(error, "code", type(error).__name__)
        return cls(kind=OutcomeKind.FAILED, fund_id=fund_id, error=error, reason=reason or str(code))

    @property
    def is_failure(self) -> bool:
        return self.kind is OutcomeKind.FAILED
