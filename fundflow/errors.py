from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class NotFoundError(ApiError):
    def __init__(self, message: str = "fund not found", *, code: str = "FUND_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="not_found",
            retryable=False,
            http_status=404,
        )


class ConflictError(ApiError):
    def __init__(self, message: str, *, code: str = "FUND_CONFLICT", details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="conflict",
            retryable=False,
            http_status=409,
            details=details,
        )


class ConditionFailedError(ConflictError):
    """Raised by record stores when a conditional write does not apply."""

    def __init__(self, fund_id: str) -> None:
        super().__init__(f"conditional update rejected for fund {fund_id}", code="CONDITION_FAILED")
        self.fund_id = fund_id


class ConfigError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="CONFIG_ERROR",
            message=message,
            error_class="configuration",
            retryable=False,
            http_status=500,
        )


class InvalidModelOutputError(ApiError):
    def __init__(self, message: str = "Model output was not valid JSON") -> None:
        super().__init__(
            code="INVALID_MODEL_OUTPUT",
            message=message,
            error_class="model_output",
            retryable=False,
            http_status=500,
        )


class SchemaValidationFailedError(ApiError):
    def __init__(self, violations: list[dict[str, Any]]) -> None:
        super().__init__(
            code="SCHEMA_VALIDATION_FAILED",
            message=f"Schema validation failed with {len(violations)} violation(s)",
            error_class="validation",
            retryable=False,
            http_status=422,
            details={"violations": violations},
        )
        self.violations = violations


class UnsupportedDocumentTypeError(ApiError):
    def __init__(self, document_type: str) -> None:
        super().__init__(
            code="UNSUPPORTED_DOCUMENT_TYPE",
            message=f"Unsupported documentType: {document_type}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
        self.document_type = document_type


class ValidationError(ApiError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class NoDocumentsError(ApiError):
    def __init__(self, fund_id: str) -> None:
        super().__init__(
            code="NO_DOCUMENTS",
            message="No documents uploaded yet",
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"fund_id": fund_id},
        )


class UpstreamServiceError(ApiError):
    """Wraps failures of the object store, OCR or inference services."""

    def __init__(self, service: str, message: str, *, retryable: bool) -> None:
        super().__init__(
            code=f"{service.upper()}_FAILED",
            message=message,
            error_class="upstream",
            retryable=retryable,
            http_status=502 if retryable else 500,
        )
        self.service = service
