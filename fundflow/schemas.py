from __future__ import annotations

import json
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from fundflow.errors import ValidationError


def normalize_document_type(value: str) -> str:
    return (value or "").strip().lower()


class DocumentJob(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    fund_id: str = Field(min_length=1, validation_alias=AliasChoices("fundId", "fund_id"))
    document_type: str = Field(min_length=1, validation_alias=AliasChoices("documentType", "document_type"))
    input_bucket: str = Field(min_length=1, validation_alias=AliasChoices("inputBucket", "bucket", "input_bucket"))
    object_key: str = Field(min_length=1, validation_alias=AliasChoices("objectKey", "key", "object_key"))
    file_name: str | None = Field(default=None, validation_alias=AliasChoices("fileName", "file_name"))
    prompt_key: str | None = Field(default=None, validation_alias=AliasChoices("promptKey", "prompt_key"))
    schema_key: str | None = Field(default=None, validation_alias=AliasChoices("schemaKey", "schema_key"))

    @property
    def normalized_type(self) -> str:
        return normalize_document_type(self.document_type)

    @property
    def base_file_name(self) -> str:
        return self.file_name or self.object_key.rsplit("/", 1)[-1]


class FundBatchJob(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore", populate_by_name=True)

    fund_id: str = Field(min_length=1, validation_alias=AliasChoices("fundId", "fund_id"))
    input_files: list[str] = Field(min_length=1, validation_alias=AliasChoices("inputFiles", "input_files"))
    schema_path: str = Field(min_length=1, validation_alias=AliasChoices("schemaPath", "schema_path"))
    output_path: str = Field(min_length=1, validation_alias=AliasChoices("outputPath", "output_path"))

    def to_message(self) -> dict[str, Any]:
        return {
            "fundId": self.fund_id,
            "inputFiles": list(self.input_files),
            "schemaPath": self.schema_path,
            "outputPath": self.output_path,
        }


def decode_message_body(body: Any) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    try:
        decoded = json.loads(body or "{}")
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"message body is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("message body must be a JSON object")
    return decoded


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"{loc}: {first.get('msg', 'invalid')}" if loc else str(first.get("msg", "invalid"))


def parse_document_job(payload: dict[str, Any]) -> DocumentJob:
    try:
        return DocumentJob.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid document job: {_first_error(exc)}") from exc


def parse_batch_job(payload: dict[str, Any]) -> FundBatchJob:
    try:
        return FundBatchJob.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid batch job: {_first_error(exc)}") from exc


def is_batch_message(payload: dict[str, Any]) -> bool:
    return "inputFiles" in payload or "input_files" in payload


class CreateMemoUploadRequest(BaseModel):
    fund_name: str = Field(default="", validation_alias=AliasChoices("fundName", "fund_name"))
    file_name: str = Field(default="memo.pdf", validation_alias=AliasChoices("fileName", "file_name"))


class InitUploadRequest(BaseModel):
    fund_id: str | None = Field(default=None, validation_alias=AliasChoices("fundId", "fund_id"))
    fund_name: str = Field(default="", validation_alias=AliasChoices("fundName", "fund_name"))


class ExtractRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    file_name: str = Field(min_length=1, validation_alias=AliasChoices("fileName", "file_name"))
    document_type: str = Field(default="icmemo", validation_alias=AliasChoices("documentType", "document_type"))


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
