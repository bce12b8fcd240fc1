from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fundflow.errors import (
    ApiError,
    ConfigError,
    ConflictError,
    InvalidModelOutputError,
    NotFoundError,
    SchemaValidationFailedError,
)
from fundflow.llm_provider import EXTRACTION_SAMPLING, InferenceClient, text_block, user_message
from fundflow.models import JobOutcome
from fundflow.object_storage import ObjectStorageBackend, build_s3_uri, safe_file_name
from fundflow.ocr import OcrClient, build_document_text
from fundflow.prompts import build_extraction_prompt
from fundflow.retry import RetryPolicy, call_with_retry
from fundflow.schema_validation import parse_model_output, parse_schema_text, validate_payload
from fundflow.schemas import DocumentJob
from fundflow.status_lifecycle import Admission, StatusLifecycleController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineConfig:
    doc_bucket: str
    prompt_key: str = "icmemoextractionprompt.txt"
    schema_key: str = "schema.json"


def result_timestamp(now: datetime) -> str:
    """ISO-8601 UTC with ``:`` and ``.`` replaced so it is safe inside an object key."""
    iso = now.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S") + f".{now.microsecond // 1000:03d}Z"
    return iso.replace(":", "-").replace(".", "-")


def build_result_key(*, fund_id: str, document_type: str, file_name: str, now: datetime) -> str:
    return f"{fund_id}/{document_type}/{safe_file_name(file_name)}.{result_timestamp(now)}.json"


def failure_reason(stage: str, exc: BaseException) -> str:
    if isinstance(exc, InvalidModelOutputError):
        return exc.message
    if isinstance(exc, SchemaValidationFailedError):
        return f"Schema validation failed: {json.dumps(exc.violations, ensure_ascii=False)}"
    message = exc.message if isinstance(exc, ApiError) else str(exc) or type(exc).__name__
    return f"{stage}: {message}"


class _StageTracker:
    def __init__(self, fund_id: str) -> None:
        self.fund_id = fund_id
        self.stage = "START"

    def enter(self, stage: str, **fields: Any) -> None:
        self.stage = stage
        extras = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.info("%s fund=%s %s", stage, self.fund_id, extras)


class DocumentExtractionPipeline:
    """OCR, prompt assembly, inference, validation and persistence for one document."""

    def __init__(
        self,
        *,
        lifecycle: StatusLifecycleController,
        object_storage: ObjectStorageBackend,
        ocr: OcrClient,
        inference: InferenceClient,
        config: PipelineConfig,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.object_storage = object_storage
        self.ocr = ocr
        self.inference = inference
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

    def handle(self, job: DocumentJob) -> JobOutcome:
        return self.run(job)

    def run(self, job: DocumentJob) -> JobOutcome:
        fund_id = job.fund_id
        document_type = job.normalized_type
        logger.info(
            "START fund=%s document_type=%s input=%s",
            fund_id,
            document_type,
            build_s3_uri(job.input_bucket, job.object_key),
        )
        admission = self.lifecycle.begin_processing(
            fund_id,
            object_key=job.object_key,
            file_name=job.file_name,
            document_type=document_type,
        )
        if admission.admission is Admission.ALREADY_IN_FLIGHT:
            return JobOutcome.skipped(fund_id=fund_id, reason=admission.reason)
        if admission.admission is Admission.ALREADY_COMPLETE:
            record = admission.record
            location = None
            if record.get("result_bucket") and record.get("result_key"):
                location = build_s3_uri(str(record["result_bucket"]), str(record["result_key"]))
            return JobOutcome.completed(
                fund_id=fund_id,
                payload=admission.payload,
                result_location=location or record.get("result_path"),
                reason="already extracted",
                details={"status": record.get("status")},
            )
        if admission.admission is Admission.CONFLICT:
            return JobOutcome.failed(
                fund_id=fund_id,
                error=ConflictError(admission.reason, details={"fund_id": fund_id}),
                reason=admission.reason,
            )

        tracker = _StageTracker(fund_id)
        try:
            payload, result_key = self._extract(job, document_type, tracker)
        except Exception as exc:
            reason = failure_reason(tracker.stage, exc)
            if isinstance(exc, ApiError):
                logger.warning("stage %s failed for fund=%s: %s", tracker.stage, fund_id, reason)
            else:
                logger.exception("stage %s crashed for fund=%s", tracker.stage, fund_id)
            self.lifecycle.mark_failed(fund_id, reason)
            return JobOutcome.failed(fund_id=fund_id, error=exc, reason=reason)

        location = build_s3_uri(self.config.doc_bucket, result_key)
        logger.info("SUCCESS fund=%s result=%s", fund_id, location)
        return JobOutcome.completed(fund_id=fund_id, payload=payload, result_location=location)

    def _retrying(self, fn: Callable[[], Any], *, key: str) -> Any:
        return call_with_retry(fn, policy=self.retry_policy, key=key, sleep=self._sleep)

    def _load_config_text(self, key: str, label: str) -> str:
        try:
            return self._retrying(
                lambda: self.object_storage.get_text(bucket=self.config.doc_bucket, key=key),
                key=f"config:{key}",
            )
        except NotFoundError as exc:
            raise ConfigError(f"{label} not found at {build_s3_uri(self.config.doc_bucket, key)}") from exc

    def _extract(self, job: DocumentJob, document_type: str, tracker: _StageTracker) -> tuple[Any, str]:
        fund_id = job.fund_id

        tracker.enter("S3_HEAD_INPUT_DOC", key=job.object_key)
        info = self._retrying(
            lambda: self.object_storage.head_object(bucket=job.input_bucket, key=job.object_key),
            key=f"{fund_id}:head",
        )
        if info is None:
            raise NotFoundError(
                f"document not found: {build_s3_uri(job.input_bucket, job.object_key)}",
                code="DOCUMENT_NOT_FOUND",
            )

        prompt_key = job.prompt_key or self.config.prompt_key
        schema_key = job.schema_key or self.config.schema_key
        tracker.enter("LOAD_PROMPT_SCHEMA", prompt=prompt_key, schema=schema_key)
        system_prompt = self._load_config_text(prompt_key, "prompt template")
        schema = parse_schema_text(self._load_config_text(schema_key, "schema"))

        tracker.enter("LOAD_PDF")
        document = self._retrying(
            lambda: self.object_storage.get_object(bucket=job.input_bucket, key=job.object_key),
            key=f"{fund_id}:document",
        )

        tracker.enter("TEXTRACT_START", bytes=len(document))
        blocks = self._retrying(lambda: self.ocr.detect_text(document), key=f"{fund_id}:ocr")
        document_text = build_document_text(blocks)
        tracker.enter("TEXTRACT_DONE", blocks=len(blocks), chars=len(document_text))

        messages = [user_message(text_block(build_extraction_prompt(schema, document_text)))]
        tracker.enter("NOVA_START")
        raw_text = self._retrying(
            lambda: self.inference.generate(
                system_prompt=system_prompt,
                messages=messages,
                sampling=EXTRACTION_SAMPLING,
            ),
            key=f"{fund_id}:inference",
        )
        tracker.enter("NOVA_DONE", chars=len(raw_text))
        payload = parse_model_output(raw_text)

        tracker.enter("SCHEMA_VALIDATE")
        validate_payload(schema, payload)

        result_key = build_result_key(
            fund_id=fund_id,
            document_type=document_type,
            file_name=job.base_file_name,
            now=self._clock(),
        )
        tracker.enter("S3_WRITE_RESULT", key=result_key)
        body = json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")
        self._retrying(
            lambda: self.object_storage.put_object(
                bucket=self.config.doc_bucket,
                key=result_key,
                content_bytes=body,
                content_type="application/json",
            ),
            key=f"{fund_id}:result",
        )

        tracker.enter("DDB_PERSIST_SUCCESS")
        self.lifecycle.complete_extraction(
            fund_id,
            payload=payload,
            result_bucket=self.config.doc_bucket,
            result_key=result_key,
        )
        return payload, result_key
