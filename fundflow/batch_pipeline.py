from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fundflow.errors import ApiError, ConfigError, ConflictError, NotFoundError
from fundflow.llm_provider import BATCH_SAMPLING, InferenceClient, text_block, user_message
from fundflow.models import JobOutcome, utcnow_iso
from fundflow.object_storage import ObjectStorageBackend, build_s3_uri, ensure_trailing_slash, parse_s3_uri
from fundflow.pipeline import failure_reason
from fundflow.queue_backend import QueueBackend
from fundflow.retry import RetryPolicy, call_with_retry
from fundflow.schemas import FundBatchJob
from fundflow.status_lifecycle import Admission, StatusLifecycleController

logger = logging.getLogger(__name__)

BATCH_DOCUMENT_TYPE = "rulesengine"
SCHEMA_DOCUMENT_NAME = "RulesEngineJSONSchema"
RESULT_FILE_NAME = "rules-engine.json"
GROUP_SIZE = 5
SEGMENT_SEPARATOR = "\n\n"
GROUP_SEPARATOR = "\n\n----------------\n\n"


@dataclass(frozen=True)
class ManifestEntry:
    name: str
    format: str
    uri: str

    def as_content_block(self) -> dict[str, Any]:
        return {
            "document": {
                "name": self.name,
                "format": self.format,
                "source": {"s3Location": {"uri": self.uri}},
            }
        }


def build_manifest(*, schema_path: str, input_files: list[str]) -> list[ManifestEntry]:
    entries = [ManifestEntry(name=SCHEMA_DOCUMENT_NAME, format="txt", uri=schema_path)]
    entries.extend(
        ManifestEntry(name=f"pdf_{index}", format="pdf", uri=uri) for index, uri in enumerate(input_files, start=1)
    )
    return entries


def chunk(items: list[Any], size: int) -> list[list[Any]]:
    step = max(1, int(size))
    return [items[start : start + step] for start in range(0, len(items), step)]


def batch_object_key(fund_id: str) -> str:
    return f"{fund_id}/files/"


class BatchedExtractionPipeline:
    """Merges all of a fund's uploaded documents into grouped inference calls.

    Gated per fund rather than per document: the admission key is the
    fund's upload namespace and the terminal status is SUCCEEDED.
    """

    def __init__(
        self,
        *,
        lifecycle: StatusLifecycleController,
        object_storage: ObjectStorageBackend,
        inference: InferenceClient,
        prompt_uri: str,
        success_queue: QueueBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        group_size: int = GROUP_SIZE,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.lifecycle = lifecycle
        self.object_storage = object_storage
        self.inference = inference
        self.prompt_uri = prompt_uri
        self.success_queue = success_queue
        self.retry_policy = retry_policy or RetryPolicy()
        self.group_size = max(1, int(group_size))
        self._sleep = sleep

    def handle(self, job: FundBatchJob) -> JobOutcome:
        return self.run(job)

    def run(self, job: FundBatchJob) -> JobOutcome:
        fund_id = job.fund_id
        logger.info("BATCH_START fund=%s input_files=%d", fund_id, len(job.input_files))
        admission = self.lifecycle.begin_processing(
            fund_id,
            object_key=batch_object_key(fund_id),
            file_name=None,
            document_type=BATCH_DOCUMENT_TYPE,
        )
        if admission.admission is Admission.ALREADY_IN_FLIGHT:
            return JobOutcome.skipped(fund_id=fund_id, reason=admission.reason)
        if admission.admission is Admission.ALREADY_COMPLETE:
            return JobOutcome.completed(
                fund_id=fund_id,
                result_location=admission.record.get("result_path"),
                reason="already succeeded",
                details={"status": admission.record.get("status")},
            )
        if admission.admission is Admission.CONFLICT:
            return JobOutcome.failed(
                fund_id=fund_id,
                error=ConflictError(admission.reason, details={"fund_id": fund_id}),
                reason=admission.reason,
            )

        stage = "LOAD_PROMPT"
        try:
            prompt = self._load_prompt()

            stage = "BEDROCK_BATCHES"
            output = self._infer(fund_id, build_manifest(schema_path=job.schema_path, input_files=job.input_files), prompt)

            stage = "S3_WRITE_RESULT"
            result_path = self._write_result(job.output_path, output)

            stage = "DDB_PERSIST_SUCCESS"
            self.lifecycle.mark_succeeded(fund_id, result_path=result_path, output_files=[result_path])

            stage = "NOTIFY_SUCCESS"
            self._notify(job, result_path)
        except Exception as exc:
            reason = failure_reason(stage, exc)
            if isinstance(exc, ApiError):
                logger.warning("batch stage %s failed for fund=%s: %s", stage, fund_id, reason)
            else:
                logger.exception("batch stage %s crashed for fund=%s", stage, fund_id)
            self.lifecycle.mark_failed(fund_id, reason)
            return JobOutcome.failed(fund_id=fund_id, error=exc, reason=reason)

        logger.info("BATCH_DONE fund=%s result=%s", fund_id, result_path)
        return JobOutcome.completed(fund_id=fund_id, result_location=result_path)

    def _retrying(self, fn: Callable[[], Any], *, key: str) -> Any:
        return call_with_retry(fn, policy=self.retry_policy, key=key, sleep=self._sleep)

    def _load_prompt(self) -> str:
        try:
            bucket, key = parse_s3_uri(self.prompt_uri)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        try:
            prompt = self._retrying(lambda: self.object_storage.get_text(bucket=bucket, key=key), key="config:batch-prompt")
        except NotFoundError as exc:
            raise ConfigError(f"batch prompt not found at {self.prompt_uri}") from exc
        logger.info("batch prompt loaded uri=%s chars=%d", self.prompt_uri, len(prompt))
        return prompt

    def _infer(self, fund_id: str, manifest: list[ManifestEntry], prompt: str) -> str:
        outputs: list[str] = []
        groups = chunk(manifest, self.group_size)
        for index, group in enumerate(groups, start=1):
            messages = [user_message(*(entry.as_content_block() for entry in group), text_block(prompt))]
            started = time.monotonic()
            segments = self._retrying(
                lambda: self.inference.generate_segments(system_prompt=None, messages=messages, sampling=BATCH_SAMPLING),
                key=f"{fund_id}:batch:{index}",
            )
            text = SEGMENT_SEPARATOR.join(segment for segment in segments if segment)
            logger.info(
                "batch %d/%d fund=%s docs=%d chars=%d duration_ms=%.1f",
                index,
                len(groups),
                fund_id,
                len(group),
                len(text),
                (time.monotonic() - started) * 1000,
            )
            outputs.append(text)
        return GROUP_SEPARATOR.join(outputs)

    def _write_result(self, output_path: str, output: str) -> str:
        try:
            bucket, key = parse_s3_uri(output_path)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        output_key = f"{ensure_trailing_slash(key)}{RESULT_FILE_NAME}"
        self._retrying(
            lambda: self.object_storage.put_object(
                bucket=bucket,
                key=output_key,
                content_bytes=output.encode("utf-8"),
                content_type="application/json",
            ),
            key=f"write:{output_key}",
        )
        return build_s3_uri(bucket, output_key)

    def _notify(self, job: FundBatchJob, result_path: str) -> None:
        if self.success_queue is None:
            logger.info("no success queue configured, skipping notification for fund=%s", job.fund_id)
            return
        self.success_queue.send(
            {
                "fundId": job.fund_id,
                "inputFiles": list(job.input_files),
                "outputFiles": [result_path],
                "status": "SUCCEEDED",
                "timestamp": utcnow_iso(),
            }
        )
