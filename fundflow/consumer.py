from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from fundflow.batch_pipeline import BatchedExtractionPipeline
from fundflow.errors import ApiError, ConfigError
from fundflow.models import JobOutcome
from fundflow.queue_backend import QueueMessage
from fundflow.registry import DocumentTypeRegistry
from fundflow.schemas import decode_message_body, is_batch_message, parse_batch_job, parse_document_job
from fundflow.status_lifecycle import StatusLifecycleController

logger = logging.getLogger(__name__)

# Raised before a fund enters PROCESSING; the record is left untouched.
_UNTOUCHED_ERROR_CLASSES = {"validation", "not_found", "configuration"}


@dataclass
class BatchReport:
    failed_message_ids: list[str] = field(default_factory=list)
    outcomes: dict[str, JobOutcome] = field(default_factory=dict)

    def as_sqs_response(self) -> dict[str, Any]:
        return {"batchItemFailures": [{"itemIdentifier": message_id} for message_id in self.failed_message_ids]}

    def counts(self) -> dict[str, int]:
        summary = {"completed": 0, "skipped": 0, "failed": 0}
        for outcome in self.outcomes.values():
            summary[outcome.kind.value] += 1
        return summary


class QueueConsumer:
    """Drives one pipeline run per message and isolates failures per message."""

    def __init__(
        self,
        *,
        registry: DocumentTypeRegistry,
        lifecycle: StatusLifecycleController,
        batch_pipeline: BatchedExtractionPipeline | None = None,
    ) -> None:
        self.registry = registry
        self.lifecycle = lifecycle
        self.batch_pipeline = batch_pipeline

    def process_batch(self, messages: Iterable[QueueMessage]) -> BatchReport:
        report = BatchReport()
        for message in messages:
            outcome = self.process_message(message)
            report.outcomes[message.message_id] = outcome
            if outcome.is_failure:
                report.failed_message_ids.append(message.message_id)
        logger.info("batch processed %s failed_ids=%s", report.counts(), report.failed_message_ids)
        return report

    def process_message(self, message: QueueMessage) -> JobOutcome:
        fund_id = ""
        try:
            payload = decode_message_body(message.body)
            fund_id = str(payload.get("fundId") or payload.get("fund_id") or "").strip()
            return self._dispatch(payload)
        except ApiError as exc:
            logger.warning("message %s rejected: %s %s", message.message_id, exc.code, exc.message)
            if fund_id and exc.error_class not in _UNTOUCHED_ERROR_CLASSES:
                self.lifecycle.mark_failed(fund_id, exc.message)
            return JobOutcome.failed(fund_id=fund_id, error=exc)
        except Exception as exc:
            logger.exception("message %s crashed fund=%s", message.message_id, fund_id or "-")
            if fund_id:
                self.lifecycle.mark_failed(fund_id, f"{type(exc).__name__}: {exc}")
            return JobOutcome.failed(fund_id=fund_id, error=exc)

    def _dispatch(self, payload: dict[str, Any]) -> JobOutcome:
        if is_batch_message(payload):
            if self.batch_pipeline is None:
                raise ConfigError("batched extraction is not configured")
            return self.batch_pipeline.handle(parse_batch_job(payload))
        job = parse_document_job(payload)
        handler = self.registry.resolve(job.normalized_type)
        return handler.handle(job)
