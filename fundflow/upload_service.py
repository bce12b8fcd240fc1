from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fundflow.errors import ConditionFailedError, ConflictError, NoDocumentsError
from fundflow.models import FundStatus
from fundflow.object_storage import ObjectInfo, ObjectStorageBackend, build_s3_uri
from fundflow.queue_backend import QueueBackend
from fundflow.schemas import FundBatchJob
from fundflow.status_lifecycle import StatusLifecycleController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadConfig:
    documents_bucket: str
    doc_bucket: str
    batch_schema_key: str = "RulesEngineJSONSchema.txt"
    presign_expires_s: int = 900


def new_fund_id() -> str:
    return f"INT#{uuid.uuid4()}"


def archive_timestamp(now: datetime) -> str:
    return now.astimezone(UTC).isoformat().replace("+00:00", "Z").replace(":", "-")


def _parse_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class UploadService:
    def __init__(
        self,
        *,
        lifecycle: StatusLifecycleController,
        object_storage: ObjectStorageBackend,
        job_queue: QueueBackend,
        config: UploadConfig,
        id_factory: Callable[[], str] = new_fund_id,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.lifecycle = lifecycle
        self.object_storage = object_storage
        self.job_queue = job_queue
        self.config = config
        self._id_factory = id_factory
        self._clock = clock or (lambda: datetime.now(UTC))

    @staticmethod
    def files_prefix(fund_id: str) -> str:
        return f"{fund_id}/files/"

    @staticmethod
    def results_prefix(fund_id: str) -> str:
        return f"{fund_id}/results/"

    def create_memo_upload(self, *, fund_name: str = "", file_name: str = "memo.pdf") -> dict[str, Any]:
        """Single-memo flow: fresh fund record plus a presigned PUT for ``<fundId>/<fileName>``."""
        fund_id = self._id_factory()
        file_name = (file_name or "").strip() or "memo.pdf"
        object_key = f"{fund_id}/{file_name}"
        try:
            self.lifecycle.create(
                fund_id,
                status=FundStatus.UPLOADING,
                fund_name=fund_name or None,
                bucket=self.config.doc_bucket,
                file_name=file_name,
                object_key=object_key,
            )
        except ConditionFailedError as exc:
            raise ConflictError(f"fund {fund_id} already exists", details={"fund_id": fund_id}) from exc
        upload_url = self.object_storage.presign_put(
            bucket=self.config.doc_bucket,
            key=object_key,
            content_type="application/pdf",
            expires_s=self.config.presign_expires_s,
        )
        logger.info("memo upload created fund=%s key=%s", fund_id, object_key)
        return {
            "fundId": fund_id,
            "uploadUrl": upload_url,
            "bucket": self.config.doc_bucket,
            "objectKey": object_key,
            "expiresIn": self.config.presign_expires_s,
        }

    def init_upload(self, *, fund_id: str | None = None, fund_name: str = "") -> dict[str, Any]:
        """Open (or re-open) a fund's multi-document upload namespace."""
        fund_id = (fund_id or "").strip() or self._id_factory()
        bucket = self.config.documents_bucket
        files_prefix = self.files_prefix(fund_id)
        fields = {
            "upload_prefix": build_s3_uri(bucket, files_prefix),
            "result_prefix": build_s3_uri(bucket, self.results_prefix(fund_id)),
            "schema_path": build_s3_uri(bucket, self.config.batch_schema_key),
            "upload_started_at": self._clock().astimezone(UTC).isoformat(),
        }
        if fund_name:
            fields["fund_name"] = fund_name

        existing = self.lifecycle.store.get(fund_id)
        try:
            if existing is None:
                record = self.lifecycle.create(fund_id, status=FundStatus.UPLOADING, **fields)
            else:
                record = self.lifecycle.mark_uploading(fund_id, **fields)
        except ConditionFailedError as exc:
            raise ConflictError(
                f"fund {fund_id} is currently processing; re-upload refused",
                details={"fund_id": fund_id},
            ) from exc

        for marker in (f"{fund_id}/", files_prefix, f"{fund_id}/archive/", self.results_prefix(fund_id)):
            self.object_storage.put_object(bucket=bucket, key=marker, content_bytes=b"")

        presigned = self.object_storage.presign_post(
            bucket=bucket,
            prefix=files_prefix,
            expires_s=self.config.presign_expires_s,
        )
        logger.info("upload initiated fund=%s reupload=%s", fund_id, existing is not None)
        return {
            "fundId": fund_id,
            "status": record.get("status"),
            "uploadPrefix": fields["upload_prefix"],
            "presignedPost": presigned,
            "expiresIn": self.config.presign_expires_s,
        }

    def _archive(self, fund_id: str, stale: list[ObjectInfo]) -> int:
        if not stale:
            return 0
        bucket = self.config.documents_bucket
        files_prefix = self.files_prefix(fund_id)
        archive_prefix = f"{fund_id}/archive/{archive_timestamp(self._clock())}/"
        for info in stale:
            self.object_storage.copy_object(
                bucket=bucket,
                src_key=info.key,
                dst_key=archive_prefix + info.key[len(files_prefix) :],
            )
        self.object_storage.delete_objects(bucket=bucket, keys=[info.key for info in stale])
        logger.info("archived %d prior upload(s) fund=%s prefix=%s", len(stale), fund_id, archive_prefix)
        return len(stale)

    def complete_upload(self, fund_id: str) -> dict[str, Any]:
        record = self.lifecycle.get(fund_id)
        bucket = self.config.documents_bucket
        files_prefix = self.files_prefix(fund_id)
        started_at = _parse_iso(record.get("upload_started_at"))

        uploaded = [
            info
            for info in self.object_storage.iter_objects(bucket=bucket, prefix=files_prefix)
            if info.size > 0 and info.key != files_prefix
        ]
        stale = [info for info in uploaded if started_at is not None and info.last_modified < started_at]
        current = [info for info in uploaded if info not in stale]
        archived = self._archive(fund_id, stale)
        if not current:
            logger.warning("no documents uploaded fund=%s prefix=%s", fund_id, files_prefix)
            raise NoDocumentsError(fund_id)

        input_files = [build_s3_uri(bucket, info.key) for info in current]
        schema_path = str(record.get("schema_path") or build_s3_uri(bucket, self.config.batch_schema_key))
        output_path = build_s3_uri(bucket, self.results_prefix(fund_id))
        updated = self.lifecycle.mark_uploaded(
            fund_id,
            input_files=input_files,
            schema_path=schema_path,
            output_path=output_path,
        )
        job = FundBatchJob(
            fund_id=fund_id,
            input_files=input_files,
            schema_path=schema_path,
            output_path=output_path,
        )
        self.job_queue.send(job.to_message())
        logger.info("UPLOADED fund=%s files=%d", fund_id, len(input_files))
        return {
            "fundId": fund_id,
            "status": updated.get("status"),
            "inputFiles": input_files,
            "uploadedFiles": [info.key.rsplit("/", 1)[-1] for info in current],
            "archived": archived,
        }
