from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from fundflow.errors import ConditionFailedError, NotFoundError
from fundflow.models import SUCCESS_ONLY_FIELDS, FundStatus, utcnow_iso
from fundflow.record_store import RecordStore, UpdateCondition

logger = logging.getLogger(__name__)

COLLISION_REASON = "processing collision: received a new document while processing another document"

# Statuses from which a fund may (re-)enter PROCESSING. EXTRACTED only counts
# while no payload is stored; with a payload the fast path answers instead.
ADMISSIBLE_STATUSES = frozenset(
    {
        FundStatus.CREATED.value,
        FundStatus.UPLOADING.value,
        FundStatus.UPLOADED.value,
        FundStatus.FAILED.value,
    }
)
ADMISSION_CONDITION = UpdateCondition(
    must_exist=True,
    statuses=ADMISSIBLE_STATUSES,
    allow_unset_status=True,
    statuses_without_payload=frozenset({FundStatus.EXTRACTED.value}),
)
EXISTS = UpdateCondition(must_exist=True)
IN_FLIGHT = UpdateCondition(must_exist=True, statuses=frozenset({FundStatus.PROCESSING.value}))


class Admission(StrEnum):
    ADMITTED = "admitted"
    ALREADY_IN_FLIGHT = "already_in_flight"
    ALREADY_COMPLETE = "already_complete"
    CONFLICT = "conflict"


@dataclass
class AdmissionResult:
    admission: Admission
    record: dict[str, Any]
    payload: Any = None
    reason: str = ""

    @property
    def admitted(self) -> bool:
        return self.admission is Admission.ADMITTED


def decode_payload(raw: Any) -> Any:
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def _same_document(record: dict[str, Any], *, object_key: str, document_type: str) -> bool:
    existing_key = str(record.get("object_key") or "")
    existing_type = str(record.get("document_type") or "")
    return (not existing_key or existing_key == object_key) and (not existing_type or existing_type == document_type)


class StatusLifecycleController:
    """Owns every status transition of a fund record.

    All writes are conditional updates against the record store; no other
    lock exists, so two workers racing on the same fund are serialised by
    the store alone.
    """

    def __init__(self, store: RecordStore, *, ttl_days: int | None = None) -> None:
        self.store = store
        self.ttl_days = ttl_days

    def get(self, fund_id: str) -> dict[str, Any]:
        record = self.store.get(fund_id)
        if record is None:
            raise NotFoundError(f"fund {fund_id} not found")
        return record

    def _expiry(self) -> dict[str, Any]:
        if not self.ttl_days:
            return {}
        return {"ttl": int(time.time()) + int(self.ttl_days) * 86400}

    def create(self, fund_id: str, *, status: FundStatus = FundStatus.UPLOADING, **fields: Any) -> dict[str, Any]:
        now = utcnow_iso()
        item: dict[str, Any] = {
            "fund_id": fund_id,
            "status": status.value,
            "created_at": now,
            "updated_at": now,
        }
        item.update({key: value for key, value in fields.items() if value is not None})
        item.update(self._expiry())
        return self.store.put_if_absent(item)

    def mark_uploading(self, fund_id: str, **fields: Any) -> dict[str, Any]:
        """Move an existing fund back to UPLOADING for a re-upload."""
        now = utcnow_iso()
        condition = UpdateCondition(
            must_exist=True,
            statuses=frozenset(status.value for status in FundStatus if status is not FundStatus.PROCESSING),
            allow_unset_status=True,
        )
        set_fields = {"status": FundStatus.UPLOADING.value, "updated_at": now, **fields}
        set_fields.update(self._expiry())
        return self.store.update_if(
            fund_id,
            set_fields=set_fields,
            remove_fields=("error_reason", *SUCCESS_ONLY_FIELDS),
            set_if_absent={"created_at": now},
            condition=condition,
        )

    def mark_uploaded(self, fund_id: str, **fields: Any) -> dict[str, Any]:
        now = utcnow_iso()
        try:
            return self.store.update_if(
                fund_id,
                set_fields={"status": FundStatus.UPLOADED.value, "updated_at": now, **fields},
                remove_fields=("error_reason",),
                set_if_absent={"created_at": now},
                condition=EXISTS,
            )
        except ConditionFailedError as exc:
            raise NotFoundError(f"fund {fund_id} not found") from exc

    def begin_processing(
        self,
        fund_id: str,
        *,
        object_key: str,
        file_name: str | None,
        document_type: str,
    ) -> AdmissionResult:
        current = self.get(fund_id)
        if current.get("status") == FundStatus.EXTRACTED.value and current.get("payload"):
            logger.info("ALREADY_EXTRACTED fund=%s", fund_id)
            return AdmissionResult(
                admission=Admission.ALREADY_COMPLETE,
                record=current,
                payload=decode_payload(current["payload"]),
            )

        now = utcnow_iso()
        set_fields: dict[str, Any] = {
            "status": FundStatus.PROCESSING.value,
            "object_key": object_key,
            "document_type": document_type,
            "processing_started_at": now,
            "updated_at": now,
        }
        if file_name:
            set_fields["file_name"] = file_name
        try:
            record = self.store.update_if(
                fund_id,
                set_fields=set_fields,
                remove_fields=("error_reason",),
                set_if_absent={"created_at": now},
                condition=ADMISSION_CONDITION,
            )
        except ConditionFailedError:
            return self._resolve_rejected_admission(fund_id, object_key=object_key, document_type=document_type)
        logger.info("PROCESSING fund=%s object_key=%s document_type=%s", fund_id, object_key, document_type)
        return AdmissionResult(admission=Admission.ADMITTED, record=record)

    def _resolve_rejected_admission(self, fund_id: str, *, object_key: str, document_type: str) -> AdmissionResult:
        current = self.get(fund_id)
        same_document = _same_document(current, object_key=object_key, document_type=document_type)
        if current.get("status") != FundStatus.PROCESSING.value:
            return self._resolve_settled(fund_id, current, same_document=same_document)
        if same_document:
            logger.info("SKIP_IN_FLIGHT fund=%s object_key=%s", fund_id, object_key)
            return AdmissionResult(
                admission=Admission.ALREADY_IN_FLIGHT,
                record=current,
                reason="document already in flight",
            )

        logger.warning(
            "COLLISION fund=%s processing=%s received=%s",
            fund_id,
            current.get("object_key") or "",
            object_key,
        )
        try:
            failed = self._force_failed(fund_id, COLLISION_REASON)
        except ConditionFailedError:
            # The in-flight document settled between the read and the write.
            settled = self.get(fund_id)
            logger.info("COLLISION_SETTLED fund=%s status=%s", fund_id, settled.get("status"))
            if settled.get("status") == FundStatus.PROCESSING.value:
                return AdmissionResult(admission=Admission.CONFLICT, record=settled, reason=COLLISION_REASON)
            return self._resolve_settled(
                fund_id,
                settled,
                same_document=_same_document(settled, object_key=object_key, document_type=document_type),
            )
        return AdmissionResult(
            admission=Admission.CONFLICT,
            record=failed or current,
            reason=COLLISION_REASON,
        )

    def _resolve_settled(self, fund_id: str, current: dict[str, Any], *, same_document: bool) -> AdmissionResult:
        status = current.get("status")
        if status == FundStatus.EXTRACTED.value and current.get("payload"):
            return AdmissionResult(
                admission=Admission.ALREADY_COMPLETE,
                record=current,
                payload=decode_payload(current["payload"]),
            )
        if status == FundStatus.SUCCEEDED.value and same_document:
            return AdmissionResult(
                admission=Admission.ALREADY_COMPLETE,
                record=current,
                payload=decode_payload(current.get("payload")),
            )
        reason = f"fund {fund_id} cannot enter PROCESSING from status {status}"
        return AdmissionResult(admission=Admission.CONFLICT, record=current, reason=reason)

    def _force_failed(self, fund_id: str, reason: str) -> dict[str, Any] | None:
        """FAILED transition that only applies while the fund is still PROCESSING."""
        try:
            return self.store.update_if(
                fund_id,
                set_fields={
                    "status": FundStatus.FAILED.value,
                    "error_reason": reason,
                    "updated_at": utcnow_iso(),
                },
                remove_fields=SUCCESS_ONLY_FIELDS,
                condition=IN_FLIGHT,
            )
        except ConditionFailedError:
            raise
        except Exception:
            logger.warning("could not record collision for fund=%s", fund_id, exc_info=True)
            return None

    def complete_extraction(
        self,
        fund_id: str,
        *,
        payload: Any,
        result_bucket: str,
        result_key: str,
    ) -> dict[str, Any]:
        now = utcnow_iso()
        record = self.store.update_if(
            fund_id,
            set_fields={
                "status": FundStatus.EXTRACTED.value,
                "payload": json.dumps(payload, ensure_ascii=False),
                "result_bucket": result_bucket,
                "result_key": result_key,
                "extracted_at": now,
                "updated_at": now,
            },
            remove_fields=("error_reason",),
            set_if_absent={"created_at": now},
        )
        logger.info("EXTRACTED fund=%s result=s3://%s/%s", fund_id, result_bucket, result_key)
        return record

    def mark_succeeded(self, fund_id: str, *, result_path: str, output_files: list[str]) -> dict[str, Any]:
        now = utcnow_iso()
        record = self.store.update_if(
            fund_id,
            set_fields={
                "status": FundStatus.SUCCEEDED.value,
                "result_path": result_path,
                "output_files": list(output_files),
                "completed_at": now,
                "updated_at": now,
            },
            remove_fields=("error_reason",),
            set_if_absent={"created_at": now},
        )
        logger.info("SUCCEEDED fund=%s result=%s", fund_id, result_path)
        return record

    def mark_failed(self, fund_id: str, reason: str) -> None:
        """Best-effort FAILED transition; never raises."""
        try:
            self.store.update_if(
                fund_id,
                set_fields={
                    "status": FundStatus.FAILED.value,
                    "error_reason": reason[:2000],
                    "updated_at": utcnow_iso(),
                },
                remove_fields=SUCCESS_ONLY_FIELDS,
                condition=EXISTS,
            )
        except Exception:
            logger.warning("mark_failed did not apply for fund=%s reason=%s", fund_id, reason, exc_info=True)
            return
        logger.info("FAILED fund=%s reason=%s", fund_id, reason)
