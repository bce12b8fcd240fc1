from __future__ import annotations

import json
import threading

import pytest

from fundflow.errors import ConditionFailedError, NotFoundError
from fundflow.models import FundStatus
from fundflow.record_store import InMemoryRecordStore, SqliteRecordStore
from fundflow.status_lifecycle import COLLISION_REASON, Admission, StatusLifecycleController


@pytest.fixture
def lifecycle():
    return StatusLifecycleController(InMemoryRecordStore())


def _begin(lifecycle, fund_id="fund-1", object_key="fund-1/memo.pdf", document_type="icmemo"):
    return lifecycle.begin_processing(
        fund_id,
        object_key=object_key,
        file_name=object_key.rsplit("/", 1)[-1],
        document_type=document_type,
    )


def test_create_sets_timestamps_and_rejects_duplicates(lifecycle):
    record = lifecycle.create("fund-1", status=FundStatus.UPLOADING, fund_name="Alt Fund I", ignored=None)
    assert record["status"] == "UPLOADING"
    assert record["created_at"] == record["updated_at"]
    assert "ignored" not in record
    with pytest.raises(ConditionFailedError):
        lifecycle.create("fund-1")


def test_create_applies_ttl_when_configured():
    lifecycle = StatusLifecycleController(InMemoryRecordStore(), ttl_days=30)
    record = lifecycle.create("fund-1")
    assert isinstance(record["ttl"], int)
    assert record["ttl"] > 0


def test_get_missing_fund_raises_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.get("missing")


def test_begin_processing_admits_uploaded_fund(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    result = _begin(lifecycle)
    assert result.admitted
    assert result.record["status"] == "PROCESSING"
    assert result.record["object_key"] == "fund-1/memo.pdf"
    assert result.record["document_type"] == "icmemo"
    assert result.record["file_name"] == "memo.pdf"


def test_begin_processing_readmits_failed_fund_and_clears_reason(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    lifecycle.mark_failed("fund-1", "previous attempt failed")
    result = _begin(lifecycle)
    assert result.admitted
    assert "error_reason" not in result.record


def test_begin_processing_missing_fund_raises_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        _begin(lifecycle, fund_id="missing")


def test_already_extracted_fund_is_answered_without_write(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle)
    lifecycle.complete_extraction("fund-1", payload={"fundName": "A"}, result_bucket="b", result_key="k")
    before = lifecycle.get("fund-1")

    result = _begin(lifecycle)

    assert result.admission is Admission.ALREADY_COMPLETE
    assert result.payload == {"fundName": "A"}
    assert lifecycle.get("fund-1") == before


def test_duplicate_delivery_of_in_flight_document_is_skipped(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    assert _begin(lifecycle).admitted

    result = _begin(lifecycle)

    assert result.admission is Admission.ALREADY_IN_FLIGHT
    assert lifecycle.get("fund-1")["status"] == "PROCESSING"


def test_different_document_while_processing_fails_the_fund(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    assert _begin(lifecycle).admitted

    result = _begin(lifecycle, object_key="fund-1/other.pdf")

    assert result.admission is Admission.CONFLICT
    assert result.reason == COLLISION_REASON
    record = lifecycle.get("fund-1")
    assert record["status"] == "FAILED"
    assert record["error_reason"] == COLLISION_REASON


class _InterleavingStore(InMemoryRecordStore):
    """Runs ``hook`` once, right after the n-th read returns its snapshot."""

    def __init__(self):
        super().__init__()
        self.reads = 0
        self.hook = None
        self.hook_after_read = 0

    def get(self, fund_id):
        item = super().get(fund_id)
        self.reads += 1
        if self.hook is not None and self.reads == self.hook_after_read:
            hook, self.hook = self.hook, None
            hook()
        return item


def _interleave(store, hook):
    # begin_processing reads once up front and once more after a rejected admission.
    store.reads = 0
    store.hook_after_read = 2
    store.hook = hook


def test_collision_does_not_overwrite_an_extraction_that_just_completed():
    store = _InterleavingStore()
    lifecycle = StatusLifecycleController(store)
    lifecycle.create("f", status=FundStatus.UPLOADED)
    assert _begin(lifecycle, fund_id="f", object_key="f/a.pdf").admitted
    _interleave(
        store,
        lambda: lifecycle.complete_extraction(
            "f", payload={"fundName": "Alt Fund I"}, result_bucket="docs", result_key="f/icmemo/a.pdf.json"
        ),
    )

    result = _begin(lifecycle, fund_id="f", object_key="f/b.pdf")

    assert result.admission is Admission.ALREADY_COMPLETE
    assert result.payload == {"fundName": "Alt Fund I"}
    record = lifecycle.get("f")
    assert record["status"] == "EXTRACTED"
    assert json.loads(record["payload"]) == {"fundName": "Alt Fund I"}
    assert record["result_key"] == "f/icmemo/a.pdf.json"
    assert "error_reason" not in record


def test_collision_leaves_a_concurrent_failure_reason_in_place():
    store = _InterleavingStore()
    lifecycle = StatusLifecycleController(store)
    lifecycle.create("f", status=FundStatus.UPLOADED)
    assert _begin(lifecycle, fund_id="f", object_key="f/a.pdf").admitted
    _interleave(store, lambda: lifecycle.mark_failed("f", "OCR_TEXTRACT: throttled"))

    result = _begin(lifecycle, fund_id="f", object_key="f/b.pdf")

    assert result.admission is Admission.CONFLICT
    assert lifecycle.get("f")["error_reason"] == "OCR_TEXTRACT: throttled"


def test_succeeded_fund_with_same_document_is_complete(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle, object_key="fund-1/files/", document_type="rulesengine")
    lifecycle.mark_succeeded("fund-1", result_path="s3://b/fund-1/results/", output_files=["rules-engine.json"])

    same = _begin(lifecycle, object_key="fund-1/files/", document_type="rulesengine")
    other = _begin(lifecycle, object_key="fund-1/memo.pdf", document_type="icmemo")

    assert same.admission is Admission.ALREADY_COMPLETE
    assert other.admission is Admission.CONFLICT
    assert lifecycle.get("fund-1")["status"] == "SUCCEEDED"


def test_concurrent_admission_admits_exactly_one_worker(tmp_path):
    lifecycle = StatusLifecycleController(SqliteRecordStore(tmp_path / "records.sqlite3"))
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    barrier = threading.Barrier(4)
    results = []
    results_lock = threading.Lock()

    def worker():
        barrier.wait()
        result = _begin(lifecycle)
        with results_lock:
            results.append(result.admission)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(Admission.ADMITTED) == 1
    assert results.count(Admission.ALREADY_IN_FLIGHT) == 3


def test_complete_extraction_stores_payload_as_json(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle)
    record = lifecycle.complete_extraction(
        "fund-1",
        payload={"fundName": "Ä Fund"},
        result_bucket="docs",
        result_key="fund-1/icmemo/memo.json",
    )
    assert record["status"] == "EXTRACTED"
    assert json.loads(record["payload"]) == {"fundName": "Ä Fund"}
    assert record["result_bucket"] == "docs"
    assert record["result_key"] == "fund-1/icmemo/memo.json"


def test_mark_failed_clears_success_fields(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle)
    lifecycle.complete_extraction("fund-1", payload={"a": 1}, result_bucket="b", result_key="k")

    lifecycle.mark_failed("fund-1", "boom")

    record = lifecycle.get("fund-1")
    assert record["status"] == "FAILED"
    assert record["error_reason"] == "boom"
    for name in ("payload", "result_bucket", "result_key", "result_path"):
        assert name not in record


def test_mark_failed_never_raises_for_missing_fund(lifecycle):
    lifecycle.mark_failed("missing", "boom")
    assert lifecycle.store.get("missing") is None


def test_mark_uploading_resets_a_completed_fund(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle)
    lifecycle.complete_extraction("fund-1", payload={"a": 1}, result_bucket="b", result_key="k")

    record = lifecycle.mark_uploading("fund-1", upload_prefix="fund-1/files/")

    assert record["status"] == "UPLOADING"
    assert record["upload_prefix"] == "fund-1/files/"
    assert "payload" not in record


def test_mark_uploading_rejected_while_processing(lifecycle):
    lifecycle.create("fund-1", status=FundStatus.UPLOADED)
    _begin(lifecycle)
    with pytest.raises(ConditionFailedError):
        lifecycle.mark_uploading("fund-1")


def test_mark_uploaded_missing_fund_raises_not_found(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.mark_uploaded("missing", input_files=["a.pdf"])
