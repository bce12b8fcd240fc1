import json
import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fundflow.llm_provider import MockInferenceClient
from fundflow.main import create_app
from fundflow.models import FundStatus
from fundflow.object_storage import LocalObjectStorage, ObjectStorageConfig
from fundflow.ocr import OcrBlock
from fundflow.queue_backend import InMemoryQueueBackend
from fundflow.record_store import InMemoryRecordStore
from fundflow.retry import RetryPolicy
from fundflow.services import build_services
from fundflow.settings import Settings

DOC_BUCKET = "fundflow-documents"
SYSTEM_PROMPT = "You extract structured data from investment committee memos."
MEMO_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["fundName", "targetSize"],
    "properties": {
        "fundName": {"type": "string"},
        "targetSize": {"type": "number"},
        "sectors": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}
VALID_PAYLOAD = {"fundName": "Alt Fund I", "targetSize": 250000000, "sectors": ["infrastructure"]}


class FakeOcrClient:
    def __init__(self, lines=None, *, error=None):
        self.lines = list(lines if lines is not None else ["Alt Fund I", "Target size 250m"])
        self.error = error
        self.calls = []

    def detect_text(self, document):
        self.calls.append(document)
        if self.error is not None:
            raise self.error
        return [OcrBlock(block_type="PAGE", text="")] + [OcrBlock(block_type="LINE", text=line) for line in self.lines]


def make_storage(root):
    return LocalObjectStorage(
        config=ObjectStorageConfig(
            backend="local",
            root=str(root),
            endpoint="",
            region="",
            access_key="",
            secret_key="",
            force_path_style=False,
        )
    )


@pytest.fixture
def ocr():
    return FakeOcrClient()


@pytest.fixture
def inference():
    return MockInferenceClient(default=json.dumps(VALID_PAYLOAD))


@pytest.fixture
def services(tmp_path, ocr, inference):
    storage = make_storage(tmp_path / "objects")
    storage.put_object(bucket=DOC_BUCKET, key="icmemoextractionprompt.txt", content_bytes=SYSTEM_PROMPT.encode())
    storage.put_object(bucket=DOC_BUCKET, key="schema.json", content_bytes=json.dumps(MEMO_SCHEMA).encode())
    storage.put_object(bucket=DOC_BUCKET, key="rulesengineprompt.txt", content_bytes=b"Apply the rules engine schema.")
    return build_services(
        settings=Settings(),
        record_store=InMemoryRecordStore(),
        object_storage=storage,
        ocr=ocr,
        inference=inference,
        job_queue=InMemoryQueueBackend("jobs"),
        success_queue=InMemoryQueueBackend("success"),
        retry_policy=RetryPolicy(max_attempts=1),
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def seed_fund(services, fund_id, *, status=FundStatus.UPLOADED, file_name="memo.pdf", upload=True, **fields):
    services.lifecycle.create(fund_id, status=status, file_name=file_name, **fields)
    if upload:
        services.object_storage.put_object(
            bucket=DOC_BUCKET,
            key=f"{fund_id}/{file_name}",
            content_bytes=b"%PDF-1.7 memo",
            content_type="application/pdf",
        )


def job_body(fund_id, *, document_type="icmemo", file_name="memo.pdf", **extra):
    body = {
        "fundId": fund_id,
        "documentType": document_type,
        "bucket": DOC_BUCKET,
        "key": f"{fund_id}/{file_name}",
        "fileName": file_name,
    }
    body.update(extra)
    return json.dumps(body)
