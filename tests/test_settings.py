from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fundflow.errors import ConfigError
from fundflow.handlers import handle_sqs_event
from fundflow.llm_provider import MockInferenceClient
from fundflow.queue_backend import InMemoryQueueBackend, SqsQueueBackend, create_queue_backends_from_env
from fundflow.services import create_services_from_env
from fundflow.settings import Settings


def test_settings_defaults():
    settings = Settings.from_env({})
    assert settings.doc_bucket == "fundflow-documents"
    assert settings.documents_bucket == "fundflow-documents"
    assert settings.prompt_key == "icmemoextractionprompt.txt"
    assert settings.schema_key == "schema.json"
    assert settings.batch_prompt_uri == "s3://fundflow-documents/rulesengineprompt.txt"
    assert settings.record_ttl_days is None
    assert settings.cors_allow_origins == ["*"]


def test_settings_from_env_overrides():
    settings = Settings.from_env(
        {
            "DOC_BUCKET": "memos",
            "RECORD_TTL_DAYS": "30",
            "WORKER_BATCH_SIZE": "50",
            "PRESIGN_EXPIRES_SECONDS": "nope",
            "CORS_ALLOW_ORIGINS": "https://a.example, https://b.example",
        }
    )
    assert settings.doc_bucket == "memos"
    assert settings.documents_bucket == "memos"
    assert settings.batch_prompt_uri == "s3://memos/rulesengineprompt.txt"
    assert settings.record_ttl_days == 30
    assert settings.worker_batch_size == 10
    assert settings.presign_expires_s == 900
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_queue_factory_requires_url_for_sqs():
    with pytest.raises(ConfigError):
        create_queue_backends_from_env({"FUNDFLOW_QUEUE_BACKEND": "sqs"})
    jobs, success = create_queue_backends_from_env({})
    assert isinstance(jobs, InMemoryQueueBackend)
    assert isinstance(success, InMemoryQueueBackend)


def test_sqs_backend_sends_receives_and_deletes():
    client = MagicMock()
    client.send_message.return_value = {"MessageId": "m1"}
    client.receive_message.return_value = {
        "Messages": [{"MessageId": "m1", "Body": "{}", "ReceiptHandle": "rh", "Attributes": {}}]
    }
    queue = SqsQueueBackend(queue_url="https://sqs/queue", client=client)

    assert queue.send({"fundId": "fund-1"}) == "m1"
    assert client.send_message.call_args.kwargs["MessageBody"] == '{"fundId":"fund-1"}'
    messages = queue.receive_batch(max_messages=50)
    assert client.receive_message.call_args.kwargs["MaxNumberOfMessages"] == 10
    queue.delete(messages[0])
    client.delete_message.assert_called_once_with(QueueUrl="https://sqs/queue", ReceiptHandle="rh")


def test_services_from_env_wire_local_backends(tmp_path):
    services = create_services_from_env(
        {
            "INFERENCE_PROVIDER": "mock",
            "OCR_PROVIDER": "noop",
            "OBJECT_STORAGE_ROOT": str(tmp_path / "objects"),
        }
    )
    assert services.record_store.backend_name == "memory"
    assert services.object_storage.backend_name == "local"
    assert isinstance(services.inference, MockInferenceClient)
    assert services.registry.known_types() == ["icmemo", "ima", "lpa", "ppm", "sideletter", "subdoc"]
    assert handle_sqs_event({"Records": []}, services=services) == {"batchItemFailures": []}
