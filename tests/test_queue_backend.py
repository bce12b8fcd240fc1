from __future__ import annotations

import pytest

from fundflow.errors import ConfigError
from fundflow.queue_backend import InMemoryQueueBackend, create_queue_backends_from_env


def test_in_memory_queue_hides_received_messages_until_deleted_or_released():
    q = InMemoryQueueBackend()
    q.send({"fundId": "fund-1"})
    q.send({"fundId": "fund-2"})

    batch = q.receive_batch(max_messages=1)
    assert [msg.json_body() for msg in batch] == [{"fundId": "fund-1"}]
    assert q.pending_count() == 1
    assert q.inflight_count() == 1

    q.release(batch[0])
    replay = q.receive_batch(max_messages=10)
    assert [msg.json_body()["fundId"] for msg in replay] == ["fund-1", "fund-2"]
    assert replay[0].attributes["ApproximateReceiveCount"] == 2

    for msg in replay:
        q.delete(msg)
    assert q.pending_count() == 0
    assert q.inflight_count() == 0


def test_expired_visibility_requeues_message():
    q = InMemoryQueueBackend()
    q.send("raw body")
    first = q.receive_batch(visibility_timeout_s=0)
    second = q.receive_batch(visibility_timeout_s=0)
    assert first[0].message_id == second[0].message_id
    assert second[0].body == "raw body"


def test_drain_bodies_empties_queue():
    q = InMemoryQueueBackend("success")
    q.send({"status": "SUCCEEDED"})
    assert q.drain_bodies() == [{"status": "SUCCEEDED"}]
    assert q.drain_bodies() == []


def test_queue_factory_rejects_unsupported_backend():
    with pytest.raises(ConfigError) as exc_info:
        create_queue_backends_from_env({"FUNDFLOW_QUEUE_BACKEND": "rabbitmq"})
    assert "unsupported queue backend" in exc_info.value.message
