from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fundflow.errors import ConfigError


@dataclass
class QueueMessage:
    message_id: str
    body: str
    receipt_handle: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    def json_body(self) -> Any:
        return json.loads(self.body or "{}")


class QueueBackend:
    backend_name = "base"

    def send(self, body: dict[str, Any] | str) -> str:
        raise NotImplementedError

    def receive_batch(self, *, max_messages: int = 10, visibility_timeout_s: int = 300) -> list[QueueMessage]:
        raise NotImplementedError

    def delete(self, message: QueueMessage) -> None:
        raise NotImplementedError


def _encode_body(body: dict[str, Any] | str) -> str:
    if isinstance(body, str):
        return body
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"))


class InMemoryQueueBackend(QueueBackend):
    """Visibility-timeout queue kept in process memory."""

    backend_name = "memory"

    def __init__(self, name: str = "jobs") -> None:
        self.name = name
        self._lock = threading.RLock()
        self._queue: deque[QueueMessage] = deque()
        self._inflight: dict[str, tuple[QueueMessage, float]] = {}

    def send(self, body: dict[str, Any] | str) -> str:
        with self._lock:
            msg = QueueMessage(message_id=f"msg_{uuid.uuid4().hex[:12]}", body=_encode_body(body))
            self._queue.append(msg)
            return msg.message_id

    def _requeue_expired(self) -> None:
        now = time.monotonic()
        expired = [handle for handle, (_, deadline) in self._inflight.items() if deadline <= now]
        for handle in expired:
            msg, _ = self._inflight.pop(handle)
            self._queue.appendleft(msg)

    def receive_batch(self, *, max_messages: int = 10, visibility_timeout_s: int = 300) -> list[QueueMessage]:
        with self._lock:
            self._requeue_expired()
            batch: list[QueueMessage] = []
            deadline = time.monotonic() + max(0, int(visibility_timeout_s))
            while self._queue and len(batch) < max(1, int(max_messages)):
                msg = self._queue.popleft()
                msg.receipt_handle = f"rh_{uuid.uuid4().hex[:12]}"
                msg.attributes["ApproximateReceiveCount"] = int(msg.attributes.get("ApproximateReceiveCount", 0)) + 1
                self._inflight[msg.receipt_handle] = (msg, deadline)
                batch.append(msg)
            return batch

    def delete(self, message: QueueMessage) -> None:
        with self._lock:
            self._inflight.pop(message.receipt_handle, None)

    def release(self, message: QueueMessage) -> None:
        """Make an in-flight message visible again immediately."""
        with self._lock:
            entry = self._inflight.pop(message.receipt_handle, None)
            if entry is not None:
                self._queue.appendleft(entry[0])

    def pending_count(self) -> int:
        with self._lock:
            return len(self._queue)

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def drain_bodies(self) -> list[Any]:
        with self._lock:
            bodies = [msg.json_body() for msg in self._queue]
            self._queue.clear()
            return bodies


class SqsQueueBackend(QueueBackend):
    backend_name = "sqs"

    def __init__(self, *, queue_url: str, region: str = "", client: Any | None = None) -> None:
        if client is None:
            try:
                import boto3  # type: ignore
            except Exception as exc:  # pragma: no cover - hard dependency
                raise RuntimeError("boto3 is required for the sqs queue backend") from exc
            client = boto3.client("sqs", region_name=region or None)
        self._client = client
        self.queue_url = queue_url

    def send(self, body: dict[str, Any] | str) -> str:
        response = self._client.send_message(QueueUrl=self.queue_url, MessageBody=_encode_body(body))
        return str(response.get("MessageId", ""))

    def receive_batch(self, *, max_messages: int = 10, visibility_timeout_s: int = 300) -> list[QueueMessage]:
        response = self._client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=min(10, max(1, int(max_messages))),
            VisibilityTimeout=max(0, int(visibility_timeout_s)),
            WaitTimeSeconds=1,
            AttributeNames=["ApproximateReceiveCount"],
        )
        return [
            QueueMessage(
                message_id=str(item["MessageId"]),
                body=str(item.get("Body", "")),
                receipt_handle=str(item.get("ReceiptHandle", "")),
                attributes=dict(item.get("Attributes") or {}),
            )
            for item in response.get("Messages", []) or []
        ]

    def delete(self, message: QueueMessage) -> None:
        self._client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=message.receipt_handle)


def create_queue_backends_from_env(
    environ: Mapping[str, str] | None = None,
) -> tuple[QueueBackend, QueueBackend | None]:
    """Return the job queue and the (optional) success-notification queue."""
    env = os.environ if environ is None else environ
    backend = env.get("FUNDFLOW_QUEUE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return InMemoryQueueBackend("jobs"), InMemoryQueueBackend("success")
    if backend == "sqs":
        queue_url = env.get("SQS_QUEUE_URL", "").strip()
        if not queue_url:
            raise ConfigError("Missing env var SQS_QUEUE_URL")
        region = env.get("AWS_REGION", "").strip()
        success_url = env.get("SUCCESS_QUEUE_URL", "").strip()
        success = SqsQueueBackend(queue_url=success_url, region=region) if success_url else None
        return SqsQueueBackend(queue_url=queue_url, region=region), success
    raise ConfigError(f"unsupported queue backend: {backend}")
