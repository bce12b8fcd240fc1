from __future__ import annotations

import logging
from typing import Any

from fundflow.queue_backend import QueueMessage
from fundflow.services import Services, create_services_from_env

logger = logging.getLogger(__name__)

_services: Services | None = None


def _default_services() -> Services:
    global _services
    if _services is None:
        _services = create_services_from_env()
    return _services


def messages_from_event(event: dict[str, Any]) -> list[QueueMessage]:
    return [
        QueueMessage(
            message_id=str(record.get("messageId", "")),
            body=record.get("body") or "",
            receipt_handle=str(record.get("receiptHandle", "")),
            attributes=dict(record.get("attributes") or {}),
        )
        for record in event.get("Records") or []
    ]


def handle_sqs_event(event: dict[str, Any], context: Any = None, *, services: Services | None = None) -> dict[str, Any]:
    """SQS event-source entry point returning a partial batch response."""
    active = services or _default_services()
    messages = messages_from_event(event)
    logger.info(
        "SQS invocation started request_id=%s records=%d",
        getattr(context, "aws_request_id", "-"),
        len(messages),
    )
    report = active.consumer.process_batch(messages)
    return report.as_sqs_response()
