from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from fundflow.consumer import QueueConsumer
from fundflow.models import OutcomeKind
from fundflow.queue_backend import QueueBackend
from fundflow.services import Services

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    received: int = 0
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    acked: int = 0
    left_for_redelivery: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "acked": self.acked,
            "left_for_redelivery": self.left_for_redelivery,
        }

    def add(self, other: "WorkerRunStats") -> None:
        self.received += other.received
        self.completed += other.completed
        self.skipped += other.skipped
        self.failed += other.failed
        self.acked += other.acked
        self.left_for_redelivery += other.left_for_redelivery


class WorkerRuntime:
    """Polling worker: receive a batch, run the consumer, ack only what succeeded.

    Failed messages are not deleted; the queue's visibility timeout makes them
    visible again for redelivery.
    """

    def __init__(
        self,
        *,
        consumer: QueueConsumer,
        queue_backend: QueueBackend,
        batch_size: int = 10,
        poll_interval_ms: int = 200,
        visibility_timeout_s: int = 300,
    ) -> None:
        self.consumer = consumer
        self.queue_backend = queue_backend
        self.batch_size = max(1, int(batch_size))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.visibility_timeout_s = max(0, int(visibility_timeout_s))

    def _run_iteration(self) -> WorkerRunStats:
        stats = WorkerRunStats()
        messages = self.queue_backend.receive_batch(
            max_messages=self.batch_size,
            visibility_timeout_s=self.visibility_timeout_s,
        )
        if not messages:
            return stats
        stats.received = len(messages)
        report = self.consumer.process_batch(messages)
        failed = set(report.failed_message_ids)
        for message in messages:
            outcome = report.outcomes.get(message.message_id)
            if outcome is None or outcome.kind is OutcomeKind.FAILED:
                stats.failed += 1
            elif outcome.kind is OutcomeKind.SKIPPED:
                stats.skipped += 1
            else:
                stats.completed += 1
            if message.message_id in failed:
                stats.left_for_redelivery += 1
                continue
            self.queue_backend.delete(message)
            stats.acked += 1
        return stats

    def run_once(self) -> dict[str, int]:
        return self._run_iteration().as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while True:
            current = self._run_iteration()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if current.received == 0:
                time.sleep(self.poll_interval_ms / 1000.0)
        logger.info("worker stopped after %d iteration(s): %s", iterations, aggregate.as_dict())
        return aggregate.as_dict()


def create_worker_runtime(services: Services) -> WorkerRuntime:
    settings = services.settings
    return WorkerRuntime(
        consumer=services.consumer,
        queue_backend=services.job_queue,
        batch_size=settings.worker_batch_size,
        poll_interval_ms=settings.worker_poll_interval_ms,
        visibility_timeout_s=settings.worker_visibility_timeout_s,
    )
