from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

from fundflow.batch_pipeline import BatchedExtractionPipeline
from fundflow.consumer import QueueConsumer
from fundflow.llm_provider import InferenceClient, create_inference_client_from_env
from fundflow.object_storage import ObjectStorageBackend, create_object_storage_from_env
from fundflow.ocr import OcrClient, create_ocr_client_from_env
from fundflow.pipeline import DocumentExtractionPipeline, PipelineConfig
from fundflow.queue_backend import QueueBackend, create_queue_backends_from_env
from fundflow.record_store import RecordStore, create_record_store_from_env
from fundflow.registry import DocumentTypeRegistry, build_default_registry
from fundflow.retry import RetryPolicy
from fundflow.settings import Settings
from fundflow.status_lifecycle import StatusLifecycleController
from fundflow.upload_service import UploadConfig, UploadService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Explicitly constructed handles shared by the HTTP app, the worker and the queue adapter."""

    settings: Settings
    record_store: RecordStore
    lifecycle: StatusLifecycleController
    object_storage: ObjectStorageBackend
    ocr: OcrClient
    inference: InferenceClient
    job_queue: QueueBackend
    success_queue: QueueBackend | None
    retry_policy: RetryPolicy
    pipeline: DocumentExtractionPipeline
    batch_pipeline: BatchedExtractionPipeline
    registry: DocumentTypeRegistry
    consumer: QueueConsumer
    uploads: UploadService


def build_services(
    *,
    settings: Settings,
    record_store: RecordStore,
    object_storage: ObjectStorageBackend,
    ocr: OcrClient,
    inference: InferenceClient,
    job_queue: QueueBackend,
    success_queue: QueueBackend | None = None,
    retry_policy: RetryPolicy | None = None,
) -> Services:
    policy = retry_policy or RetryPolicy()
    lifecycle = StatusLifecycleController(record_store, ttl_days=settings.record_ttl_days)
    pipeline = DocumentExtractionPipeline(
        lifecycle=lifecycle,
        object_storage=object_storage,
        ocr=ocr,
        inference=inference,
        config=PipelineConfig(
            doc_bucket=settings.doc_bucket,
            prompt_key=settings.prompt_key,
            schema_key=settings.schema_key,
        ),
        retry_policy=policy,
    )
    batch_pipeline = BatchedExtractionPipeline(
        lifecycle=lifecycle,
        object_storage=object_storage,
        inference=inference,
        prompt_uri=settings.batch_prompt_uri,
        success_queue=success_queue,
        retry_policy=policy,
    )
    registry = build_default_registry(pipeline)
    consumer = QueueConsumer(registry=registry, lifecycle=lifecycle, batch_pipeline=batch_pipeline)
    uploads = UploadService(
        lifecycle=lifecycle,
        object_storage=object_storage,
        job_queue=job_queue,
        config=UploadConfig(
            documents_bucket=settings.documents_bucket,
            doc_bucket=settings.doc_bucket,
            batch_schema_key=settings.batch_schema_key,
            presign_expires_s=settings.presign_expires_s,
        ),
    )
    return Services(
        settings=settings,
        record_store=record_store,
        lifecycle=lifecycle,
        object_storage=object_storage,
        ocr=ocr,
        inference=inference,
        job_queue=job_queue,
        success_queue=success_queue,
        retry_policy=policy,
        pipeline=pipeline,
        batch_pipeline=batch_pipeline,
        registry=registry,
        consumer=consumer,
        uploads=uploads,
    )


def create_services_from_env(environ: Mapping[str, str] | None = None) -> Services:
    env = os.environ if environ is None else environ
    settings = Settings.from_env(env)
    job_queue, success_queue = create_queue_backends_from_env(env)
    services = build_services(
        settings=settings,
        record_store=create_record_store_from_env(env),
        object_storage=create_object_storage_from_env(env),
        ocr=create_ocr_client_from_env(env),
        inference=create_inference_client_from_env(env),
        job_queue=job_queue,
        success_queue=success_queue,
        retry_policy=RetryPolicy.from_env(env),
    )
    logger.info(
        "services ready record_store=%s object_storage=%s queue=%s inference=%s",
        services.record_store.backend_name,
        services.object_storage.backend_name,
        services.job_queue.backend_name,
        services.inference.provider,
    )
    return services
