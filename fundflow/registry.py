from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from fundflow.errors import UnsupportedDocumentTypeError
from fundflow.models import JobOutcome
from fundflow.schemas import DocumentJob, normalize_document_type

logger = logging.getLogger(__name__)

IMPLEMENTED_TYPES = ("icmemo",)
PENDING_TYPES = ("ima", "sideletter", "lpa", "ppm", "subdoc")


class DocumentHandler(Protocol):
    def handle(self, job: DocumentJob) -> JobOutcome: ...


class SkipHandler:
    """Acknowledges a known document type that has no extraction yet."""

    def __init__(self, document_type: str) -> None:
        self.document_type = document_type

    def handle(self, job: DocumentJob) -> JobOutcome:
        reason = f"documentType {self.document_type} is not implemented yet"
        logger.warning("SKIPPED fund=%s %s", job.fund_id, reason)
        return JobOutcome.skipped(fund_id=job.fund_id, reason=reason)


class DocumentTypeRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, DocumentHandler] = {}

    def register(self, document_type: str, handler: DocumentHandler) -> None:
        key = normalize_document_type(document_type)
        if not key:
            raise ValueError("document type must not be empty")
        self._handlers[key] = handler

    def register_skipped(self, document_types: Iterable[str]) -> None:
        for document_type in document_types:
            self.register(document_type, SkipHandler(normalize_document_type(document_type)))

    def resolve(self, document_type: str) -> DocumentHandler:
        handler = self._handlers.get(normalize_document_type(document_type))
        if handler is None:
            raise UnsupportedDocumentTypeError(document_type)
        return handler

    def known_types(self) -> list[str]:
        return sorted(self._handlers)


def build_default_registry(extraction: DocumentHandler) -> DocumentTypeRegistry:
    registry = DocumentTypeRegistry()
    for document_type in IMPLEMENTED_TYPES:
        registry.register(document_type, extraction)
    registry.register_skipped(PENDING_TYPES)
    return registry
