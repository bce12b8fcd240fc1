from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from fundflow.errors import ApiError, ConflictError, ValidationError
from fundflow.models import FundStatus, OutcomeKind
from fundflow.registry import SkipHandler
from fundflow.schemas import (
    CreateMemoUploadRequest,
    DocumentJob,
    ExtractRequest,
    InitUploadRequest,
    error_envelope,
    success_envelope,
)
from fundflow.services import Services, create_services_from_env
from fundflow.status_lifecycle import decode_payload

logger = logging.getLogger(__name__)

_STATUS_VALUES = {status.value for status in FundStatus}


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
            details=details,
        ),
    )


def present_record(record: dict[str, Any]) -> dict[str, Any]:
    item = dict(record)
    if "payload" in item:
        item["payload"] = decode_payload(item["payload"])
    return item


def create_app(services: Services | None = None) -> FastAPI:
    active = services or create_services_from_env()
    app = FastAPI(title="Fundflow Extraction API", version="0.1.0")
    app.state.services = active
    app.add_middleware(
        CORSMiddleware,
        allow_origins=active.settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"errors": [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()]},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, _trace_id_from_request(request))

    @app.post("/api/v1/funds", status_code=201)
    def create_memo_upload(payload: CreateMemoUploadRequest, request: Request):
        data = active.uploads.create_memo_upload(fund_name=payload.fund_name, file_name=payload.file_name)
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/uploads", status_code=201)
    def init_upload(payload: InitUploadRequest, request: Request):
        data = active.uploads.init_upload(fund_id=payload.fund_id, fund_name=payload.fund_name)
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/funds/{fund_id}/uploads/complete")
    def complete_upload(fund_id: str, request: Request):
        data = active.uploads.complete_upload(fund_id)
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/api/v1/funds/{fund_id}")
    def get_fund(fund_id: str, request: Request):
        record = active.lifecycle.get(fund_id)
        return success_envelope(present_record(record), _trace_id_from_request(request))

    @app.get("/api/v1/funds")
    def list_funds(
        request: Request,
        limit: int = Query(default=20, ge=1, le=100),
        status: str | None = Query(default=None),
        cursor: str | None = Query(default=None),
    ):
        if status:
            normalized = status.strip().upper()
            if normalized not in _STATUS_VALUES:
                raise ValidationError(f"unknown status filter: {status}")
            page = active.record_store.query_by_status(normalized, limit=limit, cursor=cursor)
        else:
            page = active.record_store.scan(limit=limit, cursor=cursor)
        data = {"items": [present_record(item) for item in page.items], "nextCursor": page.next_cursor}
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/api/v1/funds/{fund_id}/extract")
    def extract_document(fund_id: str, payload: ExtractRequest, request: Request):
        handler = active.registry.resolve(payload.document_type)
        job = DocumentJob(
            fund_id=fund_id,
            document_type=payload.document_type,
            input_bucket=active.settings.doc_bucket,
            object_key=f"{fund_id}/{payload.file_name}",
            file_name=payload.file_name,
        )
        trace_id = _trace_id_from_request(request)
        if isinstance(handler, SkipHandler):
            outcome = handler.handle(job)
            return success_envelope({"fundId": fund_id, "status": "SKIPPED", "reason": outcome.reason}, trace_id)

        outcome = handler.handle(job)
        if outcome.kind is OutcomeKind.SKIPPED:
            raise ConflictError("Processing already in progress", details={"fund_id": fund_id})
        if outcome.kind is OutcomeKind.FAILED:
            if isinstance(outcome.error, ApiError):
                raise outcome.error
            raise ApiError(
                code="EXTRACTION_FAILED",
                message=outcome.reason or "extraction failed",
                error_class="internal",
                retryable=False,
                http_status=500,
            )
        data = {
            "fundId": fund_id,
            "status": outcome.details.get("status") or FundStatus.EXTRACTED.value,
            "extracted": outcome.payload,
            "resultLocation": outcome.result_location,
        }
        return success_envelope(data, trace_id)

    return app
