from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from fundflow.errors import ConfigError, UpstreamServiceError
from fundflow.retry import is_transient_error

logger = logging.getLogger(__name__)

LINE_BLOCK = "LINE"
DEFAULT_NOISE_MARKERS = ("WATERMARK",)


@dataclass(frozen=True)
class OcrBlock:
    block_type: str
    text: str = ""


class OcrClient(Protocol):
    def detect_text(self, document: bytes) -> list[OcrBlock]: ...


def build_document_text(
    blocks: Iterable[OcrBlock],
    *,
    noise_markers: Sequence[str] = DEFAULT_NOISE_MARKERS,
) -> str:
    """Join LINE blocks in reading order, dropping watermark noise."""
    markers = [marker.lower() for marker in noise_markers if marker]
    lines: list[str] = []
    for block in blocks:
        if block.block_type != LINE_BLOCK or not block.text:
            continue
        lowered = block.text.lower()
        if any(marker in lowered for marker in markers):
            continue
        lines.append(block.text)
    return "\n".join(lines)


class TextractOcrClient:
    def __init__(self, *, region: str = "", client: Any | None = None) -> None:
        if client is None:
            try:
                import boto3  # type: ignore
            except Exception as exc:  # pragma: no cover - hard dependency
                raise RuntimeError("boto3 is required for textract ocr") from exc
            client = boto3.client("textract", region_name=region or None)
        self._client = client

    def detect_text(self, document: bytes) -> list[OcrBlock]:
        try:
            response = self._client.detect_document_text(Document={"Bytes": document})
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamServiceError("textract", str(exc), retryable=is_transient_error(exc)) from exc
        blocks = [
            OcrBlock(block_type=str(block.get("BlockType", "")), text=str(block.get("Text", "")))
            for block in response.get("Blocks", [])
        ]
        logger.debug("textract returned %d blocks", len(blocks))
        return blocks


class NoOpOcrClient:
    """Returns no text; used for local runs without an OCR service."""

    def detect_text(self, document: bytes) -> list[OcrBlock]:
        return []


def create_ocr_client_from_env(environ: Mapping[str, str] | None = None) -> OcrClient:
    env = os.environ if environ is None else environ
    provider = env.get("OCR_PROVIDER", "textract").strip().lower() or "textract"
    if provider == "textract":
        return TextractOcrClient(region=env.get("AWS_REGION", "").strip())
    if provider == "noop":
        return NoOpOcrClient()
    raise ConfigError(f"unsupported OCR provider: {provider}")
