"""
Inference provider abstraction used by the extraction pipelines.

Messages use the Converse content-block shape regardless of provider:
  {"role": "user", "content": [{"text": "..."}, {"document": {...}}]}

Configuration via environment variables:
  INFERENCE_PROVIDER    = bedrock | openai | mock     (default: bedrock)
  BEDROCK_MODEL_ID      = amazon.nova-pro-v1:0
  LLM_MODEL             = gpt-4o-mini                 (openai provider)
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1   (or custom endpoint)
"""

from __future__ import annotations

import logging
import os
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from fundflow.errors import ConfigError, UpstreamServiceError
from fundflow.retry import is_transient_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingConfig:
    max_output_tokens: int = 4096
    temperature: float = 0.0
    top_p: float | None = None

    def as_converse(self) -> dict[str, Any]:
        config: dict[str, Any] = {
            "maxTokens": int(self.max_output_tokens),
            "temperature": float(self.temperature),
        }
        if self.top_p is not None:
            config["topP"] = float(self.top_p)
        return config


# Per-document extraction: deterministic, bounded output.
EXTRACTION_SAMPLING = SamplingConfig(max_output_tokens=4096, temperature=0.0)
# Batched rules-engine extraction.
BATCH_SAMPLING = SamplingConfig(max_output_tokens=6000, temperature=0.1, top_p=0.9)


def text_block(text: str) -> dict[str, Any]:
    return {"text": text}


def user_message(*blocks: dict[str, Any]) -> dict[str, Any]:
    return {"role": "user", "content": list(blocks)}


class InferenceClient:
    provider = "base"

    def generate_segments(
        self,
        *,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> list[str]:
        raise NotImplementedError

    def generate(
        self,
        *,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> str:
        """Return the first text segment of the response ("" when there is none)."""
        segments = self.generate_segments(system_prompt=system_prompt, messages=messages, sampling=sampling)
        return segments[0] if segments else ""


class BedrockInferenceClient(InferenceClient):
    provider = "bedrock"

    def __init__(self, *, model_id: str, region: str = "", client: Any | None = None) -> None:
        if client is None:
            try:
                import boto3  # type: ignore
            except Exception as exc:  # pragma: no cover - hard dependency
                raise RuntimeError("boto3 is required for bedrock inference") from exc
            client = boto3.client("bedrock-runtime", region_name=region or None)
        self._client = client
        self.model_id = model_id

    def generate_segments(
        self,
        *,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> list[str]:
        kwargs: dict[str, Any] = {
            "modelId": self.model_id,
            "messages": messages,
            "inferenceConfig": sampling.as_converse(),
        }
        if system_prompt:
            kwargs["system"] = [{"text": system_prompt}]
        t0 = time.monotonic()
        try:
            response = self._client.converse(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise UpstreamServiceError("bedrock", str(exc), retryable=is_transient_error(exc)) from exc
        elapsed_ms = (time.monotonic() - t0) * 1000
        content = ((response.get("output") or {}).get("message") or {}).get("content") or []
        segments = [str(block["text"]) for block in content if isinstance(block, dict) and "text" in block]
        usage = response.get("usage") or {}
        logger.info(
            "bedrock converse model=%s segments=%d input_tokens=%s output_tokens=%s latency_ms=%.1f",
            self.model_id,
            len(segments),
            usage.get("inputTokens", 0),
            usage.get("outputTokens", 0),
            elapsed_ms,
        )
        return segments


class OpenAIInferenceClient(InferenceClient):
    """OpenAI-compatible chat completions; accepts text blocks only."""

    provider = "openai"

    def __init__(self, *, model: str, api_key: str = "", base_url: str = "", client: Any | None = None) -> None:
        if client is None:
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package is required. Install with: pip install 'fundflow[openai]'")
            kwargs: dict[str, Any] = {}
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            client = openai.OpenAI(**kwargs)
        self._client = client
        self.model = model

    @staticmethod
    def _flatten(content: Iterable[dict[str, Any]]) -> str:
        parts: list[str] = []
        for block in content:
            if "text" not in block:
                raise ConfigError("openai provider does not accept document content blocks")
            parts.append(str(block["text"]))
        return "\n".join(parts)

    def generate_segments(
        self,
        *,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> list[str]:
        chat: list[dict[str, str]] = []
        if system_prompt:
            chat.append({"role": "system", "content": system_prompt})
        for message in messages:
            chat.append({"role": str(message.get("role", "user")), "content": self._flatten(message.get("content", []))})
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": chat,
            "temperature": sampling.temperature,
            "max_tokens": sampling.max_output_tokens,
        }
        if sampling.top_p is not None:
            kwargs["top_p"] = sampling.top_p
        try:
            response = self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise UpstreamServiceError("openai", str(exc), retryable=is_transient_error(exc)) from exc
        content = response.choices[0].message.content if response.choices else None
        return [content] if content else []


class MockInferenceClient(InferenceClient):
    """Replays queued responses and records every request."""

    provider = "mock"

    def __init__(self, responses: Iterable[str | list[str] | Exception] | None = None, *, default: str = "{}") -> None:
        self._responses: deque[str | list[str] | Exception] = deque(responses or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def queue(self, *responses: str | list[str] | Exception) -> None:
        self._responses.extend(responses)

    def generate_segments(
        self,
        *,
        system_prompt: str | None,
        messages: list[dict[str, Any]],
        sampling: SamplingConfig,
    ) -> list[str]:
        self.calls.append({"system_prompt": system_prompt, "messages": messages, "sampling": sampling})
        response: str | list[str] | Exception = self._responses.popleft() if self._responses else self.default
        if isinstance(response, Exception):
            raise response
        if isinstance(response, list):
            return list(response)
        return [response]


def create_inference_client_from_env(environ: Mapping[str, str] | None = None) -> InferenceClient:
    env = os.environ if environ is None else environ
    provider = env.get("INFERENCE_PROVIDER", "bedrock").strip().lower() or "bedrock"
    if provider == "bedrock":
        return BedrockInferenceClient(
            model_id=env.get("BEDROCK_MODEL_ID", "amazon.nova-pro-v1:0").strip() or "amazon.nova-pro-v1:0",
            region=env.get("AWS_REGION", "").strip(),
        )
    if provider == "openai":
        return OpenAIInferenceClient(
            model=env.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini",
            api_key=env.get("OPENAI_API_KEY", "").strip(),
            base_url=env.get("OPENAI_BASE_URL", "").strip(),
        )
    if provider == "mock":
        return MockInferenceClient()
    raise ConfigError(f"unsupported inference provider: {provider}")
