from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    return str(env.get(name, "")).strip() or default


@dataclass(frozen=True)
class Settings:
    doc_bucket: str = "fundflow-documents"
    documents_bucket: str = "fundflow-documents"
    prompt_key: str = "icmemoextractionprompt.txt"
    schema_key: str = "schema.json"
    batch_prompt_uri: str = "s3://fundflow-documents/rulesengineprompt.txt"
    batch_schema_key: str = "RulesEngineJSONSchema.txt"
    presign_expires_s: int = 900
    record_ttl_days: int | None = None
    worker_batch_size: int = 10
    worker_poll_interval_ms: int = 200
    worker_visibility_timeout_s: int = 300
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        doc_bucket = _env_str(env, "DOC_BUCKET", "fundflow-documents")
        ttl_days = _env_int(env, "RECORD_TTL_DAYS", default=0, minimum=0)
        origins = _env_str(env, "CORS_ALLOW_ORIGINS", "*")
        return cls(
            doc_bucket=doc_bucket,
            documents_bucket=_env_str(env, "DOCUMENTS_BUCKET", doc_bucket),
            prompt_key=_env_str(env, "PROMPT_KEY", "icmemoextractionprompt.txt"),
            schema_key=_env_str(env, "SCHEMA_KEY", "schema.json"),
            batch_prompt_uri=_env_str(env, "BATCH_PROMPT_URI", f"s3://{doc_bucket}/rulesengineprompt.txt"),
            batch_schema_key=_env_str(env, "BATCH_SCHEMA_KEY", "RulesEngineJSONSchema.txt"),
            presign_expires_s=_env_int(env, "PRESIGN_EXPIRES_SECONDS", default=900, minimum=1),
            record_ttl_days=ttl_days or None,
            worker_batch_size=min(10, _env_int(env, "WORKER_BATCH_SIZE", default=10, minimum=1)),
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            worker_visibility_timeout_s=_env_int(env, "WORKER_VISIBILITY_TIMEOUT_S", default=300, minimum=0),
            cors_allow_origins=[x.strip() for x in origins.split(",") if x.strip()] or ["*"],
        )
