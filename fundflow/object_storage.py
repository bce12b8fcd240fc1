from __future__ import annotations

import json
import os
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from fundflow.errors import ConfigError, NotFoundError

DELETE_BATCH_LIMIT = 1000

_MISSING_CODES = {"NoSuchKey", "404", "NotFound", "NoSuchBucket"}


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def safe_file_name(value: str) -> str:
    """Whitespace to underscores, then drop anything outside ``[A-Za-z0-9_.-]``."""
    collapsed = re.sub(r"\s+", "_", value or "document")
    return re.sub(r"[^\w.\-]", "", collapsed, flags=re.ASCII) or "document"


def parse_s3_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("s3://"):
        raise ValueError(f"Invalid S3 URI: {uri}")
    bucket, _, key = uri[len("s3://") :].partition("/")
    if not bucket or not key:
        raise ValueError(f"Invalid S3 URI: {uri}")
    return bucket, key


def build_s3_uri(bucket: str, key: str) -> str:
    return f"s3://{bucket}/{key}"


def ensure_trailing_slash(key: str) -> str:
    return key if key.endswith("/") else f"{key}/"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    root: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


@dataclass(frozen=True)
class ObjectInfo:
    key: str
    size: int
    last_modified: datetime
    content_type: str = "application/octet-stream"


@dataclass
class ObjectListing:
    objects: list[ObjectInfo] = field(default_factory=list)
    next_token: str | None = None


class ObjectStorageBackend:
    backend_name = "base"

    def head_object(self, *, bucket: str, key: str) -> ObjectInfo | None:
        raise NotImplementedError

    def get_object(self, *, bucket: str, key: str) -> bytes:
        raise NotImplementedError

    def put_object(
        self,
        *,
        bucket: str,
        key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        raise NotImplementedError

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        raise NotImplementedError

    def copy_object(self, *, bucket: str, src_key: str, dst_key: str) -> None:
        raise NotImplementedError

    def _delete_batch(self, *, bucket: str, keys: list[str]) -> None:
        raise NotImplementedError

    def presign_post(self, *, bucket: str, prefix: str, expires_s: int) -> dict[str, Any]:
        raise NotImplementedError

    def presign_put(self, *, bucket: str, key: str, content_type: str, expires_s: int) -> str:
        raise NotImplementedError

    def get_text(self, *, bucket: str, key: str) -> str:
        return self.get_object(bucket=bucket, key=key).decode("utf-8")

    def iter_objects(self, *, bucket: str, prefix: str) -> Iterator[ObjectInfo]:
        token: str | None = None
        while True:
            page = self.list_objects(bucket=bucket, prefix=prefix, continuation_token=token)
            yield from page.objects
            if not page.next_token:
                return
            token = page.next_token

    def delete_objects(self, *, bucket: str, keys: list[str]) -> int:
        for start in range(0, len(keys), DELETE_BATCH_LIMIT):
            self._delete_batch(bucket=bucket, keys=keys[start : start + DELETE_BATCH_LIMIT])
        return len(keys)


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def head_object(self, *, bucket: str, key: str) -> ObjectInfo | None:
        path = self._path_for(bucket, key)
        if not path.is_file():
            return None
        return self._info_for(bucket, path)

    def get_object(self, *, bucket: str, key: str) -> bytes:
        path = self._path_for(bucket, key)
        if not path.is_file():
            raise NotFoundError(f"object not found: {build_s3_uri(bucket, key)}", code="DOCUMENT_NOT_FOUND")
        return path.read_bytes()

    def put_object(
        self,
        *,
        bucket: str,
        key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        path = self._path_for(bucket, key)
        if key.endswith("/"):
            # Folder marker; the directory itself stands in for it.
            path.mkdir(parents=True, exist_ok=True)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content_bytes)
        self._write_meta(path, {"content_type": content_type or "application/octet-stream"})

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        bucket_root = self._root / _clean_segment(bucket)
        keys: list[str] = []
        if bucket_root.exists():
            for path in bucket_root.rglob("*"):
                if not path.is_file() or path.name.endswith(".meta.json"):
                    continue
                key = path.relative_to(bucket_root).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        keys.sort()
        if continuation_token:
            keys = [k for k in keys if k > continuation_token]
        page = keys[: max(1, max_keys)]
        next_token = page[-1] if len(keys) > len(page) else None
        return ObjectListing(
            objects=[self._info_for(bucket, self._path_for(bucket, k)) for k in page],
            next_token=next_token,
        )

    def copy_object(self, *, bucket: str, src_key: str, dst_key: str) -> None:
        data = self.get_object(bucket=bucket, key=src_key)
        meta = self._read_meta(self._path_for(bucket, src_key))
        self.put_object(bucket=bucket, key=dst_key, content_bytes=data, content_type=meta.get("content_type"))

    def _delete_batch(self, *, bucket: str, keys: list[str]) -> None:
        for key in keys:
            path = self._path_for(bucket, key)
            if path.exists():
                path.unlink()
            meta = self._meta_path(path)
            if meta.exists():
                meta.unlink()

    def presign_post(self, *, bucket: str, prefix: str, expires_s: int) -> dict[str, Any]:
        return {
            "url": (self._root / _clean_segment(bucket)).as_uri(),
            "fields": {"key": f"{prefix}${{filename}}"},
            "conditions": [["starts-with", "$key", prefix]],
            "expires_in": expires_s,
        }

    def presign_put(self, *, bucket: str, key: str, content_type: str, expires_s: int) -> str:
        return f"{self._path_for(bucket, key).as_uri()}?content-type={content_type}&expires={expires_s}"

    def _path_for(self, bucket: str, key: str) -> Path:
        parts = [p for p in key.split("/") if p not in {"", ".", ".."}]
        return self._root.joinpath(_clean_segment(bucket), *parts)

    def _info_for(self, bucket: str, path: Path) -> ObjectInfo:
        stat = path.stat()
        bucket_root = self._root / _clean_segment(bucket)
        return ObjectInfo(
            key=path.relative_to(bucket_root).as_posix(),
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
            content_type=str(self._read_meta(path).get("content_type", "application/octet-stream")),
        )

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")

    def _read_meta(self, path: Path) -> dict[str, Any]:
        meta_path = self._meta_path(path)
        if not meta_path.exists():
            return {}
        try:
            return json.loads(meta_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}

    def _write_meta(self, path: Path, meta: dict[str, Any]) -> None:
        self._meta_path(path).write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig, client: Any | None = None) -> None:
        if client is None:
            try:
                import boto3  # type: ignore
            except Exception as exc:  # pragma: no cover - hard dependency
                raise RuntimeError("boto3 is required for s3 object storage backend") from exc
            session = boto3.session.Session(
                aws_access_key_id=config.access_key or None,
                aws_secret_access_key=config.secret_key or None,
                region_name=config.region or None,
            )
            client = session.client(
                "s3",
                endpoint_url=config.endpoint or None,
                config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
            )
        self._client = client

    def head_object(self, *, bucket: str, key: str) -> ObjectInfo | None:
        try:
            response = self._client.head_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return None
            raise
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified") or datetime.now(UTC),
            content_type=str(response.get("ContentType") or "application/octet-stream"),
        )

    def get_object(self, *, bucket: str, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                raise NotFoundError(
                    f"object not found: {build_s3_uri(bucket, key)}",
                    code="DOCUMENT_NOT_FOUND",
                ) from exc
            raise
        return response["Body"].read()

    def put_object(
        self,
        *,
        bucket: str,
        key: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> None:
        self._client.put_object(
            Bucket=bucket,
            Key=key,
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )

    def list_objects(
        self,
        *,
        bucket: str,
        prefix: str,
        continuation_token: str | None = None,
        max_keys: int = 1000,
    ) -> ObjectListing:
        kwargs: dict[str, Any] = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": max_keys}
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token
        response = self._client.list_objects_v2(**kwargs)
        objects = [
            ObjectInfo(
                key=str(item["Key"]),
                size=int(item.get("Size", 0)),
                last_modified=item.get("LastModified") or datetime.now(UTC),
            )
            for item in response.get("Contents", []) or []
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ObjectListing(objects=objects, next_token=next_token)

    def copy_object(self, *, bucket: str, src_key: str, dst_key: str) -> None:
        self._client.copy_object(
            Bucket=bucket,
            CopySource={"Bucket": bucket, "Key": src_key},
            Key=dst_key,
        )

    def _delete_batch(self, *, bucket: str, keys: list[str]) -> None:
        if not keys:
            return
        self._client.delete_objects(
            Bucket=bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": True},
        )

    def presign_post(self, *, bucket: str, prefix: str, expires_s: int) -> dict[str, Any]:
        return self._client.generate_presigned_post(
            Bucket=bucket,
            Key=f"{prefix}${{filename}}",
            Conditions=[["starts-with", "$key", prefix]],
            ExpiresIn=expires_s,
        )

    def presign_put(self, *, bucket: str, key: str, content_type: str, expires_s: int) -> str:
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_s,
        )


def _is_missing(exc: ClientError) -> bool:
    error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
    return str(error.get("Code", "")) in _MISSING_CODES


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("FUNDFLOW_OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/fundflow-object-storage").strip() or "/tmp/fundflow-object-storage",
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", env.get("AWS_REGION", "")).strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "false").strip().lower()
        not in {"0", "false", "no", "off"},
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend != "local":
        raise ConfigError(f"unsupported object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
