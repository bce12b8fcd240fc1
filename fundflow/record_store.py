from __future__ import annotations

import base64
import binascii
import copy
import json
import os
import sqlite3
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any

from botocore.exceptions import ClientError

from fundflow.errors import ConditionFailedError, ConfigError, ValidationError

PRIMARY_KEY = "fund_id"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {str(key): _json_safe(val) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_json_safe(item) for item in value]
    return value


def encode_cursor(position: Mapping[str, Any] | None) -> str | None:
    if not position:
        return None
    raw = json.dumps(_json_safe(dict(position)), sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str | None) -> dict[str, Any] | None:
    if not cursor:
        return None
    try:
        decoded = json.loads(base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8"))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValidationError("cursor is not a valid continuation token") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("cursor is not a valid continuation token")
    return decoded


@dataclass(frozen=True)
class UpdateCondition:
    """Precondition for a conditional write.

    ``statuses`` of ``None`` means any status is accepted. Statuses listed in
    ``statuses_without_payload`` are accepted only while no payload is stored.
    """

    must_exist: bool = True
    statuses: frozenset[str] | None = None
    allow_unset_status: bool = False
    statuses_without_payload: frozenset[str] = frozenset()

    @property
    def restricts_status(self) -> bool:
        return self.statuses is not None or bool(self.statuses_without_payload)

    def matches(self, item: Mapping[str, Any] | None) -> bool:
        if item is None:
            return not self.must_exist
        if not self.restricts_status:
            return True
        status = item.get("status")
        if not status:
            return self.allow_unset_status
        if self.statuses is not None and status in self.statuses:
            return True
        return status in self.statuses_without_payload and not item.get("payload")


@dataclass
class RecordPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class RecordStore:
    """Single row per fund, keyed by ``fund_id``."""

    backend_name = "base"

    def get(self, fund_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def put_if_absent(self, item: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def update_if(
        self,
        fund_id: str,
        *,
        set_fields: Mapping[str, Any],
        remove_fields: Iterable[str] = (),
        set_if_absent: Mapping[str, Any] | None = None,
        condition: UpdateCondition | None = None,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def query_by_status(self, status: str, *, limit: int, cursor: str | None = None) -> RecordPage:
        raise NotImplementedError

    def scan(self, *, limit: int, cursor: str | None = None) -> RecordPage:
        raise NotImplementedError


def _apply_update(
    current: dict[str, Any] | None,
    fund_id: str,
    set_fields: Mapping[str, Any],
    remove_fields: Iterable[str],
    set_if_absent: Mapping[str, Any] | None,
) -> dict[str, Any]:
    item = dict(current or {PRIMARY_KEY: fund_id})
    for name, value in (set_if_absent or {}).items():
        item.setdefault(name, value)
    for name, value in set_fields.items():
        item[name] = value
    for name in remove_fields:
        if name not in set_fields:
            item.pop(name, None)
    item[PRIMARY_KEY] = fund_id
    return item


def _status_sort_key(item: Mapping[str, Any]) -> tuple[str, str]:
    return (str(item.get("updated_at", "")), str(item.get(PRIMARY_KEY, "")))


class InMemoryRecordStore(RecordStore):
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, dict[str, Any]] = {}

    def get(self, fund_id: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._items.get(fund_id)
            return copy.deepcopy(item) if item is not None else None

    def put_if_absent(self, item: dict[str, Any]) -> dict[str, Any]:
        fund_id = str(item[PRIMARY_KEY])
        with self._lock:
            if fund_id in self._items:
                raise ConditionFailedError(fund_id)
            self._items[fund_id] = copy.deepcopy(item)
            return copy.deepcopy(item)

    def update_if(
        self,
        fund_id: str,
        *,
        set_fields: Mapping[str, Any],
        remove_fields: Iterable[str] = (),
        set_if_absent: Mapping[str, Any] | None = None,
        condition: UpdateCondition | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            current = self._items.get(fund_id)
            if condition is not None and not condition.matches(current):
                raise ConditionFailedError(fund_id)
            updated = _apply_update(current, fund_id, copy.deepcopy(dict(set_fields)), remove_fields, set_if_absent)
            self._items[fund_id] = updated
            return copy.deepcopy(updated)

    def query_by_status(self, status: str, *, limit: int, cursor: str | None = None) -> RecordPage:
        position = decode_cursor(cursor)
        with self._lock:
            rows = [item for item in self._items.values() if item.get("status") == status]
        rows.sort(key=_status_sort_key, reverse=True)
        if position is not None:
            marker = (str(position.get("updated_at", "")), str(position.get(PRIMARY_KEY, "")))
            rows = [row for row in rows if _status_sort_key(row) < marker]
        return self._page(rows, limit=limit, position_fields=("status", "updated_at", PRIMARY_KEY))

    def scan(self, *, limit: int, cursor: str | None = None) -> RecordPage:
        position = decode_cursor(cursor)
        with self._lock:
            rows = sorted(self._items.values(), key=lambda item: str(item[PRIMARY_KEY]))
        if position is not None:
            marker = str(position.get(PRIMARY_KEY, ""))
            rows = [row for row in rows if str(row[PRIMARY_KEY]) > marker]
        return self._page(rows, limit=limit, position_fields=(PRIMARY_KEY,))

    @staticmethod
    def _page(rows: list[dict[str, Any]], *, limit: int, position_fields: tuple[str, ...]) -> RecordPage:
        size = max(1, int(limit))
        page = [copy.deepcopy(row) for row in rows[:size]]
        next_cursor = None
        if len(rows) > size:
            last = page[-1]
            next_cursor = encode_cursor({name: last.get(name) for name in position_fields})
        return RecordPage(items=page, next_cursor=next_cursor)


class SqliteRecordStore(RecordStore):
    """SQLite-backed store; conditional writes run inside ``BEGIN IMMEDIATE``."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS fund_records (
                    fund_id TEXT PRIMARY KEY,
                    status TEXT,
                    updated_at TEXT NOT NULL DEFAULT '',
                    item TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_fund_records_status
                ON fund_records(status, updated_at, fund_id)
                """
            )
        finally:
            conn.close()

    @staticmethod
    def _row_item(row: sqlite3.Row | None) -> dict[str, Any] | None:
        if row is None:
            return None
        return json.loads(row["item"])

    def _write(self, conn: sqlite3.Connection, item: dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO fund_records(fund_id, status, updated_at, item)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(fund_id) DO UPDATE SET
                status = excluded.status,
                updated_at = excluded.updated_at,
                item = excluded.item
            """,
            (
                item[PRIMARY_KEY],
                item.get("status"),
                str(item.get("updated_at", "")),
                json.dumps(item, ensure_ascii=True, sort_keys=True),
            ),
        )

    def get(self, fund_id: str) -> dict[str, Any] | None:
        conn = self._connect()
        try:
            row = conn.execute("SELECT item FROM fund_records WHERE fund_id = ?", (fund_id,)).fetchone()
        finally:
            conn.close()
        return self._row_item(row)

    def put_if_absent(self, item: dict[str, Any]) -> dict[str, Any]:
        fund_id = str(item[PRIMARY_KEY])
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                exists = conn.execute("SELECT 1 FROM fund_records WHERE fund_id = ?", (fund_id,)).fetchone()
                if exists is not None:
                    conn.execute("ROLLBACK")
                    raise ConditionFailedError(fund_id)
                self._write(conn, item)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        return dict(item)

    def update_if(
        self,
        fund_id: str,
        *,
        set_fields: Mapping[str, Any],
        remove_fields: Iterable[str] = (),
        set_if_absent: Mapping[str, Any] | None = None,
        condition: UpdateCondition | None = None,
    ) -> dict[str, Any]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT item FROM fund_records WHERE fund_id = ?", (fund_id,)).fetchone()
                current = self._row_item(row)
                if condition is not None and not condition.matches(current):
                    conn.execute("ROLLBACK")
                    raise ConditionFailedError(fund_id)
                updated = _apply_update(current, fund_id, set_fields, remove_fields, set_if_absent)
                self._write(conn, updated)
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()
        return updated

    def query_by_status(self, status: str, *, limit: int, cursor: str | None = None) -> RecordPage:
        position = decode_cursor(cursor)
        size = max(1, int(limit))
        sql = "SELECT item FROM fund_records WHERE status = ?"
        params: list[Any] = [status]
        if position is not None:
            sql += " AND (updated_at < ? OR (updated_at = ? AND fund_id < ?))"
            marker = str(position.get("updated_at", ""))
            params.extend([marker, marker, str(position.get(PRIMARY_KEY, ""))])
        sql += " ORDER BY updated_at DESC, fund_id DESC LIMIT ?"
        params.append(size + 1)
        rows = self._fetch(sql, params)
        return self._page(rows, size=size, position_fields=("status", "updated_at", PRIMARY_KEY))

    def scan(self, *, limit: int, cursor: str | None = None) -> RecordPage:
        position = decode_cursor(cursor)
        size = max(1, int(limit))
        sql = "SELECT item FROM fund_records"
        params: list[Any] = []
        if position is not None:
            sql += " WHERE fund_id > ?"
            params.append(str(position.get(PRIMARY_KEY, "")))
        sql += " ORDER BY fund_id ASC LIMIT ?"
        params.append(size + 1)
        rows = self._fetch(sql, params)
        return self._page(rows, size=size, position_fields=(PRIMARY_KEY,))

    def _fetch(self, sql: str, params: list[Any]) -> list[dict[str, Any]]:
        conn = self._connect()
        try:
            return [json.loads(row["item"]) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _page(rows: list[dict[str, Any]], *, size: int, position_fields: tuple[str, ...]) -> RecordPage:
        page = rows[:size]
        next_cursor = None
        if len(rows) > size:
            last = page[-1]
            next_cursor = encode_cursor({name: last.get(name) for name in position_fields})
        return RecordPage(items=page, next_cursor=next_cursor)


class DynamoRecordStore(RecordStore):
    backend_name = "dynamodb"

    def __init__(
        self,
        *,
        table_name: str,
        status_index: str = "status-index",
        region: str = "",
        table: Any | None = None,
    ) -> None:
        if table is None:
            try:
                import boto3  # type: ignore
            except Exception as exc:  # pragma: no cover - hard dependency
                raise RuntimeError("boto3 is required for the dynamodb record store") from exc
            table = boto3.resource("dynamodb", region_name=region or None).Table(table_name)
        self._table = table
        self._status_index = status_index

    def get(self, fund_id: str) -> dict[str, Any] | None:
        response = self._table.get_item(Key={PRIMARY_KEY: fund_id}, ConsistentRead=True)
        item = response.get("Item")
        return _json_safe(item) if item else None

    def put_if_absent(self, item: dict[str, Any]) -> dict[str, Any]:
        try:
            self._table.put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(#pk)",
                ExpressionAttributeNames={"#pk": PRIMARY_KEY},
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise ConditionFailedError(str(item[PRIMARY_KEY])) from exc
            raise
        return dict(item)

    def update_if(
        self,
        fund_id: str,
        *,
        set_fields: Mapping[str, Any],
        remove_fields: Iterable[str] = (),
        set_if_absent: Mapping[str, Any] | None = None,
        condition: UpdateCondition | None = None,
    ) -> dict[str, Any]:
        request = build_update_request(
            set_fields=set_fields,
            remove_fields=remove_fields,
            set_if_absent=set_if_absent,
            condition=condition,
        )
        try:
            response = self._table.update_item(
                Key={PRIMARY_KEY: fund_id},
                ReturnValues="ALL_NEW",
                **request,
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise ConditionFailedError(fund_id) from exc
            raise
        return _json_safe(response.get("Attributes") or {})

    def query_by_status(self, status: str, *, limit: int, cursor: str | None = None) -> RecordPage:
        kwargs: dict[str, Any] = {
            "IndexName": self._status_index,
            "KeyConditionExpression": "#s = :s",
            "ExpressionAttributeNames": {"#s": "status"},
            "ExpressionAttributeValues": {":s": status},
            "Limit": max(1, int(limit)),
            "ScanIndexForward": False,
        }
        start_key = decode_cursor(cursor)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        response = self._table.query(**kwargs)
        return RecordPage(
            items=[_json_safe(item) for item in response.get("Items", [])],
            next_cursor=encode_cursor(response.get("LastEvaluatedKey")),
        )

    def scan(self, *, limit: int, cursor: str | None = None) -> RecordPage:
        kwargs: dict[str, Any] = {"Limit": max(1, int(limit))}
        start_key = decode_cursor(cursor)
        if start_key:
            kwargs["ExclusiveStartKey"] = start_key
        response = self._table.scan(**kwargs)
        return RecordPage(
            items=[_json_safe(item) for item in response.get("Items", [])],
            next_cursor=encode_cursor(response.get("LastEvaluatedKey")),
        )


def _is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def build_update_request(
    *,
    set_fields: Mapping[str, Any],
    remove_fields: Iterable[str] = (),
    set_if_absent: Mapping[str, Any] | None = None,
    condition: UpdateCondition | None = None,
) -> dict[str, Any]:
    """Translate an update into DynamoDB expression parameters."""
    names: dict[str, str] = {}
    values: dict[str, Any] = {}

    def _name(attr: str) -> str:
        for alias, existing in names.items():
            if existing == attr:
                return alias
        alias = f"#n{len(names)}"
        names[alias] = attr
        return alias

    def _value(value: Any) -> str:
        placeholder = f":v{len(values)}"
        values[placeholder] = value
        return placeholder

    sets = [f"{_name(attr)} = {_value(value)}" for attr, value in set_fields.items()]
    for attr, value in (set_if_absent or {}).items():
        alias = _name(attr)
        sets.append(f"{alias} = if_not_exists({alias}, {_value(value)})")
    removes = [_name(attr) for attr in remove_fields if attr not in set_fields]

    expression = ""
    if sets:
        expression = "SET " + ", ".join(sets)
    if removes:
        expression = f"{expression} REMOVE " + ", ".join(removes)
    request: dict[str, Any] = {"UpdateExpression": expression.strip()}

    if condition is not None:
        clauses: list[str] = []
        if condition.must_exist:
            clauses.append(f"attribute_exists({_name(PRIMARY_KEY)})")
        if condition.restricts_status:
            status_alias = _name("status")
            options: list[str] = []
            if condition.allow_unset_status:
                options.append(f"attribute_not_exists({status_alias})")
            if condition.statuses:
                placeholders = ", ".join(_value(status) for status in sorted(condition.statuses))
                options.append(f"{status_alias} IN ({placeholders})")
            for status in sorted(condition.statuses_without_payload):
                options.append(f"({status_alias} = {_value(status)} AND attribute_not_exists({_name('payload')}))")
            if options:
                clauses.append("(" + " OR ".join(options) + ")")
            else:
                clauses.append(f"attribute_not_exists({status_alias})")
        if clauses:
            request["ConditionExpression"] = " AND ".join(clauses)

    request["ExpressionAttributeNames"] = names
    if values:
        request["ExpressionAttributeValues"] = values
    return request


def create_record_store_from_env(environ: Mapping[str, str] | None = None) -> RecordStore:
    env = os.environ if environ is None else environ
    backend = env.get("FUNDFLOW_RECORD_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "sqlite":
        path = env.get("FUNDFLOW_SQLITE_PATH", "/tmp/fundflow/records.sqlite3").strip()
        return SqliteRecordStore(path or "/tmp/fundflow/records.sqlite3")
    if backend == "dynamodb":
        table_name = env.get("DDB_TABLE_NAME", "fundflow-funds").strip() or "fundflow-funds"
        return DynamoRecordStore(
            table_name=table_name,
            status_index=env.get("DDB_STATUS_INDEX", "status-index").strip() or "status-index",
            region=env.get("AWS_REGION", "").strip(),
        )
    raise ConfigError(f"unsupported record store backend: {backend}")
