from __future__ import annotations

import json
from typing import Any

from jsonschema import validators
from jsonschema.exceptions import SchemaError

from fundflow.errors import ConfigError, InvalidModelOutputError, SchemaValidationFailedError


def parse_schema_text(text: str) -> dict[str, Any]:
    try:
        schema = json.loads(text)
    except ValueError as exc:
        raise ConfigError(f"schema is not valid JSON: {exc}") from exc
    if not isinstance(schema, dict):
        raise ConfigError("schema must be a JSON object")
    return schema


def parse_model_output(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as exc:
        raise InvalidModelOutputError() from exc


def collect_violations(schema: dict[str, Any], instance: Any) -> list[dict[str, Any]]:
    """Return every violation of ``instance`` against ``schema``, in path order."""
    validator_cls = validators.validator_for(schema)
    try:
        validator_cls.check_schema(schema)
    except SchemaError as exc:
        raise ConfigError(f"schema is not a valid JSON Schema: {exc.message}") from exc
    validator = validator_cls(schema)
    errors = sorted(validator.iter_errors(instance), key=lambda err: [str(part) for part in err.absolute_path])
    return [
        {
            "path": "/" + "/".join(str(part) for part in error.absolute_path),
            "message": error.message,
            "validator": str(error.validator),
        }
        for error in errors
    ]


def validate_payload(schema: dict[str, Any], instance: Any) -> None:
    violations = collect_violations(schema, instance)
    if violations:
        raise SchemaValidationFailedError(violations)
