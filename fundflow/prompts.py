from __future__ import annotations

import json
from typing import Any

_EXTRACTION_USER_TEMPLATE = """
JSON Schema (must conform exactly):
{schema}

IC Memo text to extract from:
{document_text}

Now extract and return exactly one JSON object that conforms to the schema.
"""


def build_extraction_prompt(schema: dict[str, Any], document_text: str) -> str:
    """User prompt for per-document extraction; the schema is always embedded, even with empty text."""
    return _EXTRACTION_USER_TEMPLATE.format(
        schema=json.dumps(schema, separators=(",", ":"), ensure_ascii=False),
        document_text=document_text,
    )
