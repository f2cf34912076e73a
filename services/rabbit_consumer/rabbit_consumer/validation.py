"""Pydantic-based validation for ingest records carried in message bodies.

A record is a JSON object identified by ``DATA_SOURCE`` and ``RECORD_ID``;
any other attributes are passed through untouched. Record identifiers are
only used for logging, so ``extract_record_id`` never raises.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, constr

from rabbit_consumer.errors import FatalProcessingError


class IngestRecord(BaseModel):
    """Canonical Python model for records placed on the input queue."""
    # Allow arbitrary record attributes
    model_config = ConfigDict(extra="allow")

    DATA_SOURCE: constr(min_length=1)  # type: ignore[valid-type]
    RECORD_ID: constr(min_length=1)  # type: ignore[valid-type]


def parse_record(body: bytes) -> IngestRecord:
    """Decode and validate a message body.

    Raises ``FatalProcessingError`` for malformed JSON or schema failures:
    redelivering the same bytes can never succeed.
    """
    try:
        document = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FatalProcessingError(f"Body is not valid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise FatalProcessingError(f"Expected a JSON object, got {type(document).__name__}")
    try:
        return IngestRecord.model_validate(document)
    except ValidationError as exc:
        raise FatalProcessingError(f"Record failed validation: {exc.error_count()} error(s)") from exc


def extract_record_id(body: bytes, fallback: str) -> str:
    """Return a human-readable identifier for logging.

    Examples:
    >>> extract_record_id(b'{"DATA_SOURCE": "CUSTOMERS", "RECORD_ID": "1001"}', "tag-1")
    'CUSTOMERS:1001'
    >>> extract_record_id(b'{"RECORD_ID": 7}', "tag-2")
    '7'
    >>> extract_record_id(b'not json', "tag-3")
    'tag-3'
    """
    try:
        document: Any = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return fallback
    if not isinstance(document, dict):
        return fallback
    record_id = document.get("RECORD_ID")
    if record_id is None or record_id == "":
        return fallback
    data_source = document.get("DATA_SOURCE")
    if data_source:
        return f"{data_source}:{record_id}"
    return str(record_id)
