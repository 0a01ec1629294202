"""
Shared validation helpers for AssistGate services.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Sequence

from core.config import (
    MAX_METADATA_BYTES,
    MAX_TAG_ITEMS,
    MAX_TAG_LENGTH,
)
from core.errors import ValidationIssue
from core.models import MEMORY_KINDS


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationIssue(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationIssue(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int = MAX_TAG_ITEMS,
    max_item_length: int = MAX_TAG_LENGTH,
) -> None:
    if values is None:
        return
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str):
            raise ValidationIssue(f"{field} must contain only strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationIssue(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationIssue(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_memory_kind(kind: str, field: str = "kind") -> None:
    if kind not in MEMORY_KINDS:
        raise ValidationIssue(
            f"{field} must be one of {list(MEMORY_KINDS)}",
            field=field,
            error_type="invalid_enum",
        )


def parse_iso8601(value: str, field: str) -> datetime:
    """Parse an ISO8601 timestamp; naive values are treated as UTC."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationIssue(f"{field} must be an ISO8601 timestamp", field=field, error_type="invalid_type")
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValidationIssue(
            f"{field} must be an ISO8601 timestamp",
            field=field,
            error_type="invalid_format",
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
