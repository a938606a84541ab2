"""
Shared validation helpers for DeskMemory services.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

from deskmem.config import (
    MAX_COMMENT_LENGTH,
    MAX_MESSAGE_LENGTH,
    MAX_METADATA_BYTES,
    MAX_PLATFORM_LENGTH,
    MAX_TAG_ITEMS,
    MAX_TAG_LENGTH,
)
from deskmem.errors import ValidationIssue
from deskmem.models import MessageRole

FEEDBACK_CATEGORIES = ("excellent", "good", "poor", "wrong")


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


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_non_negative(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationIssue(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value < 0 or value > max_value:
        raise ValidationIssue(f"{field} must be between 0 and {max_value}", field=field, error_type="out_of_range")


def validate_confidence(value: float, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationIssue(f"{field} must be a number", field=field, error_type="invalid_type")
    if value < 0.0 or value > 1.0:
        raise ValidationIssue(f"{field} must be between 0.0 and 1.0", field=field, error_type="out_of_range")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: int,
) -> None:
    if values is None:
        return
    if isinstance(values, str):
        raise ValidationIssue(f"{field} must be a list of strings", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationIssue(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str) or not item.strip():
            raise ValidationIssue(f"{field} must contain only non-empty strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationIssue(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationIssue(f"{field} must be an object", field=field, error_type="invalid_type")
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


def validate_tags(tags: Optional[Sequence[str]], field: str = "tags") -> None:
    validate_string_list(tags, field, MAX_TAG_ITEMS, MAX_TAG_LENGTH)


def validate_message(message: Any) -> None:
    """Validate an inbound message payload before it touches the store."""
    if not isinstance(message, dict):
        raise ValidationIssue("message must be an object", field="message", error_type="invalid_type")

    role = message.get("role")
    allowed_roles = {item.value for item in MessageRole}
    if not isinstance(role, str) or role not in allowed_roles:
        raise ValidationIssue(
            f"role must be one of: {'|'.join(sorted(allowed_roles))}",
            field="role",
            error_type="invalid_value",
        )
    validate_required_text(message.get("content"), "content", MAX_MESSAGE_LENGTH)
    validate_optional_text(message.get("platform"), "platform", MAX_PLATFORM_LENGTH)
    validate_metadata(message.get("metadata"), "metadata")

    timestamp = message.get("timestamp")
    if timestamp is not None and not isinstance(timestamp, datetime):
        raise ValidationIssue("timestamp must be a datetime", field="timestamp", error_type="invalid_type")


def validate_feedback(feedback: Any) -> None:
    if not isinstance(feedback, dict):
        raise ValidationIssue("feedback must be an object", field="feedback", error_type="invalid_type")

    rating = feedback.get("rating")
    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationIssue("rating must be an integer between 1 and 5", field="rating", error_type="out_of_range")

    category = feedback.get("category")
    if category is not None and category not in FEEDBACK_CATEGORIES:
        raise ValidationIssue(
            f"category must be one of: {'|'.join(FEEDBACK_CATEGORIES)}",
            field="category",
            error_type="invalid_value",
        )

    if rating is None and category is None:
        raise ValidationIssue("feedback requires a rating or a category", field="feedback", error_type="required")

    for flag in ("was_helpful", "human_took_over"):
        value = feedback.get(flag)
        if value is not None and not isinstance(value, bool):
            raise ValidationIssue(f"{flag} must be a boolean", field=flag, error_type="invalid_type")

    validate_optional_text(feedback.get("user_comment"), "user_comment", MAX_COMMENT_LENGTH)
