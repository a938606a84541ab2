"""
Audit trail for archival and profile jobs.

Rows carry ids, counts and short labels. Conversation text, summaries and
profile prose are rejected before they reach the session.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from deskmem.models import AuditEvent

ALLOWED_ACTOR_TYPES = frozenset({"system", "scheduler", "operator", "integration"})
ALLOWED_TARGET_TYPES = frozenset({"conversation", "summary", "customer"})

# Substrings; a metadata key containing any of them is refused at any depth.
CONTENT_KEY_MARKERS = (
    "content",
    "summary_text",
    "profile_text",
    "transcript",
    "comment",
    "raw_text",
)
MAX_METADATA_STRING_LENGTH = 500
MAX_TARGET_ID_LENGTH = 200


def _is_content_key(key: str) -> bool:
    folded = key.strip().lower().replace("-", "_")
    return any(marker in folded for marker in CONTENT_KEY_MARKERS)


def _walk_metadata(node: Any, where: str) -> None:
    if isinstance(node, dict):
        for key, child in node.items():
            if not isinstance(key, str):
                raise ValueError(f"non-string metadata key under '{where}'")
            if _is_content_key(key):
                raise ValueError(f"metadata key '{key}' may carry conversation text")
            _walk_metadata(child, f"{where}.{key}")
    elif isinstance(node, (list, tuple)):
        for index, child in enumerate(node):
            _walk_metadata(child, f"{where}[{index}]")
    elif isinstance(node, str) and len(node) > MAX_METADATA_STRING_LENGTH:
        raise ValueError(f"metadata string at '{where}' exceeds {MAX_METADATA_STRING_LENGTH} chars")


def _checked_targets(target_ids: Iterable[Any]) -> list[Any]:
    if isinstance(target_ids, (str, bytes, dict)) or not isinstance(target_ids, (list, tuple)):
        raise ValueError("target_ids must be a list of ids")
    ids = list(target_ids)
    for item in ids:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ValueError(f"unsupported target id {item!r}")
        if isinstance(item, str) and len(item) > MAX_TARGET_ID_LENGTH:
            raise ValueError("target id exceeds length limit")
    return ids


def _require_choice(name: str, value: str, allowed: frozenset) -> None:
    if value not in allowed:
        raise ValueError(f"{name} '{value}' not in {sorted(allowed)}")


def log_event(
    db,
    *,
    event_type: str,
    tenant_id: str,
    actor_type: str,
    target_type: str,
    target_ids: list[Any],
    actor_id: Optional[str] = None,
    count_affected: Optional[int] = None,
    reason: Optional[str] = None,
    request_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    created_at: Optional[datetime] = None,
) -> AuditEvent:
    """
    Stage an audit row on ``db``.

    Nothing is flushed here; the row commits or rolls back with the caller's
    unit of work. Raises ValueError on anything that could leak content.
    """
    if not isinstance(event_type, str) or not event_type.strip():
        raise ValueError("event_type is required")
    _require_choice("actor_type", actor_type, ALLOWED_ACTOR_TYPES)
    _require_choice("target_type", target_type, ALLOWED_TARGET_TYPES)
    ids = _checked_targets(target_ids)
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be a mapping")
        _walk_metadata(metadata, "metadata")

    row = AuditEvent(
        created_at=created_at or datetime.utcnow(),
        event_type=event_type,
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        target_type=target_type,
        target_ids=ids,
        count_affected=count_affected,
        reason=reason,
        request_id=request_id,
        metadata_=metadata,
    )
    db.add(row)
    return row


def _event_dict(row: AuditEvent) -> dict:
    return {
        "event_id": str(row.event_id),
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "event_type": row.event_type,
        "actor_type": row.actor_type,
        "target_type": row.target_type,
        "target_ids": row.target_ids,
        "count_affected": row.count_affected,
        "reason": row.reason,
        "metadata": row.metadata_,
    }


def list_audit_events(
    db,
    *,
    tenant_id: str,
    event_type: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    """Newest-first audit rows for one tenant."""
    if limit < 1:
        raise ValueError("limit must be at least 1")

    query = db.query(AuditEvent).filter(AuditEvent.tenant_id == tenant_id)
    if event_type:
        query = query.filter(AuditEvent.event_type == event_type)
    rows = query.order_by(AuditEvent.created_at.desc(), AuditEvent.event_id.desc()).limit(limit)
    return [_event_dict(row) for row in rows]


__all__ = [
    "log_event",
    "list_audit_events",
    "ALLOWED_ACTOR_TYPES",
    "ALLOWED_TARGET_TYPES",
]
