from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from functools import partial
from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.database import on_commit


logger = logging.getLogger("app.audit")

audit_entries: list[dict[str, Any]] = []


def changed_fields(before: dict[str, Any] | None, after: dict[str, Any] | None) -> list[str]:
    before = before or {}
    after = after or {}
    return sorted(key for key in before.keys() | after.keys() if before.get(key) != after.get(key))


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
    session: Session | None = None,
) -> dict[str, Any]:
    """Build an audit entry and store it.

    With a ``session`` the entry is only stored once that session commits.
    """
    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "changed_fields": changed_fields(before, after),
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    if session is None:
        _store(entry)
    else:
        on_commit(session, partial(_store, entry))
    return entry


def _store(entry: dict[str, Any]) -> None:
    audit_entries.append(entry)
    logger.debug("audit.recorded %s.%s", entry["entity_type"], entry["action"])


def entries_for(entity_type: str, entity_id: str | None = None) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and (entity_id is None or entry["entity_id"] == entity_id)
    ]
