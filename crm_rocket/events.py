from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from crm_rocket.context import get_correlation_id
from crm_rocket.core.events import event_bus

published_events: list[dict[str, Any]] = []

ACTION_VERBS = {"create": "created", "update": "updated", "delete": "deleted"}


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def publish_row_change(
    *,
    entity: str,
    table: str,
    action: str,
    actor_user_id: str,
    record: dict[str, Any] | None,
    old_record: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Publish a `crm.<entity>.<verb>` envelope carrying the changed row.

    `record` and `old_record` must already be JSON-safe dicts.
    """
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": f"crm.{entity}.{ACTION_VERBS[action]}",
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id,
        "payload": {
            "table": table,
            "action": action,
            "record": record,
            "old_record": old_record,
        },
    }
    publish(envelope)
    return envelope
