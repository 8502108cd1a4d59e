"""Table change feeds built on the in-process event bus.

Service writes publish `crm.<entity>.<verb>` envelopes; the hub turns them into
postgres-changes style payloads and fans them out to channels subscribed to the
table, honoring each channel's row filter and row scope.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from crm_rocket.core.events import InProcessEventBus, InternalEvent, event_bus
from crm_rocket.crm.repositories import REPOSITORIES_BY_TABLE
from crm_rocket.events import ACTION_VERBS
from crm_rocket.metrics import observe_realtime_delivery
from crm_rocket.platform.security.context import AuthContext

logger = logging.getLogger("app.crm.realtime")

TABLE_ENTITIES: dict[str, str] = {
    "contacts": "contact",
    "companies": "company",
    "deals": "deal",
    "activities": "activity",
    "tasks": "task",
    "documents": "document",
    "user_profiles": "user",
}
CHANGE_EVENTS = {"create": "INSERT", "update": "UPDATE", "delete": "DELETE"}

ChangeCallback = Callable[[dict[str, Any]], None]


class RealtimeError(ValueError):
    pass


@dataclass(frozen=True)
class RowFilter:
    column: str
    value: str

    def matches(self, row: dict[str, Any] | None) -> bool:
        if row is None:
            return False
        current = row.get(self.column)
        return current is not None and str(current) == self.value


def parse_filter(expression: str | None) -> RowFilter | None:
    """Parse `column=eq.value`; equality is the only supported operator."""
    if not expression:
        return None
    column, separator, rest = expression.partition("=")
    operator, dot, value = rest.partition(".")
    if not separator or not dot or operator != "eq" or not column:
        raise RealtimeError(f"Unsupported realtime filter: {expression}")
    return RowFilter(column=column, value=value)


@dataclass
class RealtimeChannel:
    table: str
    callback: ChangeCallback
    row_filter: RowFilter | None = None
    ctx: AuthContext | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def topic(self) -> str:
        suffix = f":{self.row_filter.column}=eq.{self.row_filter.value}" if self.row_filter else ""
        return f"realtime:public:{self.table}{suffix}"

    def accepts(self, payload: dict[str, Any]) -> bool:
        row = payload["new"] or payload["old"]
        if self.row_filter is not None and not (
            self.row_filter.matches(payload["new"]) or self.row_filter.matches(payload["old"])
        ):
            return False
        if self.ctx is not None:
            repository = REPOSITORIES_BY_TABLE[self.table]
            if not repository.can_read(row, self.ctx):
                return False
        return True


def change_payload(envelope: dict[str, Any]) -> dict[str, Any]:
    body = envelope.get("payload") or {}
    action = body.get("action", "update")
    event = CHANGE_EVENTS[action]
    return {
        "event": event,
        "schema": "public",
        "table": body.get("table"),
        "new": body.get("record") if event != "DELETE" else None,
        "old": body.get("old_record") if event != "INSERT" else None,
        "commit_timestamp": envelope.get("occurred_at") or datetime.now(timezone.utc).isoformat(),
    }


class RealtimeHub:
    def __init__(self, bus: InProcessEventBus) -> None:
        self._bus = bus
        self._channels: dict[str, list[RealtimeChannel]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        filter: str | None = None,
        ctx: AuthContext | None = None,
    ) -> RealtimeChannel:
        if table not in TABLE_ENTITIES:
            raise RealtimeError(f"Unknown realtime table: {table}")
        channel = RealtimeChannel(table=table, callback=callback, row_filter=parse_filter(filter), ctx=ctx)
        with self._lock:
            channels = self._channels.setdefault(table, [])
            if not channels:
                self._attach(table)
            channels.append(channel)
        logger.info("realtime.subscribed", extra={"table": table, "status": channel.topic})
        return channel

    def unsubscribe(self, channel: RealtimeChannel) -> None:
        with self._lock:
            channels = self._channels.get(channel.table, [])
            if channel not in channels:
                return
            channels.remove(channel)
            if not channels:
                self._detach(channel.table)
        logger.info("realtime.unsubscribed", extra={"table": channel.table, "status": channel.topic})

    def channels_for(self, table: str) -> list[RealtimeChannel]:
        with self._lock:
            return list(self._channels.get(table, []))

    def reset(self) -> None:
        with self._lock:
            for table in list(self._channels):
                self._detach(table)
            self._channels.clear()

    def dispatch(self, event: InternalEvent) -> None:
        payload = change_payload(event.payload)
        table = payload["table"]
        for channel in self.channels_for(table):
            if not channel.accepts(payload):
                continue
            try:
                channel.callback(payload)
            except Exception as exc:
                logger.exception(
                    "realtime.delivery_failed",
                    extra={"table": table, "event_type": event.name, "error": str(exc)},
                )
                continue
            observe_realtime_delivery(table=table, event=payload["event"])

    def _event_names(self, table: str) -> list[str]:
        return [f"crm.{TABLE_ENTITIES[table]}.{verb}" for verb in ACTION_VERBS.values()]

    def _attach(self, table: str) -> None:
        for name in self._event_names(table):
            self._bus.subscribe(name, self.dispatch)

    def _detach(self, table: str) -> None:
        for name in self._event_names(table):
            self._bus.unsubscribe(name, self.dispatch)


hub = RealtimeHub(event_bus)


def subscribe(
    table: str,
    callback: ChangeCallback,
    filter: str | None = None,
    ctx: AuthContext | None = None,
) -> RealtimeChannel:
    return hub.subscribe(table, callback, filter=filter, ctx=ctx)


def unsubscribe(channel: RealtimeChannel) -> None:
    hub.unsubscribe(channel)
