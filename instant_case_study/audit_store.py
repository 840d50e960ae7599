import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError

from instant_case_study.schemas import AuditLogRecord


class AuditLogStoreError(Exception):
    pass


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class AuditLogStore(ABC):
    @abstractmethod
    def put_event(self, event: AuditLogRecord) -> AuditLogRecord:
        raise NotImplementedError

    @abstractmethod
    def list_events(self, user_id: str, limit: int = 100) -> List[AuditLogRecord]:
        """Return the newest entries first, ordered by ``event_id``."""
        raise NotImplementedError


class InMemoryAuditLogStore(AuditLogStore):
    def __init__(self):
        self.items: Dict[Tuple[str, str], AuditLogRecord] = {}

    def put_event(self, event: AuditLogRecord) -> AuditLogRecord:
        self.items[(event.user_id, event.event_id)] = event
        return event

    def list_events(self, user_id: str, limit: int = 100) -> List[AuditLogRecord]:
        events = [event for (item_user_id, _), event in self.items.items() if item_user_id == user_id]
        events.sort(key=lambda item: item.event_id, reverse=True)
        return events[: max(limit, 0)]


class DynamoAuditLogStore(AuditLogStore):
    def __init__(self, table_name: str):
        self._table = boto3.resource("dynamodb").Table(table_name)

    def put_event(self, event: AuditLogRecord) -> AuditLogRecord:
        try:
            self._table.put_item(Item=event.model_dump(mode="json"))
        except (BotoCoreError, ClientError) as exc:
            raise AuditLogStoreError(f"Failed to write audit event {event.event_id}: {exc}") from exc
        return event

    def list_events(self, user_id: str, limit: int = 100) -> List[AuditLogRecord]:
        # event_id is the sort key and starts with epoch millis.
        safe_limit = max(min(limit, 500), 1)
        response = self._table.query(
            KeyConditionExpression=Key("user_id").eq(user_id),
            ScanIndexForward=False,
            Limit=safe_limit,
        )
        return [AuditLogRecord.model_validate(item) for item in response.get("Items", [])]


_IN_MEMORY_AUDIT_LOG_STORE = InMemoryAuditLogStore()


def get_audit_log_store() -> AuditLogStore:
    force_memory = _as_bool(os.environ.get("USE_IN_MEMORY_AUDIT_LOG_STORE"), default=False)
    if force_memory:
        return _IN_MEMORY_AUDIT_LOG_STORE

    table_name = (os.environ.get("AUDIT_LOGS_TABLE") or "").strip()
    if not table_name:
        return _IN_MEMORY_AUDIT_LOG_STORE

    try:
        return DynamoAuditLogStore(table_name=table_name)
    except Exception:
        return _IN_MEMORY_AUDIT_LOG_STORE


def reset_in_memory_audit_log_store():
    _IN_MEMORY_AUDIT_LOG_STORE.items.clear()


def billing_event_id(
    stripe_event_id: Optional[str],
    created: Optional[int] = None,
    now: Optional[datetime] = None,
) -> str:
    """Build the audit sort key for a Stripe event.

    The key starts with the event time in epoch milliseconds so the table sorts
    chronologically. Stripe's ``created`` and ``id`` are stable across
    redelivery, so a redelivered event overwrites its earlier entry.
    """
    if created is not None:
        millis = int(created) * 1000
    else:
        event_time = now or datetime.now(timezone.utc)
        millis = int(event_time.timestamp() * 1000)
    suffix = f"stripe#{stripe_event_id}" if stripe_event_id else os.urandom(8).hex()
    return f"{millis:013d}#{suffix}"
