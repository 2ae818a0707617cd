from __future__ import annotations

import json
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from storesync.models_sqlalchemy.sync_jobs import (
    SyncAction,
    SyncDirection,
    SyncLogEntry,
    SyncOutcome,
)
from storesync.utils.logger import logger, sanitize_payload


def _json_safe(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(json.dumps(sanitize_payload(value), default=str))


def _value(enum_or_str: Any) -> str:
    return getattr(enum_or_str, "value", enum_or_str)


@dataclass
class TimedEntry:
    """Mutable holder filled in by code running inside :meth:`SyncLedger.timed`."""

    entity_id: Optional[str] = None
    outcome: SyncOutcome = SyncOutcome.SUCCESS
    response: Optional[Any] = None
    error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class SyncLedger:
    """Append-only audit trail of sync operations.

    Entries are committed immediately. A failure to write an entry is logged
    and swallowed so auditing can never break the sync itself.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        *,
        direction: SyncDirection,
        entity_type: str,
        action: SyncAction,
        outcome: SyncOutcome,
        entity_id: Optional[str] = None,
        request: Optional[Any] = None,
        response: Optional[Any] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> Optional[SyncLogEntry]:
        entry = SyncLogEntry(
            direction=_value(direction),
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            action=_value(action),
            outcome=_value(outcome),
            request_snapshot=_json_safe(request),
            response_snapshot=_json_safe(response),
            error=error,
            duration_ms=duration_ms,
        )
        try:
            self.db.add(entry)
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            logger.error(f"[ledger] Failed to write sync log entry for {entity_type}/{entity_id}: {exc}")
            return None
        return entry

    @contextmanager
    def timed(
        self,
        *,
        direction: SyncDirection,
        entity_type: str,
        action: SyncAction,
        request: Optional[Any] = None,
    ) -> Iterator[TimedEntry]:
        """Measure the wrapped block and record one entry for it.

        Exceptions are recorded as FAILED and re-raised.
        """
        holder = TimedEntry()
        started = time.monotonic()
        try:
            yield holder
        except Exception as exc:
            self.db.rollback()
            self.record(
                direction=direction,
                entity_type=entity_type,
                action=action,
                outcome=SyncOutcome.FAILED,
                entity_id=holder.entity_id,
                request=request,
                error=str(exc),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        self.record(
            direction=direction,
            entity_type=entity_type,
            action=action,
            outcome=holder.outcome,
            entity_id=holder.entity_id,
            request=request,
            response=holder.response,
            error=holder.error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    def last_known_good(self, entity_type: str, entity_id: str) -> Optional[SyncLogEntry]:
        return (
            self.db.query(SyncLogEntry)
            .filter(
                SyncLogEntry.entity_type == entity_type,
                SyncLogEntry.entity_id == str(entity_id),
                SyncLogEntry.outcome == SyncOutcome.SUCCESS.value,
            )
            .order_by(SyncLogEntry.id.desc())
            .first()
        )

    def last_success_at(self) -> Optional[datetime]:
        entry = (
            self.db.query(SyncLogEntry)
            .filter(SyncLogEntry.outcome == SyncOutcome.SUCCESS.value)
            .order_by(SyncLogEntry.id.desc())
            .first()
        )
        return entry.created_at if entry else None

    def list_entries(
        self,
        *,
        entity_type: Optional[str] = None,
        direction: Optional[str] = None,
        outcome: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[SyncLogEntry], int]:
        query = self.db.query(SyncLogEntry)
        if entity_type:
            query = query.filter(SyncLogEntry.entity_type == entity_type)
        if direction:
            query = query.filter(SyncLogEntry.direction == direction)
        if outcome:
            query = query.filter(SyncLogEntry.outcome == outcome)
        total = query.count()
        entries = query.order_by(SyncLogEntry.id.desc()).offset(offset).limit(limit).all()
        return entries, total


def serialize_entry(entry: SyncLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "direction": entry.direction,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "action": entry.action,
        "outcome": entry.outcome,
        "request": entry.request_snapshot,
        "response": entry.response_snapshot,
        "error": entry.error,
        "duration_ms": entry.duration_ms,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
