"""Audit trail writes. Fire-and-forget: a failed write is logged, never raised."""

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from sqlmodel import Session

from .events import json_default
from .models import AuditLog

logger = logging.getLogger(__name__)


@dataclass
class AuditEvent:
    action: str
    target_type: str | None = None
    target_id: int | str | None = None
    user_id: int | None = None
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    reason: str | None = None


class AuditLogger(Protocol):
    def log_audit(self, event: AuditEvent) -> None: ...


def _dump(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=json_default)


class DatabaseAuditLogger:
    """Writes audit rows in a session of their own so they never join (or break)
    the caller's transaction."""

    def __init__(self, engine):
        self.engine = engine

    def log_audit(self, event: AuditEvent) -> None:
        try:
            with Session(self.engine) as session:
                session.add(AuditLog(
                    user_id=event.user_id,
                    action=event.action,
                    target_type=event.target_type,
                    target_id=str(event.target_id) if event.target_id is not None else None,
                    old_value=_dump(event.old_value),
                    new_value=_dump(event.new_value),
                    reason=event.reason,
                ))
                session.commit()
        except Exception as e:
            logger.error(f"Failed to log audit {event.action}: {e}", exc_info=True)
