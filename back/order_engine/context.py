import logging
from dataclasses import dataclass, field
from typing import Any

from sqlmodel import Session

from .alerts import AlertChannel, TelegramAlerts
from .audit import AuditEvent, AuditLogger, DatabaseAuditLogger
from .catalog import Catalog, SqlCatalog
from .errors import ErrorCode, OrderError
from .events import Broadcaster, Event, RedisBroadcaster, Room
from .models import StaffRole
from .security import PinVerifier, StaffIdentity, StaffPinVerifier
from .settings import Settings, settings as default_settings
from .store import KeyedLock, OrderStore

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Collaborators shared by the engine services, injected at construction."""

    engine: Any
    broadcaster: Broadcaster
    audit_logger: AuditLogger
    pin_verifier: PinVerifier
    catalog: Catalog
    alerts: AlertChannel
    settings: Settings = field(default_factory=lambda: default_settings)
    locks: KeyedLock = field(default_factory=KeyedLock)

    @classmethod
    def default(cls, engine, settings: Settings | None = None) -> "EngineContext":
        settings = settings or default_settings
        return cls(
            engine=engine,
            broadcaster=RedisBroadcaster(settings.redis_url),
            audit_logger=DatabaseAuditLogger(engine),
            pin_verifier=StaffPinVerifier(engine),
            catalog=SqlCatalog(engine),
            alerts=TelegramAlerts(settings.telegram_bot_token, settings.telegram_chat_id),
            settings=settings,
        )

    def open_store(self) -> OrderStore:
        return OrderStore(Session(self.engine, expire_on_commit=False), self.locks)

    def authorize(self, pin: str | None, roles: tuple[StaffRole, ...], required_message: str) -> StaffIdentity:
        if not pin:
            raise OrderError(ErrorCode.PIN_REQUIRED, required_message)
        staff = self.pin_verifier.verify_pin(pin, roles)
        if staff is None:
            raise OrderError(ErrorCode.INVALID_PIN, "Invalid PIN")
        return staff

    def emit(self, room: Room, event: Event, payload: dict[str, Any]) -> None:
        try:
            self.broadcaster.publish(room, event, payload)
        except Exception as e:
            logger.warning(f"Dropped event {event.value}: {e}", exc_info=True)

    def audit(self, event: AuditEvent) -> None:
        try:
            self.audit_logger.log_audit(event)
        except Exception as e:
            logger.error(f"Failed to log audit {event.action}: {e}", exc_info=True)
