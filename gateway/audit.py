import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from .models import AuditAction, AuditLogEntry
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only trail of verification transitions and settlement actions."""

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def record(
        self,
        verification_request_id: UUID,
        user_id: int,
        action: AuditAction,
        now: datetime,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditLogEntry:
        entry = {
            "id": uuid4(),
            "verification_request_id": verification_request_id,
            "user_id": user_id,
            "action_type": action,
            "action_details": to_jsonable(details or {}),
            "ip_address": ip_address,
            "created_at": now,
        }
        self.storage.append_audit(entry)
        logger.debug("Audit %s", action.value, extra={"verification_request_id": str(verification_request_id)})
        return AuditLogEntry(**entry)

    def entries_for(self, verification_request_id: UUID) -> list[AuditLogEntry]:
        return [AuditLogEntry(**e) for e in self.storage.audit_entries(verification_request_id)]


def to_jsonable(value):
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    return value
