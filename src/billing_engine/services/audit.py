"""Audit sink writer."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models import AuditEvent, Base


def to_jsonable(value: Any) -> Any:
    """Convert model values into JSON-safe primitives."""
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def model_state(instance: Base | None) -> dict[str, Any] | None:
    if instance is None:
        return None
    return to_jsonable(instance.to_dict())


class AuditRecorder:
    """Adds one ``AuditEvent`` row per billing write.

    Events join the caller's transaction, so a rolled-back write leaves no
    audit trail behind. The engine never reads audit history.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: str,
        actor_user_id: UUID | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditEvent:
        """Record an audit event for a billing action."""
        event = AuditEvent(
            actor_user_id=actor_user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            before_json=to_jsonable(before) if before is not None else None,
            after_json=to_jsonable(after) if after is not None else None,
        )
        self.session.add(event)
        return event
