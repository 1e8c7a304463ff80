"""Audit log sink.

Every state change the pipeline makes on a receipt or line item is
appended to ``audit_events`` with the before/after state.  Writes happen
in their own session after the caller's transaction has committed, and a
failed audit write is logged rather than raised: the change it describes
has already happened.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from itemize.models.enums import AuditEntityType, AuditEventType
from itemize.models.tables import AuditEvent

logger = logging.getLogger(__name__)


class AuditLogService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(
        self,
        *,
        tenant_id: int,
        entity_type: AuditEntityType,
        entity_id: int,
        event_type: AuditEventType,
        actor_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = AuditEvent(
            tenant_id=tenant_id,
            actor_id=actor_id,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type.value,
            before_state=before,
            after_state=after,
            event_metadata=metadata or {},
        )
        try:
            async with self._session_factory() as session:
                session.add(event)
                await session.commit()
        except Exception:
            logger.warning(
                "Audit write failed tenant=%s entity=%s:%s event=%s",
                tenant_id,
                entity_type.value,
                entity_id,
                event_type.value,
                exc_info=True,
            )
