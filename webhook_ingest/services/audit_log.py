from typing import Any, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from webhook_ingest.db.models.audit_log import AuditLog


class AuditLogWriter:
    async def append(self, db_session: AsyncSession, actor_user_id: str, entity_type: str, entity_id: str,
                     action: str, data: Dict[str, Any]) -> AuditLog:
        entry = AuditLog(
            actor_user_id=actor_user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            data=data,
        )
        db_session.add(entry)
        await db_session.flush()
        return entry
