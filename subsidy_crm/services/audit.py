"""
Audit trail - best-effort writes that never break the business flow
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from subsidy_crm.models.audit_log import AuditLog
from subsidy_crm.utils.helpers import json_safe

logger = logging.getLogger(__name__)


async def log_audit(
    db: AsyncSession,
    action: str,
    entity_type: str,
    entity_id,
    actor_id: Optional[int] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> None:
    """Persist one audit row; failures are logged and swallowed"""
    try:
        db.add(AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=actor_id,
            before=json_safe(before),
            after=json_safe(after),
            meta=json_safe(metadata),
            ip=request.client.host if request is not None and request.client else None,
            user_agent=request.headers.get("user-agent") if request is not None else None,
        ))
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.warning(f"Audit write failed for {action} {entity_type}:{entity_id}: {e}")
