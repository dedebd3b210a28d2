"""
Admin audit logging

Append-only record of privileged actions in the ``admin_logs`` table, mirrored
to the dedicated ``audit`` logger. Entries are for retrospective review only,
so a failed write is logged and never fails the action that produced it.
"""

import json
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import async_managed_session
from models import AdminActionType, AdminLog
from services.authorization import Actor
from utils.helpers import normalize_deal_code
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class AuditLog:
    """Service for admin audit logging"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self.audit_logger = logging.getLogger("audit")

    async def record(
        self,
        action: AdminActionType,
        actor: Actor,
        deal_id: Optional[str] = None,
        target_user: Optional[str] = None,
        details: Optional[str] = None,
    ) -> Optional[AdminLog]:
        """Log an administrative action for the audit trail"""
        entry = AdminLog(
            action=action.value,
            deal_id=normalize_deal_code(deal_id) if deal_id else None,
            admin_telegram_id=actor.telegram_id,
            admin_username=actor.username,
            target_user=target_user,
            details=details,
            created_at=get_naive_utc_now(),
        )
        try:
            async with async_managed_session(self.session_factory) as session:
                session.add(entry)
                await session.flush()
        except Exception as e:
            logger.error(f"Error logging admin action {action.value}: {e}")
            return None

        self.audit_logger.info(json.dumps({
            "timestamp": entry.created_at.isoformat(),
            "admin_id": actor.telegram_id,
            "admin_name": actor.username,
            "action": action.value,
            "deal_id": entry.deal_id,
            "target_user": target_user,
            "details": details,
        }))
        logger.info(
            f"🛡️ ADMIN ACTION: @{actor.handle} ({actor.telegram_id}) performed '{action.value}'"
            f"{f' on {entry.deal_id}' if entry.deal_id else ''}"
        )
        return entry

    async def query(self, deal_id: Optional[str] = None, limit: int = 15) -> List[AdminLog]:
        """Newest first"""
        stmt = select(AdminLog)
        if deal_id:
            stmt = stmt.where(AdminLog.deal_id == normalize_deal_code(deal_id))
        async with async_managed_session(self.session_factory) as session:
            result = await session.execute(stmt.order_by(AdminLog.created_at.desc(), AdminLog.id.desc()).limit(limit))
            return list(result.scalars().all())
