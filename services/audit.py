"""
Журнал аудита. Только история действий: ожидающие действия здесь не ищем.
"""
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import AuditLog, AuditLevel

logger = logging.getLogger(__name__)

SECTION_ORDERS = "orders"


def record(
    session: AsyncSession,
    tenant_id: int,
    message: str,
    *,
    details: Optional[dict[str, Any]] = None,
    level: AuditLevel = AuditLevel.INFO,
    section: str = SECTION_ORDERS,
) -> AuditLog:
    """Добавить запись в текущую транзакцию (коммитит вызывающий)."""
    entry = AuditLog(
        tenant_id=tenant_id,
        section=section,
        level=level,
        message=message,
        details=details,
    )
    session.add(entry)
    return entry


async def record_failure(
    session_factory: async_sessionmaker[AsyncSession],
    tenant_id: Optional[int],
    message: str,
    details: dict[str, Any],
) -> None:
    """
    Записать ошибку в отдельной сессии: основная транзакция к этому моменту откатана.
    Сбой записи только логируем.
    """
    if tenant_id is None:
        logger.error("Audit failure without tenant: %s %s", message, details)
        return
    try:
        async with session_factory() as session:
            record(session, tenant_id, message, details=details, level=AuditLevel.ERROR)
            await session.commit()
    except Exception as e:
        logger.error("Failed to write audit entry: %s (%s)", message, e, exc_info=True)
