from dataclasses import dataclass
from typing import Optional, Sequence

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Courier, TenantSettings, Branch, Executor
from services.errors import ConfigurationError

# --- Bot identities ---

BOT_KIND_COURIER = "courier"
BOT_KIND_BRANCH = "branch"
BOT_KIND_EXECUTOR = "executor"


@dataclass(frozen=True)
class BotIdentity:
    """Какой бот принял webhook: токен всегда найден по (tenant_id, id), а не «любой»."""
    kind: str
    tenant_id: int
    token: str
    ref_id: Optional[int] = None


async def get_tenant_settings(session: AsyncSession, tenant_id: int) -> Optional[TenantSettings]:
    stmt = select(TenantSettings).where(TenantSettings.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def require_tenant_settings(session: AsyncSession, tenant_id: int) -> TenantSettings:
    """Настройки партнёра с обязательным токеном курьерского бота."""
    settings = await get_tenant_settings(session, tenant_id)
    if settings is None or not settings.courier_bot_token:
        raise ConfigurationError(details="Bot token not found")
    return settings


async def resolve_bot_identity(
    session: AsyncSession,
    tenant_id: int,
    kind: str,
    ref_id: Optional[int] = None,
) -> BotIdentity:
    """
    Найти токен бота, принявшего webhook.

    Raises:
        ConfigurationError: если бот не настроен
    """
    token = None
    if kind == BOT_KIND_COURIER:
        settings = await get_tenant_settings(session, tenant_id)
        token = settings.courier_bot_token if settings else None
    elif kind == BOT_KIND_BRANCH:
        branch = await get_branch(session, tenant_id, ref_id)
        token = branch.telegram_bot_token if branch else None
    elif kind == BOT_KIND_EXECUTOR:
        executor = await get_executor(session, tenant_id, ref_id)
        token = executor.telegram_bot_token if executor and executor.is_active else None

    if not token:
        raise ConfigurationError(details="Bot token not found")
    return BotIdentity(kind=kind, tenant_id=tenant_id, token=token, ref_id=ref_id)

# --- Couriers ---


async def get_courier_by_telegram_id(session: AsyncSession, tenant_id: int, telegram_user_id: int) -> Courier | None:
    stmt = select(Courier).where(
        Courier.tenant_id == tenant_id,
        Courier.telegram_user_id == telegram_user_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# --- Branches / executors ---


async def get_branch(session: AsyncSession, tenant_id: int, branch_id: Optional[int]) -> Branch | None:
    if branch_id is None:
        return None
    stmt = select(Branch).where(Branch.tenant_id == tenant_id, Branch.id == branch_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_executor(session: AsyncSession, tenant_id: int, executor_id: Optional[int]) -> Executor | None:
    if executor_id is None:
        return None
    stmt = select(Executor).where(Executor.tenant_id == tenant_id, Executor.id == executor_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_executors_for_branch(session: AsyncSession, tenant_id: int, branch_id: int) -> Sequence[Executor]:
    """Активные исполнители филиала плюс исполнители без филиала (обслуживают все)."""
    stmt = (
        select(Executor)
        .where(
            Executor.tenant_id == tenant_id,
            Executor.is_active.is_(True),
            or_(Executor.branch_id == branch_id, Executor.branch_id.is_(None)),
        )
        .order_by(Executor.id)
    )
    result = await session.execute(stmt)
    return result.scalars().all()
