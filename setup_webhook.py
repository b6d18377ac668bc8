"""
Регистрация webhook для всех ботов партнёра: курьерский бот, боты филиалов и исполнителей.

    python setup_webhook.py <tenant_id>           установить webhook
    python setup_webhook.py <tenant_id> --delete  удалить webhook
"""
import argparse
import asyncio
import sys
from typing import List, Tuple

from aiogram import Bot
from sqlalchemy import select

from config import config
from database.core import session_maker, engine
from database.models import Branch, Executor
from services.db_ops import get_tenant_settings

ALLOWED_UPDATES = ["message", "callback_query"]


async def collect_bots(tenant_id: int) -> List[Tuple[str, str]]:
    """[(путь webhook, токен)] для всех настроенных ботов партнёра."""
    bots = []
    async with session_maker() as session:
        settings = await get_tenant_settings(session, tenant_id)
        if settings and settings.courier_bot_token:
            bots.append((f"/webhook/{tenant_id}/courier", settings.courier_bot_token))

        branches = await session.execute(select(Branch).where(Branch.tenant_id == tenant_id))
        for branch in branches.scalars():
            if branch.telegram_bot_token:
                bots.append((f"/webhook/{tenant_id}/branch/{branch.id}", branch.telegram_bot_token))

        executors = await session.execute(
            select(Executor).where(Executor.tenant_id == tenant_id, Executor.is_active.is_(True))
        )
        for executor in executors.scalars():
            if executor.telegram_bot_token:
                bots.append((f"/webhook/{tenant_id}/executor/{executor.id}", executor.telegram_bot_token))
    return bots


async def setup_webhooks(tenant_id: int, delete: bool = False) -> None:
    if not delete and not config.WEBHOOK_BASE_URL:
        print("❌ WEBHOOK_BASE_URL пустой. Добавьте его в .env")
        sys.exit(1)

    bots = await collect_bots(tenant_id)
    if not bots:
        print(f"❌ У партнёра {tenant_id} нет настроенных ботов")
        sys.exit(1)

    for path, token in bots:
        bot = Bot(token=token)
        try:
            if delete:
                result = await bot.delete_webhook(drop_pending_updates=True)
                print(f"{path}: webhook deleted: {result}")
            else:
                url = f"{config.WEBHOOK_BASE_URL}{path}"
                result = await bot.set_webhook(
                    url,
                    secret_token=config.WEBHOOK_SECRET or None,
                    allowed_updates=ALLOWED_UPDATES,
                )
                print(f"{path}: webhook set to {url}: {result}")

            # Проверяем
            webhook_info = await bot.get_webhook_info()
            print(f"  Webhook URL: {webhook_info.url}")
            print(f"  Pending updates: {webhook_info.pending_update_count}")
            print(f"  Last error message: {webhook_info.last_error_message}")
        except Exception as e:
            print(f"❌ {path}: ошибка: {e}")
        finally:
            await bot.session.close()

    await engine.dispose()
    print("\n✅ Готово")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Регистрация webhook ботов партнёра")
    parser.add_argument("tenant_id", type=int)
    parser.add_argument("--delete", action="store_true", help="удалить webhook вместо установки")
    args = parser.parse_args()
    asyncio.run(setup_webhooks(args.tenant_id, delete=args.delete))
