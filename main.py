import asyncio
import logging
import sys
import os
import time
from logging.handlers import RotatingFileHandler

from aiohttp import web

from config import config

# Configure logging with rotating file handler
log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format=log_format,
    handlers=[
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(
            'bot.log',
            maxBytes=10*1024*1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
    ]
)

logger = logging.getLogger(__name__)


def setup_asyncio_exception_logging() -> None:
    """
    Ловит исключения из "фоновых" задач asyncio (Task exception was never retrieved),
    которые не проходят через aiogram handlers/errors.
    """
    loop = asyncio.get_running_loop()

    def _handler(loop: asyncio.AbstractEventLoop, context: dict):
        msg = context.get("message", "asyncio exception")
        exc = context.get("exception")
        logger.error("ASYNCIO %s", msg, exc_info=exc)

    loop.set_exception_handler(_handler)


async def wait_for_db() -> None:
    """
    Ждём БД при старте (чтобы сервис не падал из‑за того, что PostgreSQL ещё поднимается).

    Управляется env:
    - DB_WAIT_SECONDS (по умолчанию 60)
    - DB_RETRY_MAX_DELAY (по умолчанию 10)
    """
    max_wait = int(os.getenv("DB_WAIT_SECONDS", "60"))
    max_delay = float(os.getenv("DB_RETRY_MAX_DELAY", "10"))

    from database.core import engine
    from sqlalchemy.exc import OperationalError, SQLAlchemyError
    from sqlalchemy import text

    deadline = time.monotonic() + max_wait
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("✅ Database connection successful")
            return
        except Exception as e:
            # retry только для ошибок подключения/движка, а не для логических ошибок в коде
            retryable = isinstance(e, (OperationalError, SQLAlchemyError, ConnectionRefusedError, OSError)) or (
                e.__class__.__module__.startswith("asyncpg.")
            )
            if not retryable:
                raise
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("❌ ОШИБКА ПОДКЛЮЧЕНИЯ К БАЗЕ ДАННЫХ: %s", e, exc_info=True)
                logger.error(
                    "Настройки: DB_HOST=%s DB_PORT=%s DB_NAME=%s DB_USER=%s. "
                    "Проверьте, что PostgreSQL запущен и база создана (python init_db.py)",
                    config.DB_HOST, config.DB_PORT, config.DB_NAME, config.DB_USER,
                )
                raise

            delay = min(max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            delay = min(delay, max(1.0, remaining))
            logger.warning(
                "DB not ready (attempt=%s). Retry in %.1fs (remaining=%.1fs). err=%s",
                attempt,
                delay,
                remaining,
                repr(e),
            )
            await asyncio.sleep(delay)


async def create_storage():
    """Redis для FSM (ожидание геолокации с TTL), если доступен, иначе MemoryStorage."""
    redis_client = None
    try:
        import redis.asyncio as redis
        redis_client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            decode_responses=False
        )
        # Проверяем подключение
        await redis_client.ping()
        from aiogram.fsm.storage.redis import RedisStorage
        storage = RedisStorage(
            redis=redis_client,
            state_ttl=config.PENDING_LOCATION_TTL,
            data_ttl=config.PENDING_LOCATION_TTL,
        )
        logger.info("Using Redis storage for FSM (ttl=%ss)", config.PENDING_LOCATION_TTL)
    except Exception as e:
        logger.warning(f"Redis not available, using MemoryStorage: {e}")
        from aiogram.fsm.storage.memory import MemoryStorage
        storage = MemoryStorage()
        if redis_client is not None:
            await redis_client.aclose()
    return storage


async def main():
    logger.info("Starting courier dispatch webhook...")
    setup_asyncio_exception_logging()
    logger.info("DB_DIALECT=%s DATABASE_URL=%s", config.DB_DIALECT, config.DATABASE_URL)

    # Ждём БД с ретраями (чтобы не падать на старте)
    await wait_for_db()

    from database.core import Base, engine, session_maker
    import database.models  # noqa: F401  регистрирует таблицы в metadata

    # В режиме SQLite всегда поднимаем таблицы автоматически (чтобы проект был "рабочим из коробки")
    if config.DB_DIALECT in ("sqlite", "sqlite3"):
        logger.info("SQLite mode: ensuring tables exist (create_all)...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("SQLite mode: tables are ready")

    storage = await create_storage()

    from server import create_dispatcher, create_app
    from services.telegram_utils import TelegramMessenger

    dp = create_dispatcher(storage)
    messenger = TelegramMessenger()
    app = create_app(dp, session_maker, messenger)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, config.WEBHOOK_HOST, config.WEBHOOK_PORT)
    try:
        await site.start()
        logger.info("Webhook server started on %s:%s", config.WEBHOOK_HOST, config.WEBHOOK_PORT)
        # Работаем до остановки процесса
        await asyncio.Event().wait()
    finally:
        # on_cleanup закрывает сессии всех ботов
        await runner.cleanup()
        # RedisStorage.close закрывает и клиент Redis
        await storage.close()
        await engine.dispose()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
