"""
aiohttp-сервер webhook.

Один Dispatcher на процесс, апдейты всех ботов партнёров подаются в него через
feed_update. Партнёр и бот всегда определяются по пути запроса:

    POST /webhook/{tenant_id}/courier
    POST /webhook/{tenant_id}/branch/{branch_id}
    POST /webhook/{tenant_id}/executor/{executor_id}
    GET  /health
"""
import json
import logging
from typing import Optional

from aiohttp import web
from aiogram import Dispatcher
from aiogram.fsm.storage.base import BaseStorage
from aiogram.types import Update
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import config
from handlers import courier, errors, fallback
from handlers.actions import GatewayReply
from middlewares.auth_middleware import CourierMiddleware
from middlewares.db_middleware import DatabaseMiddleware
from middlewares.logging_middleware import LoggingMiddleware
from services.assignment import AssignmentCoordinator
from services.db_ops import resolve_bot_identity, BOT_KIND_COURIER, BOT_KIND_BRANCH, BOT_KIND_EXECUTOR
from services.errors import ConfigurationError
from services.messaging import MessageLifecycleManager
from services.telegram_utils import TelegramMessenger
from services.transitions import StatusTransitionEngine

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Telegram-Bot-Api-Secret-Token"

DISPATCHER_KEY = web.AppKey("dispatcher", Dispatcher)
SESSION_MAKER_KEY = web.AppKey("session_maker", async_sessionmaker)
MESSENGER_KEY = web.AppKey("messenger", TelegramMessenger)
WORKFLOW_KEY = web.AppKey("workflow", dict)


def create_dispatcher(storage: BaseStorage) -> Dispatcher:
    """
    Собрать Dispatcher. Роутеры модульные: вызывать один раз на процесс.
    """
    dp = Dispatcher(storage=storage)

    # Логирование всех входящих событий + исключений с контекстом
    dp.message.middleware(LoggingMiddleware(log_success=True))
    dp.callback_query.middleware(LoggingMiddleware(log_success=True))

    dp.message.middleware(DatabaseMiddleware())
    dp.callback_query.middleware(DatabaseMiddleware())

    dp.message.middleware(CourierMiddleware())
    dp.callback_query.middleware(CourierMiddleware())

    # fallback последним: ловит необработанные обновления
    dp.include_router(errors.router)
    dp.include_router(courier.router)
    dp.include_router(fallback.router)
    return dp


def _json(reply: GatewayReply) -> web.Response:
    return web.json_response(reply.body, status=reply.status)


def _webhook_handler(kind: str):
    async def handle(request: web.Request) -> web.Response:
        if config.WEBHOOK_SECRET and request.headers.get(SECRET_HEADER) != config.WEBHOOK_SECRET:
            logger.warning("Webhook secret mismatch: path=%s", request.path)
            return _json(GatewayReply.error(401, "Unauthorized"))

        tenant_id = int(request.match_info["tenant_id"])
        ref_id: Optional[int] = None
        if "ref_id" in request.match_info:
            ref_id = int(request.match_info["ref_id"])

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Invalid webhook JSON: path=%s, err=%s", request.path, e)
            return _json(GatewayReply.error(400, "Invalid JSON", str(e)))
        if not isinstance(payload, dict):
            return _json(GatewayReply.error(400, "Invalid update", "Update must be a JSON object"))

        app = request.app
        session_maker = app[SESSION_MAKER_KEY]
        messenger = app[MESSENGER_KEY]

        try:
            async with session_maker() as session:
                identity = await resolve_bot_identity(session, tenant_id, kind, ref_id)
        except ConfigurationError as e:
            logger.error("Bot not configured: tenant=%s, kind=%s, ref=%s", tenant_id, kind, ref_id)
            return _json(GatewayReply(e.status, e.to_body()))

        bot = messenger.get_bot(identity.token)
        try:
            update = Update.model_validate(payload, context={"bot": bot})
        except ValidationError as e:
            logger.warning("Invalid update: tenant=%s, kind=%s, err=%s", tenant_id, kind, e)
            return _json(GatewayReply.error(400, "Invalid update", str(e)))

        try:
            result = await app[DISPATCHER_KEY].feed_update(
                bot,
                update,
                tenant_id=tenant_id,
                identity=identity,
                session_maker=session_maker,
                messenger=messenger,
                **app[WORKFLOW_KEY],
            )
        except Exception as e:
            logger.error("Webhook processing failed: tenant=%s, kind=%s", tenant_id, kind, exc_info=True)
            return _json(GatewayReply.error(500, "Internal server error", str(e)))

        if isinstance(result, GatewayReply):
            return _json(result)
        return _json(GatewayReply.ok())

    return handle


async def health(request: web.Request) -> web.Response:
    try:
        async with request.app[SESSION_MAKER_KEY]() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check failed: %s", e)
        return web.json_response({"ok": False, "db": False}, status=503)
    return web.json_response({"ok": True, "db": True})


async def _close_bots(app: web.Application) -> None:
    await app[MESSENGER_KEY].close()


def create_app(
    dp: Dispatcher,
    session_maker: async_sessionmaker[AsyncSession],
    messenger: TelegramMessenger,
) -> web.Application:
    lifecycle = MessageLifecycleManager(messenger)
    coordinator = AssignmentCoordinator(lifecycle)
    transitions = StatusTransitionEngine(lifecycle, coordinator)

    app = web.Application()
    app[DISPATCHER_KEY] = dp
    app[SESSION_MAKER_KEY] = session_maker
    app[MESSENGER_KEY] = messenger
    app[WORKFLOW_KEY] = {
        "lifecycle": lifecycle,
        "coordinator": coordinator,
        "transitions": transitions,
    }

    app.router.add_post(r"/webhook/{tenant_id:\d+}/courier", _webhook_handler(BOT_KIND_COURIER))
    app.router.add_post(r"/webhook/{tenant_id:\d+}/branch/{ref_id:\d+}", _webhook_handler(BOT_KIND_BRANCH))
    app.router.add_post(r"/webhook/{tenant_id:\d+}/executor/{ref_id:\d+}", _webhook_handler(BOT_KIND_EXECUTOR))
    app.router.add_get("/health", health)
    app.on_cleanup.append(_close_bots)
    return app
