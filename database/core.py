from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from config import config

class Base(DeclarativeBase):
    pass

engine_kwargs = {
    "echo": config.DEBUG,
    "pool_pre_ping": True,
}

# Для SQLite не используем настройки пула PostgreSQL
if config.DB_DIALECT in ("sqlite", "sqlite3"):
    engine_kwargs.update(
        {
            "poolclass": NullPool,
            "connect_args": {"check_same_thread": False},
        }
    )
else:
    engine_kwargs.update(
        {
            "pool_size": config.DB_POOL_SIZE,
            "max_overflow": config.DB_MAX_OVERFLOW,
            "pool_recycle": 3600,
        }
    )

engine = create_async_engine(config.DATABASE_URL, **engine_kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Фабрика сессий с едиными настройками (используется и в тестах со своим engine)."""
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


session_maker = build_session_maker(engine)
