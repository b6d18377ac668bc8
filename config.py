"""
Конфигурация приложения с валидацией через Pydantic.

Здесь только глобальные настройки процесса. Всё, что зависит от партнёра
(токен курьерского бота, радиус завершения, обязательность геолокации),
хранится в таблице tenant_settings и читается строго по tenant_id.
"""
from typing import Optional
from pathlib import Path
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Config(BaseSettings):
    """Конфигурация приложения с валидацией."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DB_DIALECT: str = Field(default="sqlite", description="Тип БД: postgres или sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="Размер пула соединений PostgreSQL")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Доп. соединений поверх pool_size")
    DB_USER: str = Field(default="postgres", description="Пользователь БД")
    DB_PASS: str = Field(default="postgres", description="Пароль БД")
    DB_HOST: str = Field(default="localhost", description="Хост БД")
    DB_PORT: str = Field(default="5432", description="Порт БД")
    DB_NAME: str = Field(default="courier_dispatch", description="Имя БД")
    SQLITE_PATH: str = Field(default="courier_dispatch.sqlite3", description="Путь к SQLite файлу")
    # Railway и др. платформы передают один DATABASE_URL; если задан, используем его
    DATABASE_URL_OVERRIDE: Optional[str] = Field(default=None, description="URL БД", validation_alias="DATABASE_URL")

    @field_validator("DB_DIALECT")
    @classmethod
    def validate_db_dialect(cls, v: str) -> str:
        """Валидация типа БД."""
        v = v.lower()
        if v not in ("postgres", "postgresql", "sqlite", "sqlite3"):
            raise ValueError(f"Неподдерживаемый тип БД: {v}")
        return v

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        """URL подключения к БД. Если задан DATABASE_URL, используем его."""
        raw = self.DATABASE_URL_OVERRIDE
        if raw:
            raw = raw.strip()
            # postgresql://... → для asyncpg нужен postgresql+asyncpg://
            if raw.startswith("postgresql://") and "+asyncpg" not in raw:
                return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
            return raw
        if self.DB_DIALECT in ("sqlite", "sqlite3"):
            base_dir = Path(__file__).resolve().parent
            db_path = Path(self.SQLITE_PATH)
            if not db_path.is_absolute():
                db_path = base_dir / db_path
            return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Redis (FSM storage: ожидание геолокации курьера)
    REDIS_HOST: str = Field(default="localhost", description="Хост Redis")
    REDIS_PORT: int = Field(default=6379, description="Порт Redis")
    REDIS_DB: int = Field(default=0, description="Номер БД Redis")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Пароль Redis")
    PENDING_LOCATION_TTL: int = Field(
        default=900,
        description="Сколько секунд живёт запрос геолокации для завершения заказа"
    )

    @field_validator("PENDING_LOCATION_TTL")
    @classmethod
    def validate_pending_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("PENDING_LOCATION_TTL должен быть положительным")
        return v

    # Webhook server
    WEBHOOK_HOST: str = Field(default="0.0.0.0", description="Адрес, на котором слушает aiohttp")
    WEBHOOK_PORT: int = Field(default=8080, description="Порт aiohttp")
    WEBHOOK_BASE_URL: str = Field(default="", description="Публичный URL для set_webhook (https://...)")
    WEBHOOK_SECRET: str = Field(default="", description="Секрет для X-Telegram-Bot-Api-Secret-Token")

    @field_validator("WEBHOOK_BASE_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return v.strip().rstrip("/")

    # Delivery defaults (используются, если у партнёра/зоны значение не задано)
    DEFAULT_COMPLETION_RADIUS_M: int = Field(default=100, description="Радиус завершения заказа, м")
    DEFAULT_KM_GRADUATION_METERS: int = Field(default=100, description="Шаг округления км для выплаты, м")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Уровень логирования")
    DEBUG: bool = Field(default=False, description="Режим отладки (echo SQL)")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Валидация уровня логирования."""
        v = v.upper()
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v not in valid_levels:
            raise ValueError(f"Неподдерживаемый уровень логирования: {v}. Допустимые: {valid_levels}")
        return v


# Создаем экземпляр конфигурации с валидацией
try:
    config = Config()
except Exception as e:
    import sys
    print(f"❌ Ошибка загрузки конфигурации: {e}", file=sys.stderr)
    sys.exit(1)
