import os
from typing import List, Mapping, Optional

from pydantic import BaseModel


class Settings(BaseModel):
    """Runtime configuration, built once and handed to every service."""

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"
    redis_url: str = "redis://localhost:6379/0"

    telegram_bot_token: Optional[str] = None
    telegram_bot_username: Optional[str] = None
    init_data_max_age: int = 86400

    secret_key: str = "dev-secret-key-change-me"
    algorithm: str = "HS256"
    session_token_expire_minutes: int = 60 * 24 * 7
    admin_token_expire_minutes: int = 60 * 24

    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    default_tax_rate: float = 0.08
    order_counter_ttl: int = 172800

    user_cache_ttl: int = 3600
    product_cache_ttl: int = 3600
    product_list_cache_ttl: int = 300
    featured_cache_ttl: int = 1800
    category_cache_ttl: int = 3600

    frontend_url: str = "http://localhost:3001"
    log_level: str = "INFO"

    @property
    def cors_origins(self) -> List[str]:
        return ["https://web.telegram.org", "https://telegram.org", self.frontend_url]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        values = {
            "database_url": env.get("DATABASE_URL"),
            "database_name": env.get("DATABASE_NAME"),
            "redis_url": env.get("REDIS_URL"),
            "telegram_bot_token": env.get("TELEGRAM_BOT_TOKEN"),
            "telegram_bot_username": env.get("TELEGRAM_BOT_USERNAME"),
            "init_data_max_age": env.get("INIT_DATA_MAX_AGE"),
            "secret_key": env.get("SECRET_KEY"),
            "session_token_expire_minutes": env.get("SESSION_TOKEN_EXPIRE_MINUTES"),
            "admin_token_expire_minutes": env.get("ADMIN_TOKEN_EXPIRE_MINUTES"),
            "admin_email": env.get("ADMIN_EMAIL"),
            "admin_password": env.get("ADMIN_PASSWORD"),
            "frontend_url": env.get("FRONTEND_URL"),
            "log_level": env.get("LOG_LEVEL"),
        }
        # unset variables keep the field defaults
        return cls(**{k: v for k, v in values.items() if v})
