from typing import Optional

from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_DB: str = "formai_ledger"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: str = "5432"
    # full SQLAlchemy URL, wins over the POSTGRES_* parts (tests use sqlite)
    DATABASE_DSN: Optional[str] = None
    DB_POOL_SIZE: int = 10

    DEBUG_MODE: bool = False

    REDIS_HOST: str = "localhost"
    REDIS_PORT: str = "6379"
    REDIS_DB: int = 0
    CACHE_TTL_SECONDS: int = 60

    # credits granted once when an account is created
    SIGNUP_BONUS_CREDITS: int = 10

    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"

    PAYPAL_CLIENT_ID: str = ""
    PAYPAL_CLIENT_SECRET: str = ""
    PAYPAL_MODE: str = "sandbox"
    PAYPAL_WEBHOOK_ID: str = ""

    PAYMOB_BASE_URL: str = "https://accept.paymob.com"
    PAYMOB_SECRET_KEY: str = ""
    PAYMOB_PUBLIC_KEY: str = ""
    PAYMOB_HMAC_SECRET: str = ""
    PAYMOB_CURRENCY: str = "EGP"

    APP_URL: str = "http://localhost:3000"
    # where providers reach this service (webhooks, redirects)
    PUBLIC_API_URL: str = "http://localhost:8000"
    HTTP_TIMEOUT_SECONDS: float = 15.0
    LOG_DIR: str = "logs"

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_DSN:
            return self.DATABASE_DSN
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def PAYPAL_BASE_URL(self) -> str:
        if self.PAYPAL_MODE == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    class Config:
        env_file = ".env"


config = AppConfig()
