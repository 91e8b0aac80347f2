from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_JWT_SECRET = "test-jwt-secret"


class Settings(BaseSettings):
    """Application settings, read from the environment and `.env`."""

    # Application
    ENVIRONMENT: Literal["local", "test", "development", "production"] = "local"
    LOG_LEVEL: str = "INFO"
    DEFAULT_CURRENCY: str = "KES"

    # Database
    DATABASE_URL: str = "sqlite:///./rewards.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 10
    DB_STATEMENT_TIMEOUT_SECONDS: float = 5.0
    AUTO_CREATE_TABLES: bool = True

    # Auth (tokens are issued by Supabase, we only verify them)
    SUPABASE_JWT_SECRET: str = DEV_JWT_SECRET

    # CPX Research postbacks. An empty secret rejects every postback.
    CPX_SECURE_HASH: str = ""
    CPX_PROVIDER_NAME: str = "cpx"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v

    @model_validator(mode="after")
    def require_real_jwt_secret(self) -> "Settings":
        if self.ENVIRONMENT == "production" and self.SUPABASE_JWT_SECRET == DEV_JWT_SECRET:
            raise ValueError("SUPABASE_JWT_SECRET must be set in production")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
