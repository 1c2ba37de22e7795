"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All tunables for the reservation API. Secrets come from the environment."""

    # Database
    mongo_uri: str = Field("mongodb://localhost:27017", alias="MONGO_URI")
    mongo_db_name: str = Field("restaurant_reservations", alias="MONGO_DB_NAME")

    # Session tokens
    jwt_secret: str = Field("dev-secret-change-in-production", alias="JWT_SECRET")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    jwt_expire_minutes: int = Field(30 * 24 * 60, alias="JWT_EXPIRE_MINUTES")
    jwt_cookie_expire_days: int = Field(30, alias="JWT_COOKIE_EXPIRE_DAYS")

    # Server
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(5000, alias="PORT")
    environment: str = Field("development", alias="ENVIRONMENT")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    cors_origins: str = Field("*", alias="CORS_ORIGINS")

    # API docs basic auth; docs stay locked while either is unset
    swagger_user: Optional[str] = Field(None, alias="SWAGGER_USER")
    swagger_password: Optional[str] = Field(None, alias="SWAGGER_PASSWORD")

    # Rate limiting
    rate_limit_enabled: bool = Field(True, alias="RATE_LIMIT_ENABLED")
    rate_limit_window_seconds: int = Field(5, alias="RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_max_requests: int = Field(20, alias="RATE_LIMIT_MAX_REQUESTS")
    # only set behind a proxy that overwrites X-Forwarded-For
    trust_proxy: bool = Field(False, alias="TRUST_PROXY")

    # Booking policy
    max_active_reservations: int = Field(3, alias="MAX_ACTIVE_RESERVATIONS")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
