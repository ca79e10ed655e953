from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field("sqlite:///etf.db")
    api_title: str = Field("ETF Tracker API")
    access_token_expire_minutes: int = Field(60)
    refresh_token_expire_minutes: int = Field(60 * 24 * 7)
    jwt_secret: str = Field("secret")
    jwt_algorithm: str = Field("HS256")
    rate_limit_enabled: bool = Field(True)
    sensitive_rate_limit: str = Field("5/minute")
    cors_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])
    static_dir: Optional[str] = Field(None)
    admin_username: Optional[str] = Field(None)
    admin_password: Optional[str] = Field(None)


settings = Settings()
