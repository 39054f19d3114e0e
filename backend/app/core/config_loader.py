# backend/app/core/config_loader.py

from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    OPENAI_API_KEY: str = ""
    JWT_SECRET_KEY: str = "supersecret"

    DB_PATH: str = "data.sqlite3"
    MEDIA_ROOT: str = "media"
    PUBLIC_BASE_URL: str = "http://localhost:8000"

    chat_model: str = "gpt-4o-mini"
    chat_max_tokens: int = 1000
    image_model: str = "dall-e-3"
    image_size: str = "1024x1024"
    image_quality: str = "standard"   # standard | hd
    tool_use_enabled: bool = True

    storage_copy_enabled: bool = True
    storage_copy_timeout: float = 20.0

    LOG_DIR: str = ""                 # empty -> backend/logs
    log_level: str = "INFO"

    access_token_expire_minutes: int = 1440
    cors_origins: List[str] = ["*"]
    environment: str = "development"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
