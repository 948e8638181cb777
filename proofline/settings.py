from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """OpenAI credentials and client options, read from the environment or ``.env``."""

    openai_api_key: Optional[str] = None
    openai_api_base: Optional[str] = None
    # Seconds before one analysis request gives up; the chunk then counts as clean.
    openai_timeout: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
