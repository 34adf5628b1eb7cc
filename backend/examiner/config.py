from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:8080"
    CORS_ORIGIN_REGEX: Optional[str] = None

    QUESTION_BANK_PATH: str = "data/questions.json"
    TEST_TYPES_PATH: str = "data/test_types.json"
    TEST_QUESTIONS: int = 20
    TEST_DURATION_MINUTES: float = 20
    TIMER_TICK_SECONDS: float = 1.0

    STORAGE_TYPE: Literal["memory", "json", "mongo"] = "memory"
    SESSIONS_FILE: str = "data/sessions.json"
    ASSIGNMENTS_FILE: str = "data/assignments.json"
    MONGO_URI: Optional[str] = None
    MONGO_DATABASE: str = "examiner"

    LOG_LEVEL: str = "INFO"

    @property
    def test_duration_seconds(self) -> float:
        return self.TEST_DURATION_MINUTES * 60


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
