from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache

class Settings(BaseSettings):
    # MongoDB Settings
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "chat_gateway"

    # JWT Settings
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # Hugging Face Inference Settings
    HUGGINGFACE_API_KEY: Optional[str] = None
    HF_API_URL: str = "https://api-inference.huggingface.co"
    HF_MODEL: str = "OpenAssistant/oasst-sft-4-pythia-12b-epoch-3.5"
    HF_MAX_NEW_TOKENS: int = 200
    HF_TYPICAL_P: float = 0.2  # OpenAssistant models accept typical_p
    HF_REPETITION_PENALTY: float = 1.0
    HF_TRUNCATE: int = 1000
    HF_TIMEOUT_SECONDS: float = 60.0

    # Rate Limit Settings
    RATE_LIMIT_REQUESTS: int = 15
    RATE_LIMIT_WINDOW_SECONDS: int = 86400  # 1 day
    RATE_LIMIT_BACKEND: str = "mongo"  # "mongo" or "memory"
    RATE_LIMIT_FAIL_OPEN: bool = False

    # Create database indexes on startup
    CREATE_INDEXES_ON_STARTUP: bool = False

    # CORS Settings
    CORS_ORIGINS: str = "*"

    @property
    def CORS_ORIGINS_LIST(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    class Config:
        env_file = ".env"
        case_sensitive = True

@lru_cache()
def get_settings():
    return Settings()

settings = get_settings()
