from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Deliberai"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"

    # Database (SQLite fallback keeps local runs working without Postgres)
    DATABASE_URL: str = "sqlite:///./deliberai.db"

    # OpenAI-compatible inference API
    OPENAI_API_KEY: str = ""  # Required; requests fail fast without it
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    CHAT_MODEL: str = "gpt-4o-mini"
    CHAT_MAX_TOKENS: int = 2000
    CHAT_TEMPERATURE: float = 0.7
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    MODEL_TIMEOUT_SECONDS: float = 45.0

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_COOLDOWN_SECONDS: float = 60.0

    # Evaluation
    MIN_SCORE: float = 0.6
    DEFAULT_MAX_ITEMS: int = 5

    # Embedding backfill
    BACKFILL_MAX_RECORDS: int = 1000
    BACKFILL_BATCH_SIZE: int = 10
    BACKFILL_CALL_DELAY_SECONDS: float = 0.1
    BACKFILL_BATCH_PAUSE_SECONDS: float = 1.0
    BACKFILL_MAX_INPUT_CHARS: int = 8000

    # Sentry (optional)
    SENTRY_DSN: str = ""
    SENTRY_TRACES_SAMPLE_RATE: float = 0.1

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
