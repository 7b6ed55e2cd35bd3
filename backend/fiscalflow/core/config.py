"""
Pydantic Settings — centralized configuration loaded from environment variables.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Redis / Celery ────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: str = "redis://localhost:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/1"

    # ── Job Store / Cache ─────────────────────
    JOB_STORE_BACKEND: str = "redis"          # "redis" | "memory"
    JOB_KEY_PREFIX: str = "job"
    JOB_TTL_SECONDS: int = 86400
    SEMANTIC_CACHE_TTL_SECONDS: int = 3600

    # ── Google Gemini ────────────────────────
    GOOGLE_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    LLM_TEMPERATURE: float = 0.0
    LLM_MAX_TOKENS: int = 4096
    GEMINI_MAX_RETRIES: int = 2
    GEMINI_RETRY_BASE_DELAY_SECONDS: float = 0.5

    # ── LangSmith Tracing ────────────────────
    LANGSMITH_API_KEY: str = ""
    LANGSMITH_ENDPOINT: str = "https://api.smith.langchain.com"
    LANGSMITH_PROJECT: str = "fiscalflow"
    LANGSMITH_TRACING: bool = False

    # ── Company Registry (BrasilAPI) ─────────
    BRASILAPI_BASE_URL: str = "https://brasilapi.com.br/api"
    REGISTRY_TIMEOUT_SECONDS: float = 15.0
    CNPJ_LOOKUP_DELAY_SECONDS: float = 0.5

    # ── Pipeline ──────────────────────────────
    PIPELINE_EXECUTION_MODE: str = "inline"   # "inline" | "celery"
    MAX_TOOL_ROUND_TRIPS: int = 3
    AUDIT_HIGH_VALUE_THRESHOLD: float = 100000.0
    TAX_SIMULATION_THRESHOLD: float = 100000.0
    ANALYSIS_MAX_CONTEXT_CHARS: int = 30000
    INDEX_CHUNK_SIZE: int = 2000
    STAGE_REVIEWS_ENABLED: bool = False
    JOB_WAIT_TIMEOUT_SECONDS: float = 1800.0

    # ── Application ───────────────────────────
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ["../.env", ".env"], "extra": "ignore"}


settings = Settings()
