from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "Question Bank Admin API"
    DATABASE_URL: str = "sqlite:///./jobs.db" # Logic: SQLAlchemy URL. Empty string disables job persistence.
    REDIS_URL: str = "redis://localhost:6379/0" # Rate limiter storage
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"
    MAX_UPLOAD_SIZE_MB: int = 20

    # ⚠ SECURITY WARNING: These defaults are for local development ONLY.
    # In production, you MUST override CORS_ORIGINS via environment variable to restrict access.
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    # ─── Admin Access ────────────────────────────────────────────────────
    # Comma separated list of tokens accepted as admin callers.
    ADMIN_API_TOKENS: str = ""

    # ─── Storage ─────────────────────────────────────────────────────────
    STORAGE_TYPE: str = "local" # "local" or "s3"
    STORAGE_DIR: str = "job_results"
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "eu-west-1"
    AWS_BUCKET_NAME: str = "qbank-ai-results"

    # ─── Azure OpenAI ────────────────────────────────────────────────────
    AZURE_OPENAI_ENDPOINT: str | None = None
    AZURE_OPENAI_API_KEY: str | None = None
    AZURE_OPENAI_DEPLOYMENT: str = "gpt-4o-mini"
    AZURE_OPENAI_API_VERSION: str = "2024-06-01"

    # ─── AI Jobs ─────────────────────────────────────────────────────────
    AI_BATCH_CONCURRENCY: int = 5
    AI_MAX_BATCH_CONCURRENCY: int = 20
    AI_MAX_RETRIES: int = 3
    AI_RETRY_BASE_DELAY_SEC: float = 1.0
    AI_RETRY_MAX_DELAY_SEC: float = 16.0
    AI_CALL_TIMEOUT_SECONDS: float = 45.0
    AI_BATCH_TIMEOUT_SECONDS: float = 180.0
    AI_FAILURE_THRESHOLD: int = 3          # consecutive failed batches before the job errors out
    AI_JOB_MAX_DURATION_SECONDS: float = 3600.0

    # ─── Retention & Polling ─────────────────────────────────────────────
    JOB_STALL_TIMEOUT_SECONDS: int = 900
    JOB_RETENTION_HOURS: int = 72
    VALIDATION_SESSION_TTL_SECONDS: int = 3600
    POLL_INTERVAL_SECONDS: float = 3.0
    JOBS_PAGE_SIZE: int = 4

    class Config:
        env_file = ".env"

settings = Settings()
