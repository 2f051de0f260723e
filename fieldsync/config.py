import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    # Satellite provider (OpenWeatherMap Agro API)
    AGRO_API_KEY = os.getenv("AGRO_API_KEY")
    AGRO_API_ENABLED = _env_bool("AGRO_API_ENABLED")
    AGRO_API_BASE = os.getenv("AGRO_API_BASE", "https://api.agromonitoring.com/agro/1.0")
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))
    PROVIDER_CALL_DELAY_SECONDS = float(os.getenv("PROVIDER_CALL_DELAY_SECONDS", "1.0"))  # Agro API: 60 calls/min

    # Free tier limits
    PROVIDER_MAX_POLYGONS = int(os.getenv("PROVIDER_MAX_POLYGONS", "10"))
    PROVIDER_MAX_AREA_HA = float(os.getenv("PROVIDER_MAX_AREA_HA", "1000"))

    # Minimum data coverage to accept a reading (%)
    MIN_DATA_COVERAGE = float(os.getenv("MIN_DATA_COVERAGE", "10"))

    # Statistics
    MAX_CLOUD_COVERAGE = float(os.getenv("MAX_CLOUD_COVERAGE", "20"))
    CRITICAL_CUTOFF = float(os.getenv("CRITICAL_CUTOFF", "0.30"))
    OPTIMAL_CUTOFF = float(os.getenv("OPTIMAL_CUTOFF", "0.50"))
    TREND_EPSILON = float(os.getenv("TREND_EPSILON", "0.05"))
    DEFAULT_DAYS = int(os.getenv("DEFAULT_DAYS", "30"))
    MAX_DAYS = int(os.getenv("MAX_DAYS", "365"))

    # Polygon sync retry backoff
    SYNC_RETRY_BASE_SECONDS = int(os.getenv("SYNC_RETRY_BASE_SECONDS", "60"))
    SYNC_RETRY_MAX_SECONDS = int(os.getenv("SYNC_RETRY_MAX_SECONDS", str(6 * 60 * 60)))
    # A pending claim older than this is treated as interrupted
    SYNC_PENDING_TIMEOUT_SECONDS = int(os.getenv("SYNC_PENDING_TIMEOUT_SECONDS", "300"))

    # Web Push (VAPID)
    VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
    VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
    VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:alerts@fieldsync.local")
    PUSH_TIMEOUT_SECONDS = float(os.getenv("PUSH_TIMEOUT_SECONDS", "10"))
    PUSH_TTL_SECONDS = int(os.getenv("PUSH_TTL_SECONDS", "86400"))

    # Email (Resend)
    RESEND_API_KEY = os.getenv("RESEND_API_KEY")
    RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
    EMAIL_FROM = os.getenv("EMAIL_FROM", "FieldSync <alerts@fieldsync.local>")
    EMAIL_REPLY_TO = os.getenv("EMAIL_REPLY_TO", "support@fieldsync.local")
    EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))

    # Environment
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
    BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fieldsync.db")

    # Security
    SECRET_KEY = os.getenv("SECRET_KEY", "change-this-secret-key-in-production")
    CRON_SECRET = os.getenv("CRON_SECRET")
    SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", str(60 * 60 * 24)))
    CSRF_TOKEN_MAX_AGE = int(os.getenv("CSRF_TOKEN_MAX_AGE", str(60 * 60 * 24)))

    # Rate limiting (memory:// per process, redis://host:6379 shared across workers)
    RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")
    # Peers whose X-Forwarded-For / X-Real-IP headers are believed
    TRUSTED_PROXIES = [p.strip() for p in os.getenv("TRUSTED_PROXIES", "").split(",") if p.strip()]

    # Logging
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def agro_configured(self) -> bool:
        return bool(self.AGRO_API_KEY) and self.AGRO_API_ENABLED

    @property
    def push_configured(self) -> bool:
        return bool(self.VAPID_PUBLIC_KEY and self.VAPID_PRIVATE_KEY)

    @property
    def email_configured(self) -> bool:
        return bool(self.RESEND_API_KEY)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "prod")

    @property
    def database_path(self) -> str:
        prefix = "sqlite:///"
        if self.DATABASE_URL.startswith(prefix):
            return self.DATABASE_URL[len(prefix):]
        return self.DATABASE_URL


settings = Settings()
