# chainproof/config.py
import os

from sqlalchemy.pool import StaticPool


class BaseConfig:
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://redis:6379/0")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

    # --- DB ---
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "postgresql+psycopg2://app_user:app_pass@db:5432/app_db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

    # --- Progress fan-out ---
    # Redis pub/sub used to carry events from Celery workers to web processes.
    PROGRESS_REDIS_URL = os.environ.get("PROGRESS_REDIS_URL", CELERY_BROKER_URL)
    PROGRESS_QUEUE_SIZE = int(os.environ.get("PROGRESS_QUEUE_SIZE", "100"))
    PROGRESS_KEEPALIVE_SECONDS = float(os.environ.get("PROGRESS_KEEPALIVE_SECONDS", "15"))
    PROGRESS_RELAY_ENABLED = True

    # --- Observer reconnect ---
    OBSERVER_MAX_RETRIES = int(os.environ.get("OBSERVER_MAX_RETRIES", "5"))
    OBSERVER_BACKOFF_BASE = float(os.environ.get("OBSERVER_BACKOFF_BASE", "0.5"))
    OBSERVER_BACKOFF_MAX = float(os.environ.get("OBSERVER_BACKOFF_MAX", "8.0"))

    # --- Analysis collaborator ---
    AUDIT_ANALYZER = os.environ.get("AUDIT_ANALYZER")  # "package.module:callable"
    EXPLORER_API_KEY = os.environ.get("EXPLORER_API_KEY") or os.environ.get("ETHERSCAN_API_KEY")

    # --- Export ---
    EXPORT_RENDER_WIDTH = int(os.environ.get("EXPORT_RENDER_WIDTH", "1240"))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    ENV = "development"


class ProductionConfig(BaseConfig):
    DEBUG = False
    ENV = "production"


class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = False
    ENV = "testing"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {
        # a single shared connection so the in-memory DB survives across sessions/threads
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }
    PROGRESS_RELAY_ENABLED = False
    PROGRESS_KEEPALIVE_SECONDS = 0.05
    EXPORT_RENDER_WIDTH = 420
