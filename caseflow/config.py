"""
Environment-specific settings for ``create_app``.

``APP_ENV`` picks the class (development / testing / production); each
class reads its overrides from environment variables at import time.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))


def _database_url(env_var: str, fallback: str | None) -> str | None:
    # Heroku-style postgres:// is rejected by SQLAlchemy 2.x
    raw = os.getenv(env_var, "")
    if not raw:
        return fallback
    return raw.replace("postgres://", "postgresql://", 1)


def _csv(value: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


_POOL = {
    "pool_pre_ping": True,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_recycle": 300,
}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOL)

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    LOG_LEVEL = os.getenv("LOG_LEVEL")
    SLOW_REQUEST_MS = int(os.getenv("SLOW_REQUEST_MS", "1000"))

    # auto_dms checklist rules. No URL means local mode: a non-empty
    # document reference counts as present.
    DOCUMENT_SERVICE_URL = os.getenv("DOCUMENT_SERVICE_URL")
    DOCUMENT_SERVICE_TOKEN = os.getenv("DOCUMENT_SERVICE_TOKEN")
    DOCUMENT_LOOKUP_TIMEOUT = float(os.getenv("DOCUMENT_LOOKUP_TIMEOUT", "3"))

    # Moves of these types stay Pending until a second actor approves them
    LIFECYCLE_APPROVAL_REQUIRED_TYPES = _csv(
        os.getenv("LIFECYCLE_APPROVAL_REQUIRED_TYPES", "Send Back,Remand")
    )


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(
        "DATABASE_URL", f"sqlite:///{os.path.join(basedir, 'instance', 'caseflow_dev.db')}"
    )


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    # in-memory SQLite runs on a StaticPool, which takes no sizing options
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    DOCUMENT_SERVICE_URL = None


class ProductionConfig(Config):
    SQLALCHEMY_DATABASE_URI = _database_url("DATABASE_URL", None)
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOL,
        "pool_timeout": 20,
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, value in (
                ("DATABASE_URL", self.SQLALCHEMY_DATABASE_URI),
                ("SECRET_KEY", os.getenv("SECRET_KEY")),
            ) if not value
        ]
        if missing:
            raise RuntimeError(f"Production requires: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
