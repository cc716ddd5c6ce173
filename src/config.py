"""
config.py

Configuration classes for the Study-Phase Progression Engine.

Usage:
    cfg = get_config()                 # picks the class named by APP_ENV
    engine = PhaseProgressionEngine(InMemoryUnitOfWork, settings=cfg)
"""

import os


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    ENV_NAME = "base"
    DEBUG = False
    TESTING = False

    # Logging
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT = "readable"     # "readable" or "json"

    # Event ingress
    INGRESS_WORKERS = int(os.getenv("INGRESS_WORKERS", "4"))
    INGRESS_RETRY_MAX = int(os.getenv("INGRESS_RETRY_MAX", "3"))
    INGRESS_BACKOFF_SECONDS = [
        float(s) for s in os.getenv("INGRESS_BACKOFF_SECONDS", "0.1,0.5,2").split(",") if s.strip()
    ]
    SUBMIT_TIMEOUT_SECONDS = float(os.getenv("SUBMIT_TIMEOUT_SECONDS", "5"))

    # Optimistic-concurrency retries inside a single use case
    CONFLICT_RETRY_MAX = int(os.getenv("CONFLICT_RETRY_MAX", "3"))

    # Custom transition conditions with no evaluator wired count as met
    CUSTOM_CONDITION_FAIL_OPEN = _env_bool("CUSTOM_CONDITION_FAIL_OPEN", "true")

    # CORS
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


class DevelopmentConfig(Config):
    """Development environment configuration."""

    ENV_NAME = "development"
    DEBUG = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")


class TestingConfig(Config):
    """Testing environment configuration."""

    ENV_NAME = "testing"
    TESTING = True
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")
    INGRESS_WORKERS = 2
    # No real sleeping between retries in tests
    INGRESS_BACKOFF_SECONDS = [0.0]
    SUBMIT_TIMEOUT_SECONDS = 2.0


class ProductionConfig(Config):
    """Production environment configuration."""

    ENV_NAME = "production"
    LOG_FORMAT = "json"
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

    def __init__(self):
        if not self.CORS_ORIGINS:
            raise RuntimeError("CORS_ORIGINS environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}


def get_config(name: str = None) -> Config:
    """Instantiate the config class for `name` (or APP_ENV)."""
    name = name or os.getenv("APP_ENV", "default")
    if name not in config:
        raise RuntimeError(f"Unknown APP_ENV '{name}'; expected one of {sorted(config)}")
    return config[name]()
