# evfleet/config.py
import os
from dotenv import load_dotenv

load_dotenv()


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "your_secret_key_here")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///evfleet.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_FILE = os.getenv("LOG_FILE", "evfleet.log")

    # Flask-Caching (analytics endpoints)
    CACHE_TYPE = os.getenv("CACHE_TYPE", "SimpleCache")
    CACHE_DEFAULT_TIMEOUT = _env_int("CACHE_DEFAULT_TIMEOUT", 300)

    # Booking validation
    MIN_DEPLOYMENT_BATTERY = _env_float("MIN_DEPLOYMENT_BATTERY", 20.0)
    MAX_START_DISTANCE_KM = _env_float("MAX_START_DISTANCE_KM", 5.0)
    MAX_DEPLOYMENT_HOURS = _env_float("MAX_DEPLOYMENT_HOURS", 12.0)
    MIN_ADVANCE_NOTICE_MINUTES = _env_float("MIN_ADVANCE_NOTICE_MINUTES", 30.0)
    START_GRACE_SECONDS = _env_int("START_GRACE_SECONDS", 60)

    # Optimal vehicle selection
    SELECTOR_MIN_BATTERY = _env_float("SELECTOR_MIN_BATTERY", 30.0)
    SELECTOR_MAX_DISTANCE_KM = _env_float("SELECTOR_MAX_DISTANCE_KM", 50.0)
    SELECTOR_LIMIT = _env_int("SELECTOR_LIMIT", 5)
    SCORE_WEIGHT_BATTERY = _env_float("SCORE_WEIGHT_BATTERY", 0.4)
    SCORE_WEIGHT_DISTANCE = _env_float("SCORE_WEIGHT_DISTANCE", 0.3)
    SCORE_WEIGHT_EQUIPMENT = _env_float("SCORE_WEIGHT_EQUIPMENT", 0.3)

    # Concurrency
    LOCK_TIMEOUT_SECONDS = _env_float("LOCK_TIMEOUT_SECONDS", 5.0)
    TRACKING_WORKERS = _env_int("TRACKING_WORKERS", 4)

    # Notifications feed
    LOW_BATTERY_ALERT_LEVEL = _env_float("LOW_BATTERY_ALERT_LEVEL", 20.0)
    URGENT_MAINTENANCE_HOURS = _env_int("URGENT_MAINTENANCE_HOURS", 24)
    UPCOMING_DEPLOYMENT_HOURS = _env_int("UPCOMING_DEPLOYMENT_HOURS", 2)

    DEFAULT_SERVICE_PROVIDER = os.getenv("DEFAULT_SERVICE_PROVIDER", "EVZIP Service Center")
    DEFAULT_SERVICE_CONTACT = os.getenv("DEFAULT_SERVICE_CONTACT", "+91-1234567890")

    # Generated ids use TEST_ prefixes (DEP_ -> TEST_DEP_) when set
    ID_PREFIX_TEST = _env_bool("ID_PREFIX_TEST")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    CACHE_TYPE = "NullCache"
    LOG_FILE = None
    ID_PREFIX_TEST = True
    # in-memory SQLite is one shared connection; run ingest jobs inline
    TRACKING_WORKERS = 0
