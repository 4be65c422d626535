import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def env_str(name: str, default: str = "") -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw if raw else default


def env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 86400) -> int:
    raw = env_str(name)
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def env_bool(name: str, default: bool = False) -> bool:
    raw = env_str(name)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def database_url() -> str:
    url = env_str("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set. Check your .env file.")
    return url


def stripe_secret_key() -> str:
    return env_str("STRIPE_SECRET_KEY")


def stripe_webhook_secret() -> str:
    return env_str("STRIPE_WEBHOOK_SECRET")


def jwt_secret() -> str:
    return env_str("JWT_SECRET")


def payments_mode_override() -> str:
    return env_str("PAYMENTS_MODE").lower()


def currency() -> str:
    return env_str("LEDGER_CURRENCY", "eur").lower()


def cache_ttl_seconds() -> int:
    return env_int("LEDGER_CACHE_TTL_SECONDS", 20, minimum=0, maximum=3600)


def cache_max_entries() -> int:
    return env_int("LEDGER_CACHE_MAX_ENTRIES", 256, minimum=1, maximum=100000)


def log_level() -> str:
    return env_str("LOG_LEVEL", "INFO").upper()


def db_pool_size() -> int:
    return env_int("LEDGER_DB_POOL_SIZE", 5, minimum=1, maximum=100)


def db_max_overflow() -> int:
    return env_int("LEDGER_DB_MAX_OVERFLOW", 10, minimum=0, maximum=100)


def db_pool_recycle_seconds() -> int:
    return env_int("LEDGER_DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400)


def db_pool_timeout_seconds() -> int:
    return env_int("LEDGER_DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300)


def sql_echo() -> bool:
    return env_bool("LEDGER_SQL_ECHO", False)


def min_payout_amount() -> int:
    return env_int("LEDGER_MIN_PAYOUT_CENTS", 1000, minimum=1, maximum=10_000_000)
