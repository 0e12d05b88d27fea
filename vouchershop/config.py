import os


def _getenv_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./vouchers.db")
DB_AUTO_CREATE = _getenv_bool("DB_AUTO_CREATE", True)
# pool knobs apply to PostgreSQL only
DB_POOL_SIZE = _getenv_int("DB_POOL_SIZE", 10)
DB_MAX_OVERFLOW = _getenv_int("DB_MAX_OVERFLOW", 10)
DB_POOL_TIMEOUT = _getenv_int("DB_POOL_TIMEOUT", 30)
# 0 -> pool size (PostgreSQL) or 10 (SQLite)
DB_GATE_LIMIT = _getenv_int("DB_GATE_LIMIT", 0)
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# shared secrets; an empty value locks the endpoint
CRON_SECRET = os.environ.get("CRON_SECRET", "")
ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")
# when set, callbacks must carry a hex HMAC-SHA256 of the raw body
CALLBACK_SECRET = os.environ.get("CALLBACK_SECRET", "")

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_URL = os.environ.get("RESEND_URL", "https://api.resend.com/emails")
EMAIL_FROM = os.environ.get("EMAIL_FROM", "noreply@vouchershop.local")
EMAIL_SUBJECT = os.environ.get("EMAIL_SUBJECT", "Your voucher code")

REAPER_GRACE_SECONDS = _getenv_int("REAPER_GRACE_SECONDS", 5 * 60)
REAPER_BATCH_SIZE = _getenv_int("REAPER_BATCH_SIZE", 50)
REAPER_MAX_BATCHES = _getenv_int("REAPER_MAX_BATCHES", 1)

VOUCHER_VALIDITY_DAYS = _getenv_int("VOUCHER_VALIDITY_DAYS", 30)

METRICS_URL = os.environ.get("METRICS_URL", "")
METRICS_RUN_ID = os.environ.get("METRICS_RUN_ID", "")
# samples kept per timing kind; older ones are dropped from the stats
TIMINGS_WINDOW = _getenv_int("TIMINGS_WINDOW", 1024)
