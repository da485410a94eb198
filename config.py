import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _get_env(name: str, default: Optional[str] = None, required: bool = False) -> str:
    """
    Get an environment variable. If required=True and missing, raise RuntimeError.
    """
    val = os.getenv(name, default)
    if required and not val:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return val or ""


def _parse_bool(val: Optional[str], default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_int(val: Optional[str], default: int) -> int:
    try:
        s = str(val).strip()
        # Tolerate float-like env values such as "30.0".
        try:
            return int(s)
        except ValueError:
            return int(float(s))
    except (TypeError, ValueError):
        return default


def _parse_csv(val: Optional[str]) -> List[str]:
    if not val:
        return []
    s = val.strip()
    if s.startswith("[") and s.endswith("]"):  # tolerate Python-like list strings
        s = s[1:-1]
    items = [p.strip().strip("'").strip('"') for p in s.split(",")]
    return [i for i in items if i]


def _parse_decimal(val: Optional[str], default: str) -> Decimal:
    try:
        return Decimal(str(val).strip())
    except (InvalidOperation, TypeError):
        return Decimal(default)


def get_database_uri() -> str:
    """Resolve DATABASE_URL, normalizing the legacy postgres:// scheme."""
    database_url = _get_env("DATABASE_URL").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required. Set it in the environment or .env file.")
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


class Config:
    """
    Central application configuration with strict environment handling.

    Usage:
      app.config.from_object(Config)
      Config.init_secrets(app)
    """

    # Basic flags
    DEBUG = _parse_bool(_get_env("DEBUG", "false"))
    TESTING = _parse_bool(_get_env("TESTING", "false"))

    # Cookies/security headers
    SESSION_COOKIE_SECURE = _parse_bool(_get_env("SESSION_COOKIE_SECURE", "true"))
    REMEMBER_COOKIE_SECURE = SESSION_COOKIE_SECURE
    SESSION_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = _get_env("SESSION_COOKIE_SAMESITE", "Lax")
    PREFERRED_URL_SCHEME = _get_env("PREFERRED_URL_SCHEME", "https")
    PERMANENT_SESSION_LIFETIME = timedelta(hours=_parse_int(_get_env("SESSION_LIFETIME_HOURS", "12"), 12))

    # In production, SECRET_KEY must be provided. For development, fall back to an ephemeral key with a warning.
    SECRET_KEY = _get_env("SECRET_KEY")

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # The SPA reads its token from /api/csrf-token and sends it as X-CSRFToken.
    WTF_CSRF_ENABLED = _parse_bool(_get_env("WTF_CSRF_ENABLED", "true"), True)

    # Rate limiting
    RATELIMIT_ENABLED = _parse_bool(_get_env("RATELIMIT_ENABLED", "true"), True)
    RATELIMIT_STORAGE_URI = _get_env("RATELIMIT_STORAGE_URI", "memory://")

    # Logging
    LOG_TO_FILE = _parse_bool(_get_env("LOG_TO_FILE", "false"))
    LOG_DIR = _get_env("LOG_DIR", "logs")

    # Billing
    CURRENCY_SYMBOL = _get_env("CURRENCY_SYMBOL", "₹")
    PAYMENT_MODES = _parse_csv(_get_env("PAYMENT_MODES", "Cash,Card,UPI,Bank Transfer,Cheque"))
    VISIT_PAYMENT_MODES = _parse_csv(_get_env("VISIT_PAYMENT_MODES", "Cash,Card,UPI,CREDIT"))
    B2B_CLIENT_TYPES = ("REFERRAL_LAB", "INTERNAL")
    CLIENT_TYPES = ("REFERRAL_LAB", "INTERNAL", "WALK_IN")

    # Ledger reconciliation
    LEDGER_TOLERANCE = _parse_decimal(_get_env("LEDGER_TOLERANCE", "0.01"), "0.01")
    LEDGER_STRICT_VALIDATION = _parse_bool(_get_env("LEDGER_STRICT_VALIDATION", "false"))
    LEDGER_AUDIT_SCHEDULE_ENABLED = _parse_bool(_get_env("LEDGER_AUDIT_SCHEDULE_ENABLED", "false"))
    LEDGER_AUDIT_HOUR = _parse_int(_get_env("LEDGER_AUDIT_HOUR", "2"), 2)

    WAIVERS_PAGE_SIZE = _parse_int(_get_env("WAIVERS_PAGE_SIZE", "50"), 50)

    @classmethod
    def init_secrets(cls, app):
        """
        Ensure SECRET_KEY is set. In production, require it; in development, generate an ephemeral one.
        """
        secret = app.config.get("SECRET_KEY") or cls.SECRET_KEY
        if not secret:
            if app.config.get("DEBUG") or app.config.get("TESTING"):
                import secrets
                secret = secrets.token_hex(64)
                app.logger.warning("SECRET_KEY missing; generated ephemeral dev key. Do NOT use in production.")
            else:
                raise RuntimeError("SECRET_KEY is required in production.")
        # Reflect back into app.config so extensions see the value.
        app.config["SECRET_KEY"] = secret
