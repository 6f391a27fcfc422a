import os
from dataclasses import dataclass, field
from datetime import timedelta

from dotenv import load_dotenv

# ------------------------------------------------------------
# Domain constants
# ------------------------------------------------------------
CHAT_LIFETIME = timedelta(hours=2)
CHAT_EXPIRY_CHECK_SECONDS = 1

WALK_BUDGET = timedelta(minutes=60)
WALK_REFRESH_SECONDS = 30

REQUEST_LIFETIME = timedelta(hours=24)
REAPPLY_WINDOW = timedelta(hours=2)

RESET_TOKEN_LIFETIME = timedelta(hours=1)

MESSAGE_PAGE_SIZE = 50
DEFAULT_PUSH_ENDPOINT = "https://exp.host/--/api/v2/push/send"


def _env_bool(name, default=False):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name, default):
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return float(default)


@dataclass
class Settings:
    mongodb_uri: str = "mongodb://localhost:27017"
    mongodb_db: str = "mofumofu"
    redis_url: str = "redis://localhost:6379/0"
    jwt_secret: str = "dev-secret"  # change in prod!
    port: int = 5000
    allowed_origins: list = field(default_factory=lambda: ["*"])
    push_endpoint: str = DEFAULT_PUSH_ENDPOINT
    push_timeout: float = 10.0
    search_radius_km: float = 5.0
    log_level: str = "INFO"
    enable_sweeps: bool = True
    debug: bool = False
    mail_server: str = ""
    mail_port: int = 587
    mail_use_tls: bool = True
    mail_username: str = ""
    mail_password: str = ""
    mail_sender: str = "no-reply@mofumofu.jp"
    reset_url: str = "mofumofu://reset-password"

    @classmethod
    def from_env(cls, dotenv=True):
        if dotenv:
            load_dotenv()
        allowed = os.getenv("ALLOWED_ORIGINS", "*")
        origins = [o.strip() for o in allowed.split(",") if o.strip()] or ["*"]
        return cls(
            mongodb_uri=os.getenv("MONGODB_URI", cls.mongodb_uri),
            mongodb_db=os.getenv("MONGODB_DB", cls.mongodb_db),
            redis_url=os.getenv("REDIS_URL", cls.redis_url),
            jwt_secret=os.getenv("JWT_SECRET", cls.jwt_secret),
            port=int(os.getenv("PORT", "5000")),
            allowed_origins=origins,
            push_endpoint=os.getenv("PUSH_ENDPOINT", DEFAULT_PUSH_ENDPOINT),
            push_timeout=_env_float("PUSH_TIMEOUT", cls.push_timeout),
            search_radius_km=_env_float("SEARCH_RADIUS_KM", cls.search_radius_km),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
            enable_sweeps=_env_bool("ENABLE_SWEEPS", True),
            debug=os.getenv("FLASK_ENV") == "development",
            mail_server=os.getenv("MAIL_SERVER", ""),
            mail_port=int(os.getenv("MAIL_PORT", "587")),
            mail_use_tls=_env_bool("MAIL_USE_TLS", True),
            mail_username=os.getenv("MAIL_USERNAME", ""),
            mail_password=os.getenv("MAIL_PASSWORD", ""),
            mail_sender=os.getenv("MAIL_DEFAULT_SENDER", cls.mail_sender),
            reset_url=os.getenv("RESET_URL", cls.reset_url),
        )
