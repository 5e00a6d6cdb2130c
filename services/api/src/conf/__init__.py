from typing import Dict, Literal, Optional

from pydantic import BaseModel

from utils import auth, env, log
from utils.env import EnvVarSpec

logger = log.get_logger(__name__)

# Set to True to enable authentication
USE_AUTH = True


def _parse_bool(x: str) -> bool:
    return x.strip().lower() in ("1", "true", "yes")


#### Types ####

class HttpServerConf(BaseModel):
    host: str
    port: int
    autoreload: bool
    cors_origins: list[str]

class PaymentConf(BaseModel):
    provider: Literal["ziina", "stripe"]
    currency: str
    frontend_url: str

    ziina_access_token: Optional[str] = None
    ziina_api_url: str
    ziina_test_mode: bool = False
    ziina_webhook_secret: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    auction_payment_window_hours: int = 48
    featured_payment_window_days: int = 7
    verified_batch_payment_window_days: int = 7

    # Featured listing duration (days) -> price in base currency units
    featured_pricing: Dict[int, float] = {7: 50.0, 10: 70.0, 15: 100.0, 30: 180.0}

class NotificationConf(BaseModel):
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from: Optional[str] = None
    frontend_url: str

class SweeperConf(BaseModel):
    enabled: bool
    interval_minutes: int
    reminder_windows_hours: list[int] = [24, 12]
    cron_api_key: Optional[str] = None

#### Env Vars ####

## Auth ##

AUTH_OIDC_JWK_URL = EnvVarSpec(id="AUTH_OIDC_JWK_URL", is_optional=True)
AUTH_OIDC_AUDIENCE = EnvVarSpec(id="AUTH_OIDC_AUDIENCE", is_optional=True)
AUTH_OIDC_ISSUER = EnvVarSpec(id="AUTH_OIDC_ISSUER", is_optional=True)

## Logging ##

LOG_LEVEL = EnvVarSpec(id="LOG_LEVEL", default="INFO")

## HTTP ##

HTTP_HOST = EnvVarSpec(id="HTTP_HOST", default="0.0.0.0")

HTTP_PORT = EnvVarSpec(id="HTTP_PORT", default="8000", parse=int, type=(int, ...))

HTTP_AUTORELOAD = EnvVarSpec(
    id="HTTP_AUTORELOAD",
    parse=_parse_bool,
    default="false",
    type=(bool, ...),
)

HTTP_EXPOSE_ERRORS = EnvVarSpec(
    id="HTTP_EXPOSE_ERRORS",
    default="false",
    parse=_parse_bool,
    type=(bool, ...),
)

HTTP_CORS_ORIGINS = EnvVarSpec(
    id="HTTP_CORS_ORIGINS",
    default="*",
    parse=lambda x: [o.strip() for o in x.split(",") if o.strip()],
    type=(list, ...),
)

## Payments ##

PAYMENT_PROVIDER = EnvVarSpec(
    id="PAYMENT_PROVIDER",
    default="ziina",
    parse=lambda x: x.strip().lower(),
    type=(Literal["ziina", "stripe"], ...),
)

PAYMENT_CURRENCY = EnvVarSpec(id="PAYMENT_CURRENCY", default="AED", parse=lambda x: x.strip().upper())

FRONTEND_URL = EnvVarSpec(id="FRONTEND_URL", default="http://localhost:3000")

ZIINA_ACCESS_TOKEN = EnvVarSpec(id="ZIINA_ACCESS_TOKEN", is_optional=True, is_secret=True)

ZIINA_API_URL = EnvVarSpec(id="ZIINA_API_URL", default="https://api-v2.ziina.com/api")

ZIINA_TEST_MODE = EnvVarSpec(
    id="ZIINA_TEST_MODE",
    default="false",
    parse=_parse_bool,
    type=(bool, ...),
)

ZIINA_WEBHOOK_SECRET = EnvVarSpec(id="ZIINA_WEBHOOK_SECRET", is_optional=True, is_secret=True)

STRIPE_SECRET_KEY = EnvVarSpec(id="STRIPE_SECRET_KEY", is_optional=True, is_secret=True)

STRIPE_WEBHOOK_SECRET = EnvVarSpec(id="STRIPE_WEBHOOK_SECRET", is_optional=True, is_secret=True)

AUCTION_PAYMENT_WINDOW_HOURS = EnvVarSpec(
    id="AUCTION_PAYMENT_WINDOW_HOURS",
    default="48",
    parse=int,
    type=(int, ...),
)

FEATURED_PAYMENT_WINDOW_DAYS = EnvVarSpec(
    id="FEATURED_PAYMENT_WINDOW_DAYS",
    default="7",
    parse=int,
    type=(int, ...),
)

VERIFIED_BATCH_PAYMENT_WINDOW_DAYS = EnvVarSpec(
    id="VERIFIED_BATCH_PAYMENT_WINDOW_DAYS",
    default="7",
    parse=int,
    type=(int, ...),
)

## Sweeper ##

SWEEPER_ENABLED = EnvVarSpec(
    id="SWEEPER_ENABLED",
    default="true",
    parse=_parse_bool,
    type=(bool, ...),
)

SWEEPER_INTERVAL_MINUTES = EnvVarSpec(
    id="SWEEPER_INTERVAL_MINUTES",
    default="15",
    parse=int,
    type=(int, ...),
)

CRON_API_KEY = EnvVarSpec(id="CRON_API_KEY", is_optional=True, is_secret=True)

## Email ##

SMTP_HOST = EnvVarSpec(id="SMTP_HOST", is_optional=True)
SMTP_PORT = EnvVarSpec(id="SMTP_PORT", default="587", parse=int, type=(int, ...))
SMTP_USER = EnvVarSpec(id="SMTP_USER", is_optional=True)
SMTP_PASSWORD = EnvVarSpec(id="SMTP_PASSWORD", is_optional=True, is_secret=True)
SMTP_FROM = EnvVarSpec(id="SMTP_FROM", is_optional=True)


#### Validation ####
VALIDATED_ENV_VARS = [
    HTTP_AUTORELOAD,
    HTTP_EXPOSE_ERRORS,
    HTTP_PORT,
    HTTP_CORS_ORIGINS,
    LOG_LEVEL,
    PAYMENT_PROVIDER,
    PAYMENT_CURRENCY,
    FRONTEND_URL,
    ZIINA_ACCESS_TOKEN,
    ZIINA_API_URL,
    ZIINA_TEST_MODE,
    ZIINA_WEBHOOK_SECRET,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    AUCTION_PAYMENT_WINDOW_HOURS,
    FEATURED_PAYMENT_WINDOW_DAYS,
    VERIFIED_BATCH_PAYMENT_WINDOW_DAYS,
    SWEEPER_ENABLED,
    SWEEPER_INTERVAL_MINUTES,
    CRON_API_KEY,
    SMTP_HOST,
    SMTP_PORT,
    SMTP_USER,
    SMTP_PASSWORD,
    SMTP_FROM,
]

# Only validate auth vars if USE_AUTH is True
if USE_AUTH:
    VALIDATED_ENV_VARS.extend([
        AUTH_OIDC_JWK_URL,
        AUTH_OIDC_AUDIENCE,
        AUTH_OIDC_ISSUER,
    ])

def validate() -> bool:
    return env.validate(VALIDATED_ENV_VARS)

#### Getters ####

def get_auth_config() -> auth.AuthClientConfig:
    """Get authentication configuration."""
    return auth.AuthClientConfig(
        jwk_url=env.parse(AUTH_OIDC_JWK_URL),
        audience=env.parse(AUTH_OIDC_AUDIENCE),
        issuer=env.parse(AUTH_OIDC_ISSUER),
    )

def get_http_expose_errors() -> bool:
    return env.parse(HTTP_EXPOSE_ERRORS)

def get_log_level() -> str:
    return env.parse(LOG_LEVEL)

def get_http_conf() -> HttpServerConf:
    return HttpServerConf(
        host=env.parse(HTTP_HOST),
        port=env.parse(HTTP_PORT),
        autoreload=env.parse(HTTP_AUTORELOAD),
        cors_origins=env.parse(HTTP_CORS_ORIGINS),
    )

def get_payment_conf() -> PaymentConf:
    return PaymentConf(
        provider=env.parse(PAYMENT_PROVIDER),
        currency=env.parse(PAYMENT_CURRENCY),
        frontend_url=env.parse(FRONTEND_URL).rstrip("/"),
        ziina_access_token=env.parse(ZIINA_ACCESS_TOKEN),
        ziina_api_url=env.parse(ZIINA_API_URL),
        ziina_test_mode=env.parse(ZIINA_TEST_MODE),
        ziina_webhook_secret=env.parse(ZIINA_WEBHOOK_SECRET),
        stripe_secret_key=env.parse(STRIPE_SECRET_KEY),
        stripe_webhook_secret=env.parse(STRIPE_WEBHOOK_SECRET),
        auction_payment_window_hours=max(1, env.parse(AUCTION_PAYMENT_WINDOW_HOURS)),
        featured_payment_window_days=max(1, env.parse(FEATURED_PAYMENT_WINDOW_DAYS)),
        verified_batch_payment_window_days=max(1, env.parse(VERIFIED_BATCH_PAYMENT_WINDOW_DAYS)),
    )

def get_notification_conf() -> NotificationConf:
    return NotificationConf(
        smtp_host=env.parse(SMTP_HOST),
        smtp_port=env.parse(SMTP_PORT),
        smtp_user=env.parse(SMTP_USER),
        smtp_password=env.parse(SMTP_PASSWORD),
        smtp_from=env.parse(SMTP_FROM),
        frontend_url=env.parse(FRONTEND_URL).rstrip("/"),
    )

def get_sweeper_conf() -> SweeperConf:
    return SweeperConf(
        enabled=env.parse(SWEEPER_ENABLED),
        interval_minutes=max(1, env.parse(SWEEPER_INTERVAL_MINUTES)),
        cron_api_key=env.parse(CRON_API_KEY),
    )
