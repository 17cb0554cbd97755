import os
from dataclasses import dataclass, field

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}


def safe_int_env(name, default=0, minimum=1, maximum=100000):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except Exception:
        value = int(default)
    return min(max(value, minimum), maximum)


def safe_float_env(name, default=0.0, minimum=0.0, maximum=1.0):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except Exception:
        return default
    return min(max(value, minimum), maximum)


def env_flag(name, default='0'):
    return str(os.getenv(name, default)).strip().lower() in {'1', 'true', 'yes', 'on'}


def parse_cors_allowed_origins():
    raw = (os.getenv('CORS_ALLOWED_ORIGINS', '') or '').strip()
    if raw:
        return frozenset(part.strip().lower() for part in raw.split(',') if part.strip())
    return frozenset({
        'http://127.0.0.1:3000',
        'http://localhost:3000',
        'http://127.0.0.1:5000',
        'http://localhost:5000',
    })


def _env(name, default=''):
    return (os.getenv(name, default) or default).strip()


@dataclass(frozen=True)
class AppConfig:
    """Central config object, read from the environment at construction time."""

    flask_secret_key: str = field(default_factory=lambda: _env('FLASK_SECRET_KEY'))
    log_level: str = field(default_factory=lambda: _env('LOG_LEVEL', 'INFO').upper())
    site_url: str = field(default_factory=lambda: _env('SITE_URL', 'http://localhost:3000').rstrip('/'))
    cors_allowed_origins: frozenset = field(default_factory=parse_cors_allowed_origins)

    sentry_dsn: str = field(default_factory=lambda: _env('SENTRY_DSN_BACKEND'))
    sentry_environment: str = field(default_factory=lambda: _env('SENTRY_ENVIRONMENT', os.getenv('FLASK_ENV', 'production') or 'production'))
    sentry_release: str = field(default_factory=lambda: _env('SENTRY_RELEASE', 'bundle-marketplace'))
    sentry_traces_sample_rate: float = field(default_factory=lambda: safe_float_env('SENTRY_TRACES_SAMPLE_RATE', 0.0))

    stripe_secret_key: str = field(default_factory=lambda: _env('STRIPE_SECRET_KEY'))
    stripe_publishable_key: str = field(default_factory=lambda: _env('STRIPE_PUBLISHABLE_KEY'))
    stripe_webhook_secret: str = field(default_factory=lambda: _env('STRIPE_WEBHOOK_SECRET'))
    stripe_timeout_seconds: int = field(default_factory=lambda: safe_int_env('STRIPE_TIMEOUT_SECONDS', 10, minimum=1, maximum=60))
    stripe_max_network_retries: int = field(default_factory=lambda: safe_int_env('STRIPE_MAX_NETWORK_RETRIES', 0, minimum=0, maximum=5))

    firebase_credentials: str = field(default_factory=lambda: _env('FIREBASE_CREDENTIALS'))
    firestore_timeout_seconds: float = field(default_factory=lambda: float(safe_int_env('FIRESTORE_TIMEOUT_SECONDS', 10, minimum=1, maximum=60)))

    platform_fee_percent: float = field(default_factory=lambda: safe_float_env('PLATFORM_FEE_PERCENT', 10.0, minimum=0.0, maximum=50.0))

    checkout_rate_limit_window_seconds: int = field(default_factory=lambda: safe_int_env('CHECKOUT_RATE_LIMIT_WINDOW_SECONDS', 600, minimum=10, maximum=86400))
    checkout_rate_limit_max_requests: int = field(default_factory=lambda: safe_int_env('CHECKOUT_RATE_LIMIT_MAX_REQUESTS', 6, minimum=1, maximum=100))
    rate_limit_firestore_enabled: bool = field(default_factory=lambda: env_flag('RATE_LIMIT_FIRESTORE_ENABLED', '1'))

    def is_dev_environment(self):
        flask_debug = env_flag('FLASK_DEBUG', '0')
        return str(self.sentry_environment or '').strip().lower() in DEV_ENV_NAMES or flask_debug


def runtime_environment():
    return (
        os.getenv('SENTRY_ENVIRONMENT')
        or os.getenv('FLASK_ENV')
        or os.getenv('ENV')
        or ('production' if os.getenv('RENDER') else 'development')
    ).strip().lower()


def load_config() -> AppConfig:
    config = AppConfig()
    is_dev_like = runtime_environment() in DEV_ENV_NAMES
    if not is_dev_like and not config.flask_secret_key.strip():
        raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
    if not is_dev_like and not config.stripe_webhook_secret:
        raise RuntimeError('STRIPE_WEBHOOK_SECRET must be set in non-development environments.')
    return config
