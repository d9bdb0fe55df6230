import os


def _csv(value):
    """Split a comma-separated env value into a list of non-empty ids."""
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5173")

    # --- Subscription prices (base plan items) ---
    STRIPE_PRICE_PLUS_MONTHLY = os.environ.get("STRIPE_PRICE_PLUS_MONTHLY")
    STRIPE_PRICE_PLUS_QUARTERLY = os.environ.get("STRIPE_PRICE_PLUS_QUARTERLY")
    STRIPE_PRICE_PLUS_YEARLY = os.environ.get("STRIPE_PRICE_PLUS_YEARLY")
    STRIPE_PRICE_TEAMS_MONTHLY = os.environ.get("STRIPE_PRICE_TEAMS_MONTHLY")
    STRIPE_PRICE_TEAMS_QUARTERLY = os.environ.get("STRIPE_PRICE_TEAMS_QUARTERLY")
    STRIPE_PRICE_TEAMS_YEARLY = os.environ.get("STRIPE_PRICE_TEAMS_YEARLY")

    # --- Add-on prices (extra profiles / seats) ---
    STRIPE_PRICE_EXTRA_PROFILE_MONTHLY = os.environ.get("STRIPE_PRICE_EXTRA_PROFILE_MONTHLY")
    STRIPE_PRICE_EXTRA_PROFILE_QUARTERLY = os.environ.get("STRIPE_PRICE_EXTRA_PROFILE_QUARTERLY")
    STRIPE_PRICE_EXTRA_PROFILE_YEARLY = os.environ.get("STRIPE_PRICE_EXTRA_PROFILE_YEARLY")
    STRIPE_ADDON_PRICE_IDS = _csv(os.environ.get("STRIPE_ADDON_PRICE_IDS"))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.office365.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Orders")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    ORDER_NOTIFY_EMAIL = os.environ.get("ORDER_NOTIFY_EMAIL")  # operator inbox for new card orders

    # --- Trial reminders ---
    TRIAL_FIRST_REMINDER_DAYS = int(os.environ.get("TRIAL_FIRST_REMINDER_DAYS", 3))
    TRIAL_FINAL_WARNING_DAYS = int(os.environ.get("TRIAL_FINAL_WARNING_DAYS", 1))

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Session / cookies ---
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "Lax"
    REMEMBER_COOKIE_HTTPONLY = True
    REMEMBER_COOKIE_SAMESITE = "Lax"

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False


class TestConfig(Config):
    """Testing — in-memory SQLite, CSRF disabled."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    APP_BASE_URL = "http://localhost:5173"
    STRIPE_PRICE_PLUS_MONTHLY = "price_plus_monthly"
    STRIPE_PRICE_PLUS_QUARTERLY = "price_plus_quarterly"
    STRIPE_PRICE_PLUS_YEARLY = "price_plus_yearly"
    STRIPE_PRICE_TEAMS_MONTHLY = "price_teams_monthly"
    STRIPE_PRICE_TEAMS_QUARTERLY = "price_teams_quarterly"
    STRIPE_PRICE_TEAMS_YEARLY = "price_teams_yearly"
    STRIPE_PRICE_EXTRA_PROFILE_MONTHLY = "price_extra_monthly"
    STRIPE_PRICE_EXTRA_PROFILE_QUARTERLY = "price_extra_quarterly"
    STRIPE_PRICE_EXTRA_PROFILE_YEARLY = "price_extra_yearly"
    STRIPE_ADDON_PRICE_IDS = []
    ORDER_NOTIFY_EMAIL = "orders@example.test"
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SESSION_COOKIE_SECURE = False
    REMEMBER_COOKIE_SECURE = False
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    REMEMBER_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
