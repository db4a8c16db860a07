"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str = "sqlite:///./chatline.db"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Rate limiting (requests per minute per user; 0 disables)
    RATE_LIMIT_MESSAGES: int = 120
    RATE_LIMIT_UPLOADS: int = 30

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Timeouts for external collaborators (seconds)
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 10.0
    TRANSPORT_TIMEOUT_SECONDS: float = 10.0
    LLM_TIMEOUT_SECONDS: float = 30.0

    # Reconciliation sweep
    STALE_SESSION_MINUTES: int = 30
    STUCK_NOTIFICATION_MINUTES: int = 10
    SWEEP_INTERVAL_SECONDS: int = 60
    SWEEP_BATCH_SIZE: int = 100

    # Messaging limits
    MESSAGE_EDIT_WINDOW_HOURS: int = 24
    MAX_MESSAGE_TEXT_LENGTH: int = 10000
    MAX_ATTACHMENTS_PER_MESSAGE: int = 5
    MAX_RECEIPT_BATCH: int = 100
    MAX_UPLOAD_BYTES: int = 25 * 1024 * 1024  # 25 MB

    # Notifications (comma-separated channel list used when a template has none)
    DEFAULT_NOTIFICATION_CHANNELS: str = "push"
    # Client applications that receive chat notifications
    NOTIFICATION_APP_IDS: str = "mobile,web"

    # Object storage (S3-compatible)
    S3_BUCKET: str = "chatline-media"
    S3_REGION: str = "us-east-1"
    S3_ENDPOINT_URL: str = ""
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""

    # Push (FCM HTTP v1)
    FCM_PROJECT_ID: str = ""
    FCM_ACCESS_TOKEN: str = ""

    # Push (APNs; key is the .p8 signing key file)
    APN_KEY_PATH: str = ""
    APN_KEY_ID: str = ""
    APN_TEAM_ID: str = ""
    APN_BUNDLE_ID: str = ""
    APN_USE_SANDBOX: bool = False

    # Email (Resend)
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "noreply@example.com"

    # SMS gateway webhook
    SMS_WEBHOOK_URL: str = ""
    SMS_API_KEY: str = ""

    # Assistant bot identity
    BOT_EXTERNAL_ID: str = "00000000-0000-4000-8000-000000000b07"
    BOT_DISPLAY_NAME: str = "Assistant"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def notification_app_ids(self) -> list[str]:
        """Parse NOTIFICATION_APP_IDS into a list."""
        return [a.strip() for a in self.NOTIFICATION_APP_IDS.split(",") if a.strip()]

    @property
    def default_channels_list(self) -> list[str]:
        """Parse DEFAULT_NOTIFICATION_CHANNELS into a lowercase list."""
        return [
            c.strip().lower()
            for c in self.DEFAULT_NOTIFICATION_CHANNELS.split(",")
            if c.strip()
        ]


settings = Settings()
