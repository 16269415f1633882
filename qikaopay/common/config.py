"""Central environment-driven settings for the payment service.

The process loads this once at startup. Gateway credentials, callback URLs and
storage are controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"
CALLBACK_PATH = "/payments/callback"


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "qikaopay"
    log_level: str = "INFO"
    mpesa_env: str = "sandbox"
    mpesa_base_url: str | None = None
    mpesa_consumer_key: str | None = None
    mpesa_consumer_secret: str | None = None
    mpesa_shortcode: str | None = None
    mpesa_passkey: str | None = None
    mpesa_callback_url: str | None = None
    callback_base_url: str | None = None
    mpesa_transaction_type: str = "CustomerPayBillOnline"
    default_account_reference: str = "QikaoOrder"
    default_transaction_desc: str = "Qikao Grill Order"
    gateway_timeout_seconds: float = 10.0
    database_url: str | None = None
    poll_interval_seconds: float = 4.0
    poll_max_attempts: int = 8
    otel_exporter_otlp_endpoint: str | None = None
    cors_origins: str = "*"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def gateway_base_url(self) -> str:
        if self.mpesa_base_url:
            return self.mpesa_base_url.rstrip("/")
        if self.mpesa_env.lower() == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    @property
    def callback_url(self) -> str | None:
        """Webhook target handed to the vendor with every push request."""

        if self.mpesa_callback_url:
            return self.mpesa_callback_url
        if self.callback_base_url:
            return f"{self.callback_base_url.rstrip('/')}{CALLBACK_PATH}"
        return None

    @property
    def cors_origin_list(self) -> list[str]:
        """Comma-separated `CORS_ORIGINS` as the list CORSMiddleware expects."""

        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def missing_gateway_settings(self) -> list[str]:
        """Names of env vars that must be set before STK pushes can succeed."""

        required = {
            "MPESA_CONSUMER_KEY": self.mpesa_consumer_key,
            "MPESA_CONSUMER_SECRET": self.mpesa_consumer_secret,
            "MPESA_SHORTCODE": self.mpesa_shortcode,
            "MPESA_PASSKEY": self.mpesa_passkey,
            "CALLBACK_BASE_URL": self.callback_url,
        }
        return [name for name, value in required.items() if not value]


settings = CommonSettings()
