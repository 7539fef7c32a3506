from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PAYMENT_DESTINATION = "03368862917"
ALLOWED_PROOF_STORAGE_BACKENDS = {"local", "http"}
MIB = 1024 * 1024


class Settings(BaseSettings):
    app_name: str = "Orderpay Checkout Service"

    database_url: str = Field(
        default="sqlite+pysqlite:///./orderpay.db",
        validation_alias="ORDERPAY_DATABASE_URL",
    )
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:5173"
    testing: bool = Field(default=False, validation_alias="ORDERPAY_TESTING")

    payment_destination: str = DEFAULT_PAYMENT_DESTINATION
    payment_destination_label: str = "Easypaisa"
    payment_grace_period_s: int = Field(default=5 * 60, gt=0)

    token_issue_max_attempts: int = Field(default=3, ge=1)

    proof_max_bytes: int = Field(default=5 * MIB, gt=0)
    proof_storage_backend: str = Field(
        default="local",
        validation_alias="ORDERPAY_PROOF_STORAGE_BACKEND",
    )
    proof_storage_dir: str = "./var/proofs"
    proof_public_base_url: str = "http://localhost:8000"

    blob_service_url: str = ""
    blob_service_token: str = ""
    blob_public_base_url: str = ""
    blob_service_timeout_s: float = 5.0
    blob_service_max_retries: int = 2
    blob_service_backoff_s: float = 0.2

    notification_webhook_url: str = ""
    notification_timeout_s: float = 2.0
    notification_max_retries: int = 2
    notification_backoff_s: float = 0.2

    order_create_rate_limit_requests: int = 30
    order_create_rate_limit_window_s: int = 60
    payment_session_rate_limit_requests: int = 60
    payment_session_rate_limit_window_s: int = 60

    idempotency_ttl_s: int = 24 * 60 * 60

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("proof_storage_backend")
    @classmethod
    def validate_proof_storage_backend(cls, value: str) -> str:
        backend = value.lower().strip()
        if backend not in ALLOWED_PROOF_STORAGE_BACKENDS:
            allowed = ", ".join(sorted(ALLOWED_PROOF_STORAGE_BACKENDS))
            raise ValueError(f"ORDERPAY_PROOF_STORAGE_BACKEND must be one of: {allowed}")
        return backend


settings = Settings()


def allowed_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allowed_origins.split(",") if origin.strip()]


def ensure_secure_runtime_settings() -> None:
    """Fail fast when a production-like runtime is missing required configuration."""
    if settings.testing:
        return
    if _is_sqlite_url(settings.database_url):
        raise RuntimeError("ORDERPAY_DATABASE_URL must use postgres when ORDERPAY_TESTING is false")
    if not settings.payment_destination.strip():
        raise RuntimeError("PAYMENT_DESTINATION must be configured when ORDERPAY_TESTING is false")
    if settings.proof_storage_backend == "http" and not settings.blob_service_url.strip():
        raise RuntimeError(
            "BLOB_SERVICE_URL must be set when ORDERPAY_PROOF_STORAGE_BACKEND is 'http'"
        )


def _is_sqlite_url(database_url: str) -> bool:
    value = database_url.strip().lower()
    return value.startswith("sqlite")
