import os
from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "afrimobile-shares")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    database_url: Optional[str] = os.getenv("DATABASE_URL")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "shares")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Payment rails
    paystack_secret_key: str = os.getenv("PAYSTACK_SECRET_KEY", "")
    paystack_base_url: str = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    centiiv_api_key: str = os.getenv("CENTIIV_API_KEY", "")
    centiiv_base_url: str = os.getenv("CENTIIV_BASE_URL", "https://api.centiiv.com/api/v1")
    centiiv_webhook_secret: str = os.getenv("CENTIIV_WEBHOOK_SECRET", "")
    bsc_rpc_url: str = os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org/")
    company_wallet_address: Optional[str] = os.getenv("COMPANY_WALLET_ADDRESS")

    frontend_url: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    backend_url: str = os.getenv("BACKEND_URL", "http://localhost:8000")
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@afrimobile.com")
    referral_service_url: str = os.getenv("REFERRAL_SERVICE_URL", "http://referral_service:8000")
    proof_storage_dir: str = os.getenv("PROOF_STORAGE_DIR", "/data/payment-proofs")

    external_http_timeout_seconds: float = float(os.getenv("EXTERNAL_HTTP_TIMEOUT_SECONDS", "30"))
    onchain_amount_tolerance: float = float(os.getenv("ONCHAIN_AMOUNT_TOLERANCE", "0.02"))
    onchain_max_age_hours: int = int(os.getenv("ONCHAIN_MAX_AGE_HOURS", "24"))
    invoice_due_days: int = int(os.getenv("INVOICE_DUE_DAYS", "30"))
    strict_supply_reservation: bool = os.getenv("STRICT_SUPPLY_RESERVATION", "false").lower() == "true"
    distributed_user_locks: bool = os.getenv("DISTRIBUTED_USER_LOCKS", "true").lower() == "true"
    outbox_max_attempts: int = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))
    sweeper_interval_minutes: int = int(os.getenv("SWEEPER_INTERVAL_MINUTES", "5"))

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqlconnector://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
