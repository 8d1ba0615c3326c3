import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

AUTH_MESSAGE_PREFIX = "Authenticate to VoteX: "


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = ""
    db_pool_min: int = 1
    db_pool_max: int = 10
    db_sslmode: str = "require"

    session_secret: str = ""
    voter_token_ttl_seconds: int = 12 * 3600
    admin_token_ttl_seconds: int = 3600

    algod_address: str = ""
    algod_token: str = ""
    indexer_address: str = ""
    indexer_token: str = ""
    app_id: int = 0
    service_mnemonic: str = ""
    tx_timeout_rounds: int = 12

    auth_message_prefix: str = AUTH_MESSAGE_PREFIX
    whitelist_on_authenticate: bool = True
    explorer_tx_url: str = "https://lora.algokit.io/testnet/transaction/{tx_id}"

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_email: str = ""
    smtp_password: str = ""
    otp_expiry_minutes: int = 10
    otp_max_attempts: int = 3
    otp_resend_cooldown_seconds: int = 30

    log_level: str = "INFO"
    cors_allow_origins: list[str] = field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = [o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            db_pool_min=int(os.getenv("DB_POOL_MIN", "1")),
            db_pool_max=int(os.getenv("DB_POOL_MAX", "10")),
            db_sslmode=os.getenv("DB_SSLMODE", "require"),
            session_secret=os.getenv("SESSION_SECRET", ""),
            voter_token_ttl_seconds=int(os.getenv("VOTER_TOKEN_TTL_SECONDS", str(12 * 3600))),
            admin_token_ttl_seconds=int(os.getenv("ADMIN_TOKEN_TTL_SECONDS", "3600")),
            algod_address=os.getenv("ALGORAND_ALGOD_ADDRESS", ""),
            algod_token=os.getenv("ALGORAND_ALGOD_TOKEN", ""),
            indexer_address=os.getenv("ALGORAND_INDEXER_ADDRESS", ""),
            indexer_token=os.getenv("ALGORAND_INDEXER_TOKEN", ""),
            app_id=int(os.getenv("ALGORAND_APP_ID", "0")),
            service_mnemonic=os.getenv("ALGORAND_SERVICE_MNEMONIC", ""),
            tx_timeout_rounds=int(os.getenv("ALGORAND_TX_TIMEOUT_ROUNDS", "12")),
            auth_message_prefix=os.getenv("AUTH_MESSAGE_PREFIX", AUTH_MESSAGE_PREFIX),
            whitelist_on_authenticate=_env_bool("WHITELIST_ON_AUTHENTICATE", True),
            explorer_tx_url=os.getenv(
                "EXPLORER_TX_URL", "https://lora.algokit.io/testnet/transaction/{tx_id}"
            ),
            smtp_host=os.getenv("SMTP_HOST", ""),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_email=os.getenv("SMTP_EMAIL", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            otp_expiry_minutes=int(os.getenv("OTP_EXPIRY_MINUTES", "10")),
            otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "3")),
            otp_resend_cooldown_seconds=int(os.getenv("OTP_RESEND_COOLDOWN_SECONDS", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_allow_origins=origins or ["*"],
        )

    def require_database(self) -> None:
        if not self.database_url:
            raise RuntimeError("DATABASE_URL environment variable is not set")

    def require_session_secret(self) -> None:
        if not self.session_secret:
            raise RuntimeError("SESSION_SECRET is required")

    def require_ledger(self) -> None:
        if not self.algod_address:
            raise RuntimeError("ALGORAND_ALGOD_ADDRESS is required")
        if not self.service_mnemonic:
            raise RuntimeError("ALGORAND_SERVICE_MNEMONIC is required")
        if self.app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be a positive integer")
