import os
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        environment: str,
        timezone: str,
        secret_key: str,
        access_token_days: int,
        reset_token_minutes: int,
        otp_ttl_minutes: int,
        otp_purge_minutes: int,
        upload_dir: Path,
        upload_url_prefix: str,
        smtp_host: Optional[str],
        smtp_port: int,
        smtp_user: Optional[str],
        smtp_password: Optional[str],
        mail_sender: str,
        db_timeout_secs: float,
        conflict_retries: int,
        templates_dir: Optional[Path] = None,
    ) -> None:
        self.database_url = database_url
        self.environment = environment
        self.timezone = timezone
        self.secret_key = secret_key
        self.access_token_days = access_token_days
        self.reset_token_minutes = reset_token_minutes
        self.otp_ttl_minutes = otp_ttl_minutes
        self.otp_purge_minutes = otp_purge_minutes
        self.upload_dir = upload_dir
        self.upload_url_prefix = upload_url_prefix
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.mail_sender = mail_sender
        self.db_timeout_secs = db_timeout_secs
        self.conflict_retries = conflict_retries
        self.templates_dir = templates_dir or default_templates_dir()

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_password)


def default_templates_dir() -> Path:
    """Templates beside the sources, else where a wheel install puts them."""
    local = Path(__file__).resolve().parent / "templates"
    if local.is_dir():
        return local
    return Path(sys.prefix) / "templates"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDWISE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendwise.db"
    database_url = os.getenv("SPENDWISE_DATABASE_URL", f"sqlite:///{default_db}")
    upload_dir = Path(
        os.getenv("SPENDWISE_UPLOAD_DIR", str(data_dir / "uploads"))
    ).resolve()
    return Settings(
        database_url=database_url,
        environment=os.getenv("SPENDWISE_ENV", "development"),
        timezone=os.getenv("SPENDWISE_TIMEZONE", "Asia/Kathmandu"),
        secret_key=os.getenv(
            "SPENDWISE_SECRET_KEY",
            "5f0c2b7be4a4d1f09f3a3c0fb8d0c6a1e7f1c9e2d8b4a6f3c5e7d9b1a3c5e7f9",
        ),
        access_token_days=int(os.getenv("SPENDWISE_ACCESS_TOKEN_DAYS", "7")),
        reset_token_minutes=int(os.getenv("SPENDWISE_RESET_TOKEN_MINUTES", "15")),
        otp_ttl_minutes=int(os.getenv("SPENDWISE_OTP_TTL_MINUTES", "10")),
        otp_purge_minutes=int(os.getenv("SPENDWISE_OTP_PURGE_MINUTES", "5")),
        upload_dir=upload_dir,
        upload_url_prefix=os.getenv("SPENDWISE_UPLOAD_URL_PREFIX", "/uploads"),
        smtp_host=os.getenv("SPENDWISE_SMTP_HOST"),
        smtp_port=int(os.getenv("SPENDWISE_SMTP_PORT", "587")),
        smtp_user=os.getenv("SPENDWISE_SMTP_USER"),
        smtp_password=os.getenv("SPENDWISE_SMTP_PASSWORD"),
        mail_sender=os.getenv("SPENDWISE_MAIL_SENDER", "SpendWise <no-reply@spendwise.app>"),
        db_timeout_secs=float(os.getenv("SPENDWISE_DB_TIMEOUT_SECS", "10")),
        conflict_retries=int(os.getenv("SPENDWISE_CONFLICT_RETRIES", "5")),
        templates_dir=Path(os.getenv("SPENDWISE_TEMPLATES_DIR", str(default_templates_dir()))),
    )
