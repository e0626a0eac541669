"""
Configuration settings for the course payment service
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from coursepay.errors import ConfigError


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return tuple()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env(environ: Mapping[str, str], name: str) -> Optional[str]:
    raw_value = environ.get(name)
    if raw_value is None:
        return None
    normalized = raw_value.strip()
    return normalized or None


@dataclass(frozen=True)
class Settings:
    """Application settings, built once at process start"""

    # Paystack
    paystack_secret_key: str
    paystack_public_key: str
    paystack_webhook_secret: str
    base_url: str
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 10.0

    # Database
    database_url: str = "sqlite:///./coursepay.db"

    # Checkout
    currency: str = "NGN"
    channels: Tuple[str, ...] = ("card", "bank", "ussd", "qr")
    callback_path: str = "/payment/verify"
    platform_name: str = "Course Platform"
    min_payment_amount: int = 100  # Minimum payment in kobo (1 Naira)

    # Reconciliation
    intent_ttl_hours: int = 24
    grant_retry_after_seconds: int = 300
    sweep_interval_seconds: int = 300
    teacher_share_percent: int = 70

    # Service
    cors_origins: Tuple[str, ...] = tuple()
    log_level: str = "INFO"

    @property
    def callback_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.callback_path}"

    @property
    def key_mode(self) -> str:
        """Live or test, from the secret key prefix"""
        if self.paystack_secret_key.startswith("sk_live_"):
            return "live"
        if self.paystack_secret_key.startswith("sk_test_"):
            return "test"
        return "unknown"

    @property
    def key_preview(self) -> str:
        """Masked secret key, safe to show in logs and health checks"""
        key = self.paystack_secret_key
        if len(key) <= 12:
            return key[:3] + "..."
        return f"{key[:8]}...{key[-4:]}"

    @property
    def webhook_secret_bytes(self) -> bytes:
        return self.paystack_webhook_secret.encode()

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.
        Raises ConfigError listing every missing or malformed value.
        """
        environ = os.environ if environ is None else environ
        missing = [
            name
            for name in (
                "PAYSTACK_SECRET_KEY",
                "PAYSTACK_PUBLIC_KEY",
                "PAYSTACK_WEBHOOK_SECRET",
                "BASE_URL",
            )
            if _env(environ, name) is None
        ]
        invalid = []

        secret_key = _env(environ, "PAYSTACK_SECRET_KEY") or ""
        if secret_key and not secret_key.startswith("sk_"):
            invalid.append("PAYSTACK_SECRET_KEY must start with sk_")

        public_key = _env(environ, "PAYSTACK_PUBLIC_KEY") or ""
        if public_key and not public_key.startswith("pk_"):
            invalid.append("PAYSTACK_PUBLIC_KEY must start with pk_")

        base_url = _env(environ, "BASE_URL") or ""
        if base_url and not base_url.startswith(("http://", "https://")):
            invalid.append("BASE_URL must be an http(s) URL")

        def _int(name: str, default: int, minimum: int = 0) -> int:
            raw = _env(environ, name)
            if raw is None:
                return default
            try:
                value = int(raw)
            except ValueError:
                invalid.append(f"{name} must be an integer")
                return default
            if value < minimum:
                invalid.append(f"{name} must be at least {minimum}")
            return value

        def _float(name: str, default: float) -> float:
            raw = _env(environ, name)
            if raw is None:
                return default
            try:
                value = float(raw)
            except ValueError:
                invalid.append(f"{name} must be a number")
                return default
            if value <= 0:
                invalid.append(f"{name} must be positive")
            return value

        timeout = _float("PAYSTACK_TIMEOUT_SECONDS", 10.0)
        ttl_hours = _int("PAYMENT_INTENT_TTL_HOURS", 24, minimum=1)
        grant_retry_after = _int("GRANT_RETRY_AFTER_SECONDS", 300)
        sweep_interval = _int("SWEEP_INTERVAL_SECONDS", 300)
        min_amount = _int("MIN_PAYMENT_AMOUNT", 100, minimum=1)
        teacher_share = _int("TEACHER_SHARE_PERCENT", 70)
        if teacher_share > 100:
            invalid.append("TEACHER_SHARE_PERCENT must be between 0 and 100")

        if missing or invalid:
            message_lines = ["Startup blocked by invalid payment configuration."]
            if missing:
                message_lines.append("Missing required environment variables:")
                message_lines.extend(f"- {name}" for name in missing)
            if invalid:
                message_lines.append("Invalid environment values:")
                message_lines.extend(f"- {message}" for message in invalid)
            raise ConfigError("\n".join(message_lines))

        return cls(
            paystack_secret_key=secret_key,
            paystack_public_key=public_key,
            paystack_webhook_secret=_env(environ, "PAYSTACK_WEBHOOK_SECRET") or "",
            base_url=base_url,
            paystack_base_url=_env(environ, "PAYSTACK_BASE_URL") or "https://api.paystack.co",
            paystack_timeout_seconds=timeout,
            database_url=_env(environ, "DATABASE_URL") or "sqlite:///./coursepay.db",
            currency=(_env(environ, "PAYMENT_CURRENCY") or "NGN").upper(),
            channels=_split_csv(_env(environ, "PAYMENT_CHANNELS")) or ("card", "bank", "ussd", "qr"),
            callback_path=_env(environ, "PAYMENT_CALLBACK_PATH") or "/payment/verify",
            platform_name=_env(environ, "PAYMENT_PLATFORM_NAME") or "Course Platform",
            min_payment_amount=min_amount,
            intent_ttl_hours=ttl_hours,
            grant_retry_after_seconds=grant_retry_after,
            sweep_interval_seconds=sweep_interval,
            teacher_share_percent=teacher_share,
            cors_origins=_split_csv(_env(environ, "CORS_ORIGINS")),
            log_level=(_env(environ, "LOG_LEVEL") or "INFO").upper(),
        )
