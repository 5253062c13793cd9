import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field

from database.retry import RetryPolicy

BASE_DIR = Path(__file__).resolve().parents[1]
ENV_PREFIX = "QRCHAIN_"


def _env(name: str) -> str | None:
    return os.getenv(f"{ENV_PREFIX}{name}")


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


class AppConfig(BaseModel):
    """Explicit configuration handed to every component at construction."""

    db_path: Path = BASE_DIR / "database" / "qrchain.db"

    # Tokens and chains
    chain_token_ttl_seconds: int = 20
    rotation_interval_seconds: int = 60
    late_rotation_seconds: int = 60
    early_leave_rotation_seconds: int = 60
    stall_threshold_seconds: int = 90
    owner_transfer: bool = True
    max_chains_per_seed: int = 50

    # Anti-cheat
    rate_limit_window_seconds: int = 60
    rate_limit_device_max: int = 10
    rate_limit_ip_max: int = 50

    # Store retry policy
    store_retry_attempts: int = 3
    store_retry_initial_delay_ms: int = 100
    store_retry_max_delay_ms: int = 2000
    store_retry_jitter: bool = True

    # Identity
    teacher_email_domains: list[str] = Field(default_factory=list)
    student_email_domains: list[str] = Field(default_factory=list)

    # Runtime
    internal_api_key: str | None = None
    rotation_autostart: bool = False
    log_level: str = "INFO"
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"]
    )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.store_retry_attempts,
            initial_delay=self.store_retry_initial_delay_ms / 1000.0,
            max_delay=self.store_retry_max_delay_ms / 1000.0,
            jitter=self.store_retry_jitter,
        )


def load_config() -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        db_path=Path(_env("DB_PATH") or defaults.db_path),
        chain_token_ttl_seconds=_parse_int(_env("CHAIN_TOKEN_TTL_SECONDS"), defaults.chain_token_ttl_seconds, minimum=1),
        rotation_interval_seconds=_parse_int(
            _env("ROTATION_INTERVAL_SECONDS"), defaults.rotation_interval_seconds, minimum=1
        ),
        late_rotation_seconds=_parse_int(_env("LATE_ROTATION_SECONDS"), defaults.late_rotation_seconds, minimum=1),
        early_leave_rotation_seconds=_parse_int(
            _env("EARLY_LEAVE_ROTATION_SECONDS"), defaults.early_leave_rotation_seconds, minimum=1
        ),
        stall_threshold_seconds=_parse_int(_env("STALL_THRESHOLD_SECONDS"), defaults.stall_threshold_seconds, minimum=1),
        owner_transfer=_parse_bool(_env("OWNER_TRANSFER"), defaults.owner_transfer),
        max_chains_per_seed=_parse_int(_env("MAX_CHAINS_PER_SEED"), defaults.max_chains_per_seed, minimum=1),
        rate_limit_window_seconds=_parse_int(
            _env("RATE_LIMIT_WINDOW_SECONDS"), defaults.rate_limit_window_seconds, minimum=1
        ),
        rate_limit_device_max=_parse_int(_env("RATE_LIMIT_DEVICE_MAX"), defaults.rate_limit_device_max, minimum=1),
        rate_limit_ip_max=_parse_int(_env("RATE_LIMIT_IP_MAX"), defaults.rate_limit_ip_max, minimum=1),
        store_retry_attempts=_parse_int(_env("STORE_RETRY_ATTEMPTS"), defaults.store_retry_attempts, minimum=1),
        store_retry_initial_delay_ms=_parse_int(
            _env("STORE_RETRY_INITIAL_DELAY_MS"), defaults.store_retry_initial_delay_ms
        ),
        store_retry_max_delay_ms=_parse_int(_env("STORE_RETRY_MAX_DELAY_MS"), defaults.store_retry_max_delay_ms),
        store_retry_jitter=_parse_bool(_env("STORE_RETRY_JITTER"), defaults.store_retry_jitter),
        teacher_email_domains=_parse_csv(_env("TEACHER_EMAIL_DOMAINS"), []),
        student_email_domains=_parse_csv(_env("STUDENT_EMAIL_DOMAINS"), []),
        internal_api_key=_env("INTERNAL_API_KEY") or None,
        rotation_autostart=_parse_bool(_env("ROTATION_AUTOSTART"), defaults.rotation_autostart),
        log_level=(_env("LOG_LEVEL") or defaults.log_level).strip().upper(),
        cors_allow_origins=_parse_csv(_env("CORS_ALLOW_ORIGINS"), defaults.cors_allow_origins),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
