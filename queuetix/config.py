from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigError


# ----------------------------
# Config & Constants
# ----------------------------
DEFAULT_OFFER_TTL_SECONDS = 30 * 60
STORE_BACKENDS = ("pg", "redis")
PAYMENTS_BACKENDS = ("stripe", "mock")


@dataclass(frozen=True)
class Settings:
    store_backend: str = "pg"             # 'pg' | 'redis'
    database_url: Optional[str] = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_conn: int = 512

    payments_backend: str = "stripe"      # 'stripe' | 'mock'
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    mock_secret: str = "supersecret"
    mock_webhook_url: Optional[str] = None

    public_base_url: str = "http://localhost:8000"
    offer_ttl_seconds: int = DEFAULT_OFFER_TTL_SECONDS
    offer_sweep_interval: float = 30.0
    currency: str = "inr"

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    log_level: str = "INFO"

    @property
    def webhook_url(self) -> str:
        return (
            self.mock_webhook_url
            or f"{self.public_base_url.rstrip('/')}/payments/webhook"
        )

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        store_backend = env.get("STORE_BACKEND", "pg").lower()
        payments_backend = env.get("PAYMENTS_BACKEND", "stripe").lower()
        if store_backend not in STORE_BACKENDS:
            raise ConfigError(f"unknown STORE_BACKEND: {store_backend}")
        if payments_backend not in PAYMENTS_BACKENDS:
            raise ConfigError(f"unknown PAYMENTS_BACKEND: {payments_backend}")

        missing = []
        if store_backend == "pg" and not env.get("DATABASE_URL"):
            missing.append("DATABASE_URL")
        if payments_backend == "stripe":
            for name in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"):
                if not env.get(name):
                    missing.append(name)
        if missing:
            raise ConfigError(
                "missing required environment: " + ", ".join(missing)
            )

        try:
            offer_ttl = int(
                env.get("OFFER_TTL_SECONDS", DEFAULT_OFFER_TTL_SECONDS)
            )
            sweep = float(env.get("OFFER_SWEEP_INTERVAL", "30"))
            max_conn = int(env.get("REDIS_MAX_CONN", "512"))
            pool_size = int(env.get("DB_POOL_SIZE", "10"))
            max_overflow = int(env.get("DB_MAX_OVERFLOW", "10"))
            pool_timeout = int(env.get("DB_POOL_TIMEOUT", "30"))
            gate_limit = (
                int(env["DB_GATE_LIMIT"]) if env.get("DB_GATE_LIMIT")
                else None
            )
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e
        if offer_ttl <= 0:
            raise ConfigError("OFFER_TTL_SECONDS must be positive")

        return cls(
            store_backend=store_backend,
            database_url=env.get("DATABASE_URL"),
            db_pool_size=pool_size,
            db_max_overflow=max_overflow,
            db_pool_timeout=pool_timeout,
            db_gate_limit=gate_limit,
            redis_url=env.get("REDIS_URL", "redis://127.0.0.1:6379"),
            redis_max_conn=max_conn,
            payments_backend=payments_backend,
            stripe_secret_key=env.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET"),
            mock_secret=env.get("MOCK_SECRET", "supersecret"),
            mock_webhook_url=env.get("MOCK_WEBHOOK_URL"),
            public_base_url=env.get(
                "PUBLIC_BASE_URL", "http://localhost:8000"
            ),
            offer_ttl_seconds=offer_ttl,
            offer_sweep_interval=sweep,
            currency=env.get("CURRENCY", "inr").lower(),
            session_secret=env.get("SESSION_SECRET", "dev-secret-change-me"),
            admin_username=env.get("ADMIN_USERNAME", "admin"),
            admin_password=env.get("ADMIN_PASSWORD", "supasecret"),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
