"""
x402 Distributor - Configuration

Settings are read from the environment (optionally seeded from a .env
file via python-dotenv) once per process into a DistributorSettings
instance, which is then passed explicitly to the components that need it.

Environment Variables:
    X402_ENVIRONMENT=development        # "production" forbids mock holders
    SOLANA_RPC_URL=https://api.devnet.solana.com
    SOLANA_COMMITMENT=confirmed
    X402_USE_MOCK_DATA=false
    X402_MOCK_HOLDER_COUNT=250
    X402_PLATFORM_FEE_PERCENT=2.5
    X402_SIGNER_SECRET=                 # JSON byte array or base58
    X402_SIGNER_KEYPAIR_PATH=           # Solana CLI keypair file
    X402_WEBHOOK_SECRET=
    X402_API_KEY=                       # X-API-Key for operator routes
    X402_REQUIRE_AUTH=true              # false skips the key check (not in production)
    X402_STORAGE=json                   # json | postgresql | memory
    X402_DATA_DIR=data
    DATABASE_URL=
    REDIS_URL=
    X402_HOLDER_TIMEOUT=15
    X402_CONFIRMATION_TIMEOUT=60
    X402_LOCK_TIMEOUT=30
    X402_PAYMENT_ENDPOINT=
    X402_DISTRIBUTION_WEBHOOK_URL=
    X402_DEAD_LETTER_FILE=
    X402_HOST=0.0.0.0
    X402_PORT=3001
    LOG_LEVEL=INFO
    LOG_FORMAT=console
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from dotenv import load_dotenv

from distribution_errors import ConfigurationError

__version__ = "0.1.0"

DEFAULT_RPC_URL = "https://api.devnet.solana.com"
STORAGE_BACKENDS = ("json", "postgresql", "postgres", "memory")
COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name: str, default: str, cast=float):
    raw = os.getenv(name) or default
    try:
        return cast(raw)
    except (ValueError, InvalidOperation) as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


@dataclass
class DistributorSettings:
    """Process-wide settings, resolved once at startup."""

    environment: str = "development"
    rpc_url: str = DEFAULT_RPC_URL
    commitment: str = "confirmed"
    use_mock_data: bool = False
    mock_holder_count: int = 250
    platform_fee_percent: Decimal = Decimal("2.5")
    signer_secret: str | None = None
    signer_keypair_path: str | None = None
    webhook_secret: str | None = None
    api_key: str | None = None
    require_auth: bool = True
    storage_backend: str = "json"
    data_dir: str = "data"
    database_url: str | None = None
    redis_url: str | None = None
    holder_timeout: float = 15.0
    confirmation_timeout: float = 60.0
    lock_timeout: float = 30.0
    payment_endpoint: str | None = None
    distribution_webhook_url: str | None = None
    dead_letter_file: str | None = None
    host: str = "0.0.0.0"
    port: int = 3001
    log_level: str = "INFO"
    log_format: str = "console"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "DistributorSettings":
        """
        Build settings from environment variables.

        Args:
            dotenv_path: Optional .env file to load first (existing
                environment variables win)
        """
        load_dotenv(dotenv_path)

        return cls(
            environment=os.getenv("X402_ENVIRONMENT", "development"),
            rpc_url=os.getenv("SOLANA_RPC_URL", DEFAULT_RPC_URL),
            commitment=os.getenv("SOLANA_COMMITMENT", "confirmed").lower(),
            use_mock_data=_env_bool("X402_USE_MOCK_DATA"),
            mock_holder_count=_env_number("X402_MOCK_HOLDER_COUNT", "250", int),
            platform_fee_percent=_env_number("X402_PLATFORM_FEE_PERCENT", "2.5", Decimal),
            signer_secret=os.getenv("X402_SIGNER_SECRET") or None,
            signer_keypair_path=os.getenv("X402_SIGNER_KEYPAIR_PATH") or None,
            webhook_secret=os.getenv("X402_WEBHOOK_SECRET") or None,
            api_key=os.getenv("X402_API_KEY") or None,
            require_auth=_env_bool("X402_REQUIRE_AUTH", default=True),
            storage_backend=os.getenv("X402_STORAGE", "json").lower(),
            data_dir=os.getenv("X402_DATA_DIR", "data"),
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            holder_timeout=_env_number("X402_HOLDER_TIMEOUT", "15"),
            confirmation_timeout=_env_number("X402_CONFIRMATION_TIMEOUT", "60"),
            lock_timeout=_env_number("X402_LOCK_TIMEOUT", "30"),
            payment_endpoint=os.getenv("X402_PAYMENT_ENDPOINT") or None,
            distribution_webhook_url=os.getenv("X402_DISTRIBUTION_WEBHOOK_URL") or None,
            dead_letter_file=os.getenv("X402_DEAD_LETTER_FILE") or None,
            host=os.getenv("X402_HOST", "0.0.0.0"),
            port=_env_number("X402_PORT", "3001", int),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "console").lower(),
        )

    def validate(self) -> None:
        """
        Reject inconsistent settings.

        Raises:
            ConfigurationError: On the first problem found
        """
        if self.is_production and self.use_mock_data:
            raise ConfigurationError(
                "Mock holder data cannot be used when X402_ENVIRONMENT=production"
            )
        if self.is_production and not self.require_auth:
            raise ConfigurationError("X402_REQUIRE_AUTH cannot be disabled in production")
        if not 0 <= self.platform_fee_percent <= 100:
            raise ConfigurationError("X402_PLATFORM_FEE_PERCENT must be between 0 and 100")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigurationError(f"Unknown X402_STORAGE backend: {self.storage_backend}")
        if self.storage_backend in ("postgresql", "postgres") and not self.database_url:
            raise ConfigurationError("DATABASE_URL is required for the PostgreSQL backend")
        if self.commitment not in COMMITMENT_LEVELS:
            raise ConfigurationError(f"Unsupported SOLANA_COMMITMENT: {self.commitment}")
        if self.use_mock_data and self.mock_holder_count < 0:
            raise ConfigurationError("X402_MOCK_HOLDER_COUNT cannot be negative")
        for name in ("holder_timeout", "confirmation_timeout", "lock_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

    def describe(self) -> dict[str, Any]:
        """Settings safe to print or log (secrets reduced to presence flags)."""
        return {
            "environment": self.environment,
            "rpc_url": self.rpc_url,
            "commitment": self.commitment,
            "use_mock_data": self.use_mock_data,
            "platform_fee_percent": str(self.platform_fee_percent),
            "signer_configured": bool(self.signer_secret or self.signer_keypair_path),
            "webhook_secret_configured": bool(self.webhook_secret),
            "api_key_configured": bool(self.api_key),
            "require_auth": self.require_auth,
            "storage_backend": self.storage_backend,
            "data_dir": self.data_dir,
            "database_configured": bool(self.database_url),
            "redis_configured": bool(self.redis_url),
            "distribution_webhook_url": self.distribution_webhook_url,
            "log_level": self.log_level,
            "log_format": self.log_format,
        }
