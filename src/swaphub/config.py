# File: src/swaphub/config.py
"""
Runtime configuration for SwapHub

Settings are read from SWAPHUB_* environment variables. Anything left unset
falls back to an in-process setup: in-memory repositories, an in-memory
TTL cache and no external message broker or event store.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
import logging
import os
import sys


ENV_PREFIX = "SWAPHUB_"


def _read(env: Mapping[str, str], name: str, default: Optional[str] = None) -> Optional[str]:
    value = env.get(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _read_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = _read(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got: {raw}")
    if value < minimum:
        raise ValueError(f"{ENV_PREFIX}{name} must be >= {minimum}, got: {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Application settings"""
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    mongo_url: Optional[str] = None
    station_cache_ttl: int = 30
    recent_stations_limit: int = 10
    swap_fee: Decimal = Decimal("50000")
    currency: str = "VND"
    lease_ttl_ms: int = 5000
    log_level: str = "INFO"
    log_dir: Optional[str] = None

    def __post_init__(self):
        if self.swap_fee < Decimal("0"):
            raise ValueError("Swap fee cannot be negative")
        if len(self.currency) != 3:
            raise ValueError(f"Currency must be 3-letter code: {self.currency}")
        if logging.getLevelName(self.log_level.upper()) == f"Level {self.log_level.upper()}":
            raise ValueError(f"Unknown log level: {self.log_level}")

    @property
    def uses_database(self) -> bool:
        return self.database_url is not None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables"""
        env = os.environ if env is None else env

        raw_fee = _read(env, "SWAP_FEE", "50000")
        try:
            swap_fee = Decimal(raw_fee)
        except InvalidOperation:
            raise ValueError(f"{ENV_PREFIX}SWAP_FEE must be a decimal amount, got: {raw_fee}")

        return cls(
            database_url=_read(env, "DATABASE_URL"),
            redis_url=_read(env, "REDIS_URL"),
            mongo_url=_read(env, "MONGO_URL"),
            station_cache_ttl=_read_int(env, "STATION_CACHE_TTL", 30, minimum=1),
            recent_stations_limit=_read_int(env, "RECENT_STATIONS_LIMIT", 10, minimum=1),
            swap_fee=swap_fee,
            currency=_read(env, "CURRENCY", "VND").upper(),
            lease_ttl_ms=_read_int(env, "LEASE_TTL_MS", 5000, minimum=1),
            log_level=_read(env, "LOG_LEVEL", "INFO").upper(),
            log_dir=_read(env, "LOG_DIR"),
        )


def setup_logging(settings: Settings) -> logging.Logger:
    """Setup application logging configuration"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_dir:
        os.makedirs(settings.log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(settings.log_dir, "swaphub.log")))

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )
    return logging.getLogger("swaphub")
