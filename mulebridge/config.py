import logging
import os

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

from .db import DEFAULT_DB_PATH
from .reconcile import DEFAULT_STALE_AFTER


def _bool(value, default: bool) -> bool:
    if value is None or value == "":
        return default
    return str(value).lower() not in ("0", "false", "no", "off")


class Settings(BaseModel):
    db_path: str = DEFAULT_DB_PATH
    rpc_url: str | None = None
    rpc_secret: str | None = None
    client_type: str = "amule"
    history_enabled: bool = True
    history_retention_days: int = 0       # 0 keeps history forever
    stale_after: float = DEFAULT_STALE_AFTER
    refresh_interval: float = 5.0
    history_update_interval: float = 10.0
    cleanup_hour: int = 3
    log_level: str = "INFO"

    @field_validator("history_retention_days")
    @classmethod
    def validate_retention(cls, v):
        if v < 0:
            raise ValueError("history_retention_days must be >= 0")
        return v

    @field_validator("stale_after", "refresh_interval", "history_update_interval")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("intervals must be positive")
        return v

    @field_validator("cleanup_hour")
    @classmethod
    def validate_hour(cls, v):
        if not 0 <= v <= 23:
            raise ValueError("cleanup_hour must be between 0 and 23")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return v

    @classmethod
    def from_env(cls, env_file: str | None = None) -> "Settings":
        """
        Read MULEBRIDGE_* variables, after loading a .env file if present.
        Unset variables keep their defaults.
        """
        load_dotenv(env_file)
        raw = {
            "db_path": os.getenv("MULEBRIDGE_DB_PATH"),
            "rpc_url": os.getenv("MULEBRIDGE_RPC_URL"),
            "rpc_secret": os.getenv("MULEBRIDGE_RPC_SECRET"),
            "client_type": os.getenv("MULEBRIDGE_CLIENT_TYPE"),
            "history_retention_days": os.getenv("MULEBRIDGE_HISTORY_RETENTION_DAYS"),
            "stale_after": os.getenv("MULEBRIDGE_STALE_AFTER"),
            "refresh_interval": os.getenv("MULEBRIDGE_REFRESH_INTERVAL"),
            "history_update_interval": os.getenv("MULEBRIDGE_HISTORY_UPDATE_INTERVAL"),
            "cleanup_hour": os.getenv("MULEBRIDGE_CLEANUP_HOUR"),
            "log_level": os.getenv("MULEBRIDGE_LOG_LEVEL"),
        }
        values = {k: v for k, v in raw.items() if v not in (None, "")}
        values["history_enabled"] = _bool(os.getenv("MULEBRIDGE_HISTORY_ENABLED"), True)
        return cls(**values)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
