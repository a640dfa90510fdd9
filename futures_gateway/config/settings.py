import os
from functools import lru_cache

from pydantic import BaseModel, field_validator


def _env_flag(name: str, default: str) -> str:
    return os.getenv(name, default).strip().lower()


class Settings(BaseModel):
    MD_WS_URL: str
    MD_SPOT_URL: str | None = None
    MD_SPOT_SYMBOL: str = "000300"
    MD_SPOT_POLL_SEC: float = 5.0
    MD_REFERENCE_INSTRUMENT: str | None = None
    MD_AUTO_RECONNECT: bool = False
    MD_REJECT_STALE_FRAMES: bool = True

    @field_validator("MD_WS_URL")
    @classmethod
    def _ws_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("MD_WS_URL must be a ws:// or wss:// url")
        return value

    @field_validator("MD_SPOT_POLL_SEC")
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("MD_SPOT_POLL_SEC must be positive")
        return value

    @classmethod
    def from_env(cls) -> "Settings":
        return cls.model_validate(
            {
                "MD_WS_URL": os.getenv("MD_WS_URL"),
                "MD_SPOT_URL": os.getenv("MD_SPOT_URL") or None,
                "MD_SPOT_SYMBOL": os.getenv("MD_SPOT_SYMBOL", "000300").strip() or "000300",
                "MD_SPOT_POLL_SEC": os.getenv("MD_SPOT_POLL_SEC", "5"),
                "MD_REFERENCE_INSTRUMENT": os.getenv("MD_REFERENCE_INSTRUMENT", "").strip() or None,
                "MD_AUTO_RECONNECT": _env_flag("MD_AUTO_RECONNECT", "false"),
                "MD_REJECT_STALE_FRAMES": _env_flag("MD_REJECT_STALE_FRAMES", "true"),
            }
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
