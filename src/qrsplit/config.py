from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    database_url: Optional[str] = Field(None, alias="DATABASE_URL")
    host: str = Field("0.0.0.0", alias="HOST")
    port: int = Field(3000, alias="PORT")
    frontend_url: str = Field("http://localhost:3001", alias="FRONTEND_URL")
    allowed_origins: str = Field("http://localhost:3000,http://localhost:3001", alias="ALLOWED_ORIGINS")

    token_address: str = Field("eth", alias="TOKEN_ADDRESS")
    ledger_url: Optional[str] = Field(None, alias="LEDGER_URL")

    store_timeout: float = Field(5.0, alias="STORE_TIMEOUT")
    ledger_timeout: float = Field(10.0, alias="LEDGER_TIMEOUT")
    observer_send_timeout: float = Field(5.0, alias="OBSERVER_SEND_TIMEOUT")

    presence_idle_minutes: int = Field(30, alias="PRESENCE_IDLE_MINUTES")
    presence_sweep_minutes: int = Field(5, alias="PRESENCE_SWEEP_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    debug: bool = Field(False, alias="DEBUG")

    @property
    def origins(self) -> list[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    def web_link(self, session_id: str) -> str:
        return f"{self.frontend_url.rstrip('/')}/session/{session_id}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
