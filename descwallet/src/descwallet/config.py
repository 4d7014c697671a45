"""
Configuration management using pydantic-settings.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ELECTRUM_URL = "ssl://electrum.blockstream.info:60002"

_WALLET_NAME_RE = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DESCWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: Literal["mainnet", "testnet", "signet", "regtest"] = "testnet"
    data_dir: Path = Path.home() / ".descwallet"
    wallet: str = "main"
    descriptor: str | None = None
    change_descriptor: str | None = None
    gap_limit: int = 20

    electrum_url: str = DEFAULT_ELECTRUM_URL
    electrum_retries: int = 5
    electrum_timeout: float = 30.0

    esplora_url: str | None = None
    esplora_concurrency: int = 4

    log_level: str = "INFO"


def get_settings() -> Settings:
    return Settings()


class WalletOptions(BaseModel):
    """Options shared by every wallet command, validated at the CLI boundary."""

    wallet: str
    descriptor: str = Field(..., min_length=1)
    change_descriptor: str | None = None
    gap_limit: int = Field(default=20, ge=1, le=10000)

    electrum_url: str = DEFAULT_ELECTRUM_URL
    electrum_retries: int = Field(default=5, ge=1)
    electrum_timeout: float = Field(default=30.0, gt=0)

    esplora_url: str | None = None
    esplora_concurrency: int = Field(default=4, ge=1, le=64)

    @field_validator("wallet")
    @classmethod
    def validate_wallet_name(cls, v: str) -> str:
        if not _WALLET_NAME_RE.match(v):
            raise ValueError("Wallet name may only contain letters, digits, '_' and '-'")
        return v

    @field_validator("electrum_url")
    @classmethod
    def validate_electrum_url(cls, v: str) -> str:
        scheme, sep, rest = v.partition("://")
        if sep and scheme not in ("tcp", "ssl"):
            raise ValueError(f"Unsupported Electrum URL scheme: {scheme}")
        if ":" not in (rest if sep else v):
            raise ValueError("Electrum URL must include a port")
        return v

    @field_validator("esplora_url")
    @classmethod
    def validate_esplora_url(cls, v: str | None) -> str | None:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("Esplora URL must start with http:// or https://")
        return v
