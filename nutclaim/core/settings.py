import os
import sys
from pathlib import Path
from typing import Optional

from environs import Env  # type: ignore
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

env = Env()

VERSION = "0.3.0"


def find_env_file():
    # env file: default to current dir, else home dir
    env_file = os.path.join(os.getcwd(), ".env")
    if not os.path.isfile(env_file):
        env_file = os.path.join(str(Path.home()), ".nutclaim", ".env")
    if os.path.isfile(env_file):
        env.read_env(env_file, recurse=False, override=True)
    else:
        env_file = ""
    return env_file


class NutclaimSettings(BaseSettings):
    env_file: Optional[str] = Field(default=None)

    model_config = SettingsConfigDict(
        env_file=find_env_file() or None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


class EnvSettings(NutclaimSettings):
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    nutclaim_dir: str = Field(default=os.path.join(str(Path.home()), ".nutclaim"))
    db_connection_pool: bool = Field(default=True)


class WalletSettings(NutclaimSettings):
    mnemonic: Optional[str] = Field(default=None)
    http_proxy: Optional[str] = Field(default=None)
    wallet_request_timeout: int = Field(default=60)


class ClaimSettings(NutclaimSettings):
    claim_database: str = Field(default="data/claims")
    claim_poll_interval_seconds: float = Field(
        default=10,
        gt=0,
        title="Poll interval",
        description="Seconds between state checks of a pending quote on mints without websockets.",
    )
    claim_rate_limited_poll_interval_seconds: float = Field(
        default=60,
        gt=0,
        title="Rate limited poll interval",
        description="Seconds to wait before polling a mint again after it answered with HTTP 429.",
    )
    claim_transport_backoff_max_seconds: float = Field(default=120, gt=0)
    claim_degraded_after_failures: int = Field(
        default=5,
        gt=0,
        title="Degraded tracking threshold",
        description="Consecutive transport failures after which tracking of a mint is reported as degraded.",
    )
    claim_cross_mint_max_attempts: int = Field(default=5, gt=0)
    claim_version_conflict_retries: int = Field(default=3, ge=0)
    claim_websocket_ping_interval: int = Field(default=10, gt=0)
    claim_quote_description: Optional[str] = Field(default=None)


class Settings(
    EnvSettings,
    WalletSettings,
    ClaimSettings,
    NutclaimSettings,
):
    version: str = Field(default=VERSION)


settings = Settings()


def startup_settings_tasks():
    # set env_file (this does not affect the settings module, it's just for reading)
    settings.env_file = find_env_file()

    if not settings.debug:
        # set traceback limit
        sys.tracebacklimit = 0

    # replace ~ with home directory in nutclaim_dir
    settings.nutclaim_dir = settings.nutclaim_dir.replace("~", str(Path.home()))


startup_settings_tasks()
