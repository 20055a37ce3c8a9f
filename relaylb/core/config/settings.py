from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".relay-lb"
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"
DEFAULT_ENCRYPTION_KEY_FILE = DEFAULT_HOME_DIR / "encryption.key"


class ProviderSettings(BaseModel):
    # Ordered by preference; later entries are fallbacks for the same account.
    base_urls: list[str] = Field(default_factory=list)
    stream_path: str = "/v1/stream"
    token_url: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    load_balance_default: bool = True


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "antigravity": ProviderSettings(
            base_urls=[
                "https://daily-cloudcode-pa.sandbox.googleapis.com",
                "https://cloudcode-pa.googleapis.com",
            ],
            stream_path="/v1internal:streamGenerateContent?alt=sse",
            token_url="https://oauth2.googleapis.com/token",
        ),
    }


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RELAYLB_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)
    encryption_key_file: Path = DEFAULT_ENCRYPTION_KEY_FILE
    log_level_debug: bool = False

    upstream_connect_timeout_seconds: float = 30.0
    token_refresh_timeout_seconds: float = 30.0
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=15.0, gt=0)

    # Coordination between instances sharing the same database.
    election_enabled: bool = True
    election_domain: str = "default"
    leader_heartbeat_interval_seconds: float = Field(default=5.0, gt=0)
    leader_timeout_seconds: float = Field(default=15.0, gt=0)
    leader_election_settle_seconds: float = Field(default=0.1, ge=0)
    leader_start_jitter_seconds: float = Field(default=1.0, ge=0)
    periodic_task_interval_seconds: float = Field(default=60.0, gt=0)

    activity_timeout_seconds: float = Field(default=30 * 60, gt=0)
    activity_count_window_seconds: float = Field(default=5 * 60, gt=0)
    activity_count_cap: int = Field(default=100, gt=0)
    activity_cache_seconds: float = Field(default=5.0, ge=0)
    activity_large_edit_chars: int = Field(default=1000, gt=0)

    # Routing.
    quota_backoff_base_seconds: float = Field(default=1.0, gt=0)
    quota_backoff_cap_seconds: float = Field(default=30 * 60, gt=0)
    rate_limit_max_retries: int = Field(default=5, ge=0)
    rate_limit_base_delay_seconds: float = Field(default=1.0, gt=0)
    rate_limit_max_delay_seconds: float = Field(default=30.0, gt=0)
    rate_limit_hint_buffer_seconds: float = Field(default=0.5, ge=0)
    long_term_quota_threshold_seconds: float = Field(default=10 * 60, gt=0)
    max_cooldown_wait_seconds: float = Field(default=2 * 60, gt=0)
    token_refresh_margin_seconds: float = Field(default=5 * 60, ge=0)

    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("encryption_key_file", mode="before")
    @classmethod
    def _expand_encryption_key_file(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("encryption_key_file must be a path")

    def provider(self, name: str) -> ProviderSettings:
        config = self.providers.get(name)
        if config is None:
            raise KeyError(f"Unknown provider: {name}")
        return config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
