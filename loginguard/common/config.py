"""
loginguard/common/config.py

設定モジュール

- U2FPluginConfig: U2F TFAメソッド自体の設定（allowEntryBatching, helpUrl等）
- ServiceSettings: HTTPサービス側の設定（DB, Redis, セッション, JWT, 許可origin）

どちらも環境変数 LOGINGUARD_* から読み込めます。
"""

import os
from typing import List, Optional, Literal

from pydantic import BaseModel, Field, field_validator

DEFAULT_HELP_URL = "https://github.com/akeeba/loginguard/wiki/U2F"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_list(name: str) -> List[str]:
    value = os.getenv(name) or ""
    return [item.strip() for item in value.split(",") if item.strip()]


class U2FPluginConfig(BaseModel):
    """
    U2F TFAメソッドの設定

    - allow_entry_batching: Trueの場合、認証時にユーザーの全U2Fレコードの鍵を候補にする
    - help_url: 情報リンク（動作には影響しない）
    - app_id: U2F AppID（origin）。Noneの場合はリクエストのoriginから導出
    - challenge_ttl_seconds: challengeの明示的な有効期限。Noneの場合はセッション寿命のみ
    - attestation_ca_dir: 信頼するattestation CA証明書（PEM）のディレクトリ
    """
    allow_entry_batching: bool = Field(default=True, description="全鍵に対する認証を許可")
    help_url: str = Field(default=DEFAULT_HELP_URL, description="ヘルプURL")
    app_id: Optional[str] = Field(default=None, description="U2F AppID（scheme://host[:port]）")
    challenge_ttl_seconds: Optional[int] = Field(default=None, ge=1, description="challenge有効期限（秒）")
    attestation_ca_dir: Optional[str] = Field(default=None, description="attestation CAディレクトリ")

    @field_validator("app_id")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None

    @classmethod
    def from_env(cls) -> "U2FPluginConfig":
        """環境変数から設定を読み込み"""
        return cls(
            allow_entry_batching=_env_bool("LOGINGUARD_U2F_ALLOW_ENTRY_BATCHING", True),
            help_url=os.getenv("LOGINGUARD_U2F_HELP_URL", DEFAULT_HELP_URL),
            app_id=os.getenv("LOGINGUARD_U2F_APP_ID") or None,
            challenge_ttl_seconds=_env_int("LOGINGUARD_U2F_CHALLENGE_TTL", None),
            attestation_ca_dir=os.getenv("LOGINGUARD_U2F_ATTESTATION_CA_DIR") or None,
        )


class ServiceSettings(BaseModel):
    """HTTPサービス設定"""
    database_url: str = Field(default="sqlite+aiosqlite:///./data/loginguard.db")
    redis_url: str = Field(default="redis://localhost:6379/0")
    session_backend: Literal["memory", "redis"] = Field(default="memory")
    session_ttl_seconds: int = Field(default=3600, ge=1)
    session_cookie_name: str = Field(default="loginguard_session")
    jwt_secret_key: str = Field(default="INSECURE_DEFAULT_KEY_CHANGE_IN_PRODUCTION")
    jwt_algorithm: str = Field(default="HS256")
    allowed_origins: List[str] = Field(default_factory=list, description="AppIDを導出してよいorigin（空の場合は制限なし）")
    registry_cache_size: int = Field(default=16, ge=1, description="AppIDごとのレジストリを保持する上限")

    @classmethod
    def from_env(cls) -> "ServiceSettings":
        """環境変数から設定を読み込み"""
        return cls(
            database_url=os.getenv("LOGINGUARD_DATABASE_URL", "sqlite+aiosqlite:///./data/loginguard.db"),
            redis_url=os.getenv("LOGINGUARD_REDIS_URL", "redis://localhost:6379/0"),
            session_backend=os.getenv("LOGINGUARD_SESSION_BACKEND", "memory").lower(),
            session_ttl_seconds=_env_int("LOGINGUARD_SESSION_TTL", 3600),
            session_cookie_name=os.getenv("LOGINGUARD_SESSION_COOKIE", "loginguard_session"),
            jwt_secret_key=os.getenv("LOGINGUARD_JWT_SECRET_KEY", "INSECURE_DEFAULT_KEY_CHANGE_IN_PRODUCTION"),
            jwt_algorithm=os.getenv("LOGINGUARD_JWT_ALGORITHM", "HS256"),
            allowed_origins=_env_list("LOGINGUARD_ALLOWED_ORIGINS"),
            registry_cache_size=_env_int("LOGINGUARD_REGISTRY_CACHE_SIZE", 16),
        )
