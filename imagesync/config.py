"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_PLACEHOLDER_TOKEN = "your-token"


class Settings(BaseSettings):
    """Image sync service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=3000, ge=1, le=65535)

    # WeChat Work application
    wechat_corp_id: str = ""
    wechat_agent_id: int = 0
    wechat_secret: str = ""
    wechat_token: str = _PLACEHOLDER_TOKEN
    wechat_encoding_aes_key: str = ""
    wechat_api_base: str = "https://qyapi.weixin.qq.com"
    callback_format: Literal["xml", "json"] = "xml"

    # GitHub repository holding the image list
    github_token: str = ""
    github_repo: str = ""
    github_branch: str = "main"
    github_images_path: str = "images.txt"
    github_api_base: str = "https://api.github.com"

    # Defaults for auto-constructed targets
    target_registry: str = "registry.cn-hangzhou.aliyuncs.com"
    target_namespace: str = "my-namespace"

    # Pending queue
    queue_file: Path = Path("./data/images.txt")
    lock_file: Path | None = None
    lock_retry_count: int = Field(default=50, ge=1)
    lock_retry_interval: float = Field(default=0.2, gt=0)

    # Completion tracking
    poll_start_delay: float = Field(default=5.0, ge=0)
    poll_interval: float = Field(default=10.0, gt=0)
    poll_timeout: float = Field(default=300.0, gt=0)
    poll_runs_per_page: int = Field(default=5, ge=1, le=100)

    @property
    def resolved_lock_file(self) -> Path:
        """Lock marker path, next to the queue file unless configured."""
        if self.lock_file is not None:
            return self.lock_file
        return self.queue_file.with_name(self.queue_file.name + ".lock")

    @property
    def has_wechat_config(self) -> bool:
        return bool(self.wechat_corp_id and self.wechat_secret)

    @property
    def has_github_config(self) -> bool:
        return bool(self.github_token and self.github_repo)

    def validate_runtime_security(self) -> None:
        """Validate settings that must be overridden in production."""
        if self.debug:
            return

        violations: list[str] = []
        if not self.wechat_token or self.wechat_token == _PLACEHOLDER_TOKEN:
            violations.append("WECHAT_TOKEN must be set to the callback token of the application")
        if self.wechat_encoding_aes_key and len(self.wechat_encoding_aes_key) != 43:
            violations.append("WECHAT_ENCODING_AES_KEY must be 43 characters long")
        if not self.has_wechat_config:
            violations.append("WECHAT_CORP_ID and WECHAT_SECRET must be configured")
        if not self.has_github_config:
            violations.append("GITHUB_TOKEN and GITHUB_REPO must be configured")
        elif "/" not in self.github_repo:
            violations.append("GITHUB_REPO must have the form owner/repo")

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Invalid production configuration: {joined}")
