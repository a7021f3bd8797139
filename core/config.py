"""
Configuration management for the video generation orchestrator.

Centralizes all configuration including:
- VOD AIGC credentials and endpoint
- Supabase (auth + storage) endpoints
- Database connection
- Media relocation limits
- Orchestrator timing
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


DEFAULT_MODELS_PATH = str(Path(__file__).with_name("models.json"))


@dataclass
class VodConfig:
    """Tencent Cloud VOD AIGC API configuration."""

    secret_id: str = field(default_factory=lambda: os.getenv("VOD_SECRET_ID", ""))
    secret_key: str = field(default_factory=lambda: os.getenv("VOD_SECRET_KEY", ""))
    sub_app_id: int = field(default_factory=lambda: int(os.getenv("VOD_SUB_APP_ID", "0") or 0))
    region: str = field(default_factory=lambda: os.getenv("VOD_REGION", "ap-guangzhou"))
    endpoint_host: str = "vod.tencentcloudapi.com"
    api_version: str = "2018-07-17"

    # Override to route through a proxy; defaults to https://{endpoint_host}
    request_url: str = field(default_factory=lambda: os.getenv("VOD_REQUEST_URL", ""))
    request_timeout: float = 30.0

    def get_request_url(self) -> str:
        return self.request_url or f"https://{self.endpoint_host}"


@dataclass
class SupabaseConfig:
    """Supabase project configuration (auth + storage)."""
    url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", ""))
    anon_key: str = field(default_factory=lambda: os.getenv("SUPABASE_ANON_KEY", ""))
    access_token: str = field(default_factory=lambda: os.getenv("SUPABASE_ACCESS_TOKEN", ""))


@dataclass
class DatabaseConfig:
    """Database configuration."""
    url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = 1
    pool_max_size: int = 5
    video_tasks_table: str = field(
        default_factory=lambda: os.getenv("VIDEO_TASKS_TABLE", "video_tasks")
    )


@dataclass
class StorageConfig:
    """Permanent storage for relocated media."""
    bucket: str = field(default_factory=lambda: os.getenv("SUPABASE_STORAGE_BUCKET", "designchat"))
    max_file_size: int = 500 * 1024 * 1024  # 500MB for videos
    allowed_mime_types: list[str] = field(default_factory=lambda: [
        # Images
        "image/jpeg", "image/png", "image/webp", "image/gif",
        # Videos
        "video/mp4", "video/webm", "video/quicktime", "video/x-msvideo",
    ])

    # Download behaviour
    download_timeout: float = 300.0
    download_attempts: int = 3
    download_retry_min_wait: float = 1.0
    download_retry_max_wait: float = 10.0

    # Fallback fetchers for image hosts that refuse direct downloads.
    # "{url}" is replaced with the percent-encoded source URL, "{raw_url}" with the raw one.
    proxy_services: list[str] = field(default_factory=lambda: [
        "https://corsproxy.io/?url={url}",
        "https://api.allorigins.win/raw?url={url}",
        "https://thingproxy.freeboard.io/fetch/{raw_url}",
    ])


@dataclass
class OrchestratorConfig:
    """Timing knobs for admission control and streaming."""
    admission_poll_interval_ms: int = 100
    default_count: int = 1


@dataclass
class Config:
    """Main configuration class."""

    vod: VodConfig = field(default_factory=VodConfig)
    supabase: SupabaseConfig = field(default_factory=SupabaseConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)

    models_path: str = field(
        default_factory=lambda: os.getenv("VIDEO_MODELS_PATH", DEFAULT_MODELS_PATH)
    )

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.vod.secret_id or not self.vod.secret_key:
            issues.append("VOD_SECRET_ID / VOD_SECRET_KEY not configured")

        if not self.vod.sub_app_id:
            issues.append("VOD_SUB_APP_ID not configured")

        if not self.database.url:
            issues.append("DATABASE_URL not configured")

        if not self.supabase.url or not self.supabase.anon_key:
            issues.append("SUPABASE_URL / SUPABASE_ANON_KEY not configured (needed for auth and storage)")

        if not Path(self.models_path).is_file():
            issues.append(f"Model catalog not found: {self.models_path}")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
