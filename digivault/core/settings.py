from typing import Dict, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, case_sensitive=False)

    # App
    app_name: str = "Digivault Delivery API"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./digivault.db"
    sqlite_busy_timeout_seconds: int = 30

    # Security
    access_token_secret: str = "dev-access-secret-change-me"
    refresh_token_secret: str = "dev-refresh-secret-change-me"
    jwt_algorithm: str = "HS256"
    access_token_expires_minutes: int = 15
    refresh_token_expires_days: int = 7

    # Cookies
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/auth/refresh"
    refresh_cookie_secure: bool = False
    refresh_cookie_samesite: str = "lax"

    # Content storage (private, never served directly)
    storage_dir: str = "./storage/private"
    storage_base_path: str = "digital-products"
    storage_path_seed: str = "dev-path-seed-change-me"

    # Upload policy
    upload_max_bytes: int = 512 * 1024 * 1024
    upload_allowed_mime_types: List[str] = [
        "application/zip",
        "application/x-zip-compressed",
        "application/octet-stream",
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
        "text/csv",
        "image/jpeg",
        "image/png",
        "image/webp",
        "audio/mpeg",
        "audio/wav",
        "video/mp4",
        "video/webm",
        "application/json",
        "application/epub+zip",
    ]
    upload_allowed_extensions: List[str] = [
        "zip", "pdf", "doc", "docx", "xls", "xlsx", "txt", "csv", "jpg", "jpeg",
        "png", "webp", "mp3", "wav", "mp4", "webm", "json", "epub", "exe", "dmg", "bin",
    ]

    # Grants
    grant_default_download_limit: int = 5
    grant_default_window_days: int = 30

    # Streaming
    download_chunk_size: int = 64 * 1024
    download_read_timeout_seconds: float = 30.0
    public_base_url: str = "http://localhost:8000"

    # Licensing: {"multi_use": {"activation_limit": 5}} style overrides
    license_policy_overrides: Dict[str, Dict[str, Optional[int]]] = {}

    # Notifications
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Maintenance
    cleanup_interval_minutes: int = 0


settings = Settings()
