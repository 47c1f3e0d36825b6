"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_SECRET = "change-me-in-production"

DEFAULT_ALLOWED_EXTENSIONS = [
    # Images
    "jpg", "jpeg", "png", "gif", "webp", "svg", "ico", "bmp",
    # Documents
    "pdf", "doc", "docx", "txt", "rtf", "odt",
    # Web files
    "css", "js", "html", "htm", "xml", "json",
    # Translations and templates
    "php", "po", "pot", "mo",
    # Archives
    "zip", "tar", "gz",
    # Media
    "mp4", "mp3", "wav", "avi", "mov",
]  # fmt: skip

DEFAULT_BLOCKED_EXTENSIONS = ["exe", "bat", "cmd", "com", "pif", "scr", "vbs", "js"]


class Settings(BaseSettings):
    """SiteSync application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/sitesync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = Field(default=8000, ge=1, le=65535)
    site_url: str = "http://localhost:8000"

    # Auth: shared secret for peer endpoints, bearer token for the control API
    sync_secret: str = _DEFAULT_SECRET
    admin_token: str = _DEFAULT_SECRET

    # Transport
    sync_verify_tls: bool = False
    request_timeout: float = Field(default=60.0, gt=0)
    rows_timeout: float = Field(default=90.0, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=2.0, ge=0)

    # Table replication
    table_prefix: str = ""
    chunk_size: int = Field(default=50, ge=1, le=1000)
    max_rows_per_request: int = Field(default=1000, ge=1)
    max_execution_time: int = Field(default=1800, ge=1)
    safety_margin: int = Field(default=60, ge=0)
    include_options: bool = False
    options_table: str = "options"
    options_name_column: str = "option_name"
    options_value_column: str = "option_value"
    exclude_tables: list[str] = Field(
        default_factory=lambda: [
            "actionscheduler_actions",
            "actionscheduler_claims",
            "actionscheduler_failures",
            "actionscheduler_groups",
            "actionscheduler_logs",
            "wc_admin_notes",
            "wc_admin_note_actions",
        ]
    )
    table_fallback_enabled: bool = True
    fallback_tables: list[str] = Field(
        default_factory=lambda: [
            "posts",
            "postmeta",
            "users",
            "usermeta",
            "terms",
            "term_taxonomy",
            "term_relationships",
            "comments",
            "commentmeta",
        ]
    )

    # Options sync
    protected_options: list[str] = Field(
        default_factory=lambda: [
            "siteurl",
            "home",
            "db_version",
            "upload_path",
            "upload_url_path",
            "secret_key",
            "auth_key",
            "secure_auth_key",
            "logged_in_key",
            "nonce_key",
            "auth_salt",
            "secure_auth_salt",
            "logged_in_salt",
            "nonce_salt",
            "active_plugins",
            "template",
            "stylesheet",
            "cron",
        ]
    )
    url_options: list[str] = Field(default_factory=lambda: ["siteurl", "home"])
    url_rewrite_columns: dict[str, list[str]] = Field(
        default_factory=lambda: {"options": ["option_value"]}
    )

    # File replication
    sync_directories: dict[str, Path] = Field(
        default_factory=lambda: {"uploads": Path("./content/uploads")}
    )
    max_scan_files: int = Field(default=10000, ge=1)
    max_file_size: int = Field(default=50 * 1024 * 1024, ge=1)
    download_attempts: int = Field(default=3, ge=1)
    download_retry_delay: float = Field(default=1.0, ge=0)
    delete_removed_files: bool = False
    allowed_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_EXTENSIONS)
    )
    blocked_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_BLOCKED_EXTENSIONS)
    )

    # Progress and problem-file bookkeeping
    progress_retention_seconds: int = Field(default=3600, ge=1)
    problem_file_max_attempts: int = Field(default=5, ge=1)
    problem_file_cooldown_seconds: int = Field(default=3600, ge=0)
    problem_file_retention_days: int = Field(default=7, ge=1)

    def prefixed(self, table: str) -> str:
        """Return a table name with the configured prefix applied."""
        return f"{self.table_prefix}{table}"

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        violations: list[str] = []
        if self.sync_secret == _DEFAULT_SECRET or len(self.sync_secret) < 32:
            violations.append(
                "SYNC_SECRET must be overridden with a high-entropy value (>=32 chars)"
            )
        if self.admin_token == _DEFAULT_SECRET or len(self.admin_token) < 32:
            violations.append(
                "ADMIN_TOKEN must be overridden with a high-entropy value (>=32 chars)"
            )

        if violations:
            joined = "; ".join(violations)
            raise ValueError(f"Insecure production configuration: {joined}")
