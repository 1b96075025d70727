"""
Proxy configuration management using Pydantic Settings.
"""
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main proxy settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "Agentless Backup Proxy"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Security
    SECRET_KEY: str = "change-me-agentless-proxy-secret"

    # Session state
    SESSION_BASE_PATH: str = "/tmp/agentless"
    BACKGROUND_TASK_START_TIMEOUT: int = 10  # seconds
    SESSION_RELEASE_TIMEOUT: int = 10
    CLEANUP_LOCK_ATTEMPTS: int = 5
    CLEANUP_LOCK_DELAY: int = 5

    # Snapshots
    SNAPSHOT_RETRY_DELAY: int = 45
    ORPHANED_SNAPSHOT_MAX_AGE: int = 3600

    # Mount helper (VDDK fuse)
    MOUNT_HELPER_BINARY: str = "vddk-fuse"
    MOUNT_HELPER_PROCESS_PATTERN: str = "vddk-mount"
    UNMOUNT_TIMEOUT: int = 180
    VMWARE_TEMP_PATH: str = "/tmp/vmware-root"

    # Transfer helpers
    LOCAL_COPY_BINARY: str = "/usr/bin/mercuryftp"
    LOCAL_COPY_BUFFER_SIZE: int = 131072
    REMOTE_CLONE_BINARY: str = "/usr/bin/hyper-shuttle"
    REMOTE_CLONE_ENABLED: bool = True
    VDDK_LIB_PATH: str = "/usr/lib/x86_64-linux-gnu/vmware-vix-disklib"

    # Checkpoint token helper
    TOKEN_HELPER_BINARY: str = "dd"

    # Hypervisor connections
    CONNECTION_CACHE_TTL: int = 600
    HYPERVISOR_CLIENT_FACTORY: Optional[str] = None  # "module:callable"
    GUEST_INTROSPECTION_FACTORY: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = "/var/log/agentless"
    LOG_MAX_BYTES: int = 50 * 1024 * 1024
    LOG_BACKUP_COUNT: int = 5

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


# Global settings instance
settings = Settings()
