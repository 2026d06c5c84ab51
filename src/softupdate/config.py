"""
softupdate Configuration Management
"""
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Updater settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="SOFTUPDATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Installation Layout
    install_root: str = Field(default=".", description="Directory holding bin/, lib/ and MANIFEST.MF")
    backup_root: str = Field(
        default="/var/lib/softupdate/backup", description="Directory holding the rollback snapshot"
    )

    # Distribution Server
    upgrade_server_url: str = Field(
        default="https://localhost", description="Substituted for {upgrade_server} in URL settings"
    )
    metadata_url: str = Field(
        default="{upgrade_server}/client/maven-metadata.xml",
        description="Remote metadata document with version and lastUpdated",
    )
    client_base_url: str = Field(
        default="{upgrade_server}/client/",
        description="Base URL; the release version and artifact path are appended",
    )
    http_timeout_seconds: float = Field(default=30.0, description="Timeout for metadata and manifest requests")
    download_timeout_seconds: float = Field(default=300.0, description="Timeout for artifact downloads")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///softupdate.db",
        description="SQLAlchemy URL of the local application database",
    )
    migration_resources_root: Optional[str] = Field(
        default=None, description="Directory containing the sql/ migration folder; defaults to the package"
    )

    # Diagnostics
    component_names: List[str] = Field(
        default=["registration-client", "registration-services"],
        description="Manifest entries containing one of these names are reported by checksum queries",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    json_logs: bool = Field(default=False, description="Emit JSON formatted logs")
    log_file: Optional[str] = Field(default=None, description="JSON log file for update runs")

    def resolve_url(self, template: str) -> str:
        """Substitute the upgrade server into a URL setting"""
        return template.replace("{upgrade_server}", self.upgrade_server_url.rstrip("/"))


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
