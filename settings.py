from pathlib import Path
from typing import List, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings - reads from environment variables"""

    # Storage
    storage_backend: Literal["mongodb", "json"] = "mongodb"
    database_url: str = Field(
        "mongodb://localhost:27017",
        validation_alias=AliasChoices("DATABASE_URL", "MONGODB_URI", "database_url"),
    )
    database_name: str = "vmnc"
    data_file: str = "db.json"

    # Admin
    admin_password: str = ""
    session_ttl_hours: float = 24

    # Notifications
    discord_webhook_url: str = ""
    webhook_timeout: float = 10

    # Server
    cors_origins: str = "*"
    port: int = 10000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
