"""
Application settings for the AppOrbit API.

Values come from environment variables (or a local .env file) and are
validated once at startup.
"""

import base64
import json
from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Document store
    DATABASE_URL: str = Field("mongodb://localhost:27017", description="MongoDB connection string")
    DATABASE_NAME: str = Field("appOrbit", description="Database holding the five collections")

    # Identity provider: base64-encoded Firebase service-account JSON
    FIREBASE_SERVICE_KEY: str = Field("", description="Base64 service-account JSON")

    # Media host
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_API_KEY: str = ""
    CLOUDINARY_API_SECRET: str = ""

    PORT: int = Field(3000, ge=1, le=65535)
    CORS_ORIGINS: str = Field("http://localhost:5173", description="Comma-separated origins")
    LOG_LEVEL: str = "INFO"
    HTTP_TIMEOUT_SECONDS: float = Field(10.0, gt=0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        extra="ignore",
    )

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def firebase_service_account(self) -> Dict[str, Any]:
        """Decode FIREBASE_SERVICE_KEY; an unset key yields an empty dict."""
        if not self.FIREBASE_SERVICE_KEY:
            return {}
        return json.loads(base64.b64decode(self.FIREBASE_SERVICE_KEY).decode("utf-8"))

    @property
    def firebase_project_id(self) -> str:
        return self.firebase_service_account.get("project_id", "")


@lru_cache
def get_settings() -> Settings:
    return Settings()
