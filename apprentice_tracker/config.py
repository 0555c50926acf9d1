"""
Configuration for the apprentice tracker.

Environment variables (case-insensitive, also read from .env):
- DATABASE_URL: SQLAlchemy URL (default: sqlite:///./apprentice_tracker.db)
- UPLOAD_DIR: where uploaded documents are written (default: ./uploads)
- MAX_UPLOAD_BYTES: upload size ceiling (default: 10 MiB)
- MISTRAL_API_KEY: credentials for identity-document extraction
- MISTRAL_MODEL: vision model to use (default: mistral-small-latest)
- OCR_TIMEOUT: seconds before an extraction call is abandoned (default: 30)
- ADMIN_USER_ID: actor recorded for every mutation (default: 1)
- LOG_LEVEL: logging level name (default: INFO)
"""
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables"""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    database_url: str = "sqlite:///./apprentice_tracker.db"
    upload_dir: str = "./uploads"
    max_upload_bytes: int = 10 * 1024 * 1024

    # Identity-document extraction (Mistral vision)
    mistral_api_key: Optional[str] = None
    mistral_model: str = "mistral-small-latest"
    mistral_base_url: str = "https://api.mistral.ai/v1"
    ocr_timeout: float = 30.0

    # Implicit admin identity
    admin_user_id: int = 1

    # Logging
    log_level: str = "INFO"

    # Comma-separated list of allowed origins
    cors_allow_origins: str = "*"

    # Institution info shown on the settings page
    institution_name: str = "Centre de Formation d'Apprentis"
    institution_address: str = "123 Avenue de la Formation, 75001 Paris"
    contact_email: str = "contact@cfa-exemple.fr"

    service_version: str = "0.1.0"

    def validate_ocr_config(self) -> List[str]:
        """Validate extraction configuration, return list of warnings"""
        warnings = []

        if not self.mistral_api_key:
            warnings.append(
                "MISTRAL_API_KEY not set: identity-document extraction will fail"
            )

        if self.ocr_timeout <= 0:
            warnings.append("OCR_TIMEOUT must be positive, extraction calls may hang")

        return warnings

    def cors_origins(self) -> List[str]:
        origins = []
        for item in self.cors_allow_origins.split(","):
            origin = item.strip().strip('"').strip("'").rstrip("/")
            if origin:
                origins.append(origin)
        return origins


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
