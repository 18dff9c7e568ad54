"""Configuration management for Apple Pay token decryption."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from APPLEPAY_* environment variables or a .env file."""

    # Merchant credentials (Apple Pay Payment Processing certificate)
    merchant_certificate_path: Path | None = Field(
        default=None, description="PEM-encoded merchant certificate file"
    )
    merchant_private_key_path: Path | None = Field(
        default=None, description="PEM-encoded merchant P-256 private key file"
    )

    # Decryption
    verify_signature: bool = Field(
        default=True, description="Verify the token signature before decrypting"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Render logs as JSON")

    model_config = SettingsConfigDict(
        env_prefix="APPLEPAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


def get_settings() -> Settings:
    """Load settings from the current environment."""
    return Settings()
