"""
Configuration settings for the KYC onboarding service.
Uses pydantic-settings for environment variable management.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional
from pathlib import Path


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application Mode
    DEBUG: bool = Field(True, description="Enable debug mode")
    DEMO_MODE: bool = Field(True, description="Use simulated collaborator services")
    LOG_LEVEL: str = Field("INFO", description="Root log level")

    # Server Configuration
    HOST: str = Field("0.0.0.0", description="Server host")
    PORT: int = Field(8000, description="Server port")

    # OTP Configuration
    OTP_LENGTH: int = Field(6, description="Number of digits in a generated OTP")
    OTP_TTL_MINUTES: int = Field(5, description="Lifetime of mobile/conversion OTPs")
    EKYC_OTP_TTL_MINUTES: int = Field(10, description="Lifetime of Aadhaar e-KYC OTPs")
    OTP_MAX_ATTEMPTS: int = Field(3, description="Verification attempts per challenge")
    OTP_RESEND_COOLDOWN_SECONDS: int = Field(60, description="Minimum gap between sends to one target")
    EXPOSE_DEBUG_OTP: bool = Field(
        True,
        description="Return the plaintext OTP in send responses (demo only, never in production)"
    )

    # Verification scoring
    ACCEPT_SCORE_THRESHOLD: int = Field(90, description="Score at or above which a check is accepted")
    REVIEW_SCORE_THRESHOLD: int = Field(70, description="Score at or above which a check needs review")
    FACE_MATCH_MIN_CONFIDENCE: int = Field(70, description="Minimum face match confidence")
    LIVE_PHOTO_MIN_CLARITY: int = Field(85, description="Minimum live photo clarity score")

    # Simulated collaborators
    SIMULATE_LATENCY: bool = Field(False, description="Sleep to mimic network latency")
    LATENCY_SCALE: float = Field(1.0, description="Multiplier applied to simulated delays")
    OUTCOME_SEED: Optional[int] = Field(None, description="Seed for randomized check outcomes")

    # File Upload Configuration
    MAX_FILE_SIZE_MB: int = Field(10, description="Maximum file upload size in MB")
    ALLOWED_DOCUMENT_EXTENSIONS: list = Field(
        default=[".pdf", ".jpg", ".jpeg", ".png"],
        description="Accepted document types"
    )

    # Session Configuration
    SESSION_TIMEOUT_MINUTES: int = Field(30, description="Idle wizard sessions older than this are pruned")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


def get_project_root() -> Path:
    """Get the project root directory."""
    return Path(__file__).parent.parent


def validate_settings() -> tuple[bool, list[str]]:
    """
    Validate that policy settings are coherent.
    Returns (is_valid, list of problems).
    """
    issues = []

    try:
        s = settings

        if s.REVIEW_SCORE_THRESHOLD > s.ACCEPT_SCORE_THRESHOLD:
            issues.append("REVIEW_SCORE_THRESHOLD must not exceed ACCEPT_SCORE_THRESHOLD")

        if s.OTP_MAX_ATTEMPTS < 1:
            issues.append("OTP_MAX_ATTEMPTS must be at least 1")

        if s.OTP_LENGTH < 4:
            issues.append("OTP_LENGTH must be at least 4")

        if not s.DEMO_MODE and s.EXPOSE_DEBUG_OTP:
            issues.append("EXPOSE_DEBUG_OTP must be disabled outside demo mode")

    except Exception as e:
        issues.append(f"Configuration error: {str(e)}")

    return len(issues) == 0, issues


# Load .env from project root
env_path = get_project_root() / ".env"
if env_path.exists():
    from dotenv import load_dotenv
    load_dotenv(env_path)

# Global settings instance
settings = Settings()
