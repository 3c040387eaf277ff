"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support."""
    
    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Atelier Studio Orchestrator"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    DEBUG: bool = True
    
    # ==========================================================================
    # Inference Backend
    # ==========================================================================
    INFERENCE_API_URL: str = "http://localhost:8100/v1"
    INFERENCE_API_KEY: Optional[str] = None
    INFERENCE_TIMEOUT_SECONDS: float = 60.0
    
    # Simulated backend for development without the inference service
    USE_SIMULATION: bool = False
    SIMULATION_LATENCY_SECONDS: float = 0.5
    
    # ==========================================================================
    # Upload Settings
    # ==========================================================================
    MAX_IMAGE_SIZE_BYTES: int = 10485760  # 10MB
    ALLOWED_IMAGE_FORMATS: str = "PNG,JPEG,WEBP,GIF,BMP"
    
    # ==========================================================================
    # Resilience Settings
    # ==========================================================================
    # Total attempts per remote call (2 = one retry)
    RETRY_MAX_ATTEMPTS: int = 2
    RETRY_BACKOFF_SECONDS: float = 0.0
    RETRY_BACKOFF_MAX_SECONDS: float = 10.0
    
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT_SECONDS: int = 60
    
    # ==========================================================================
    # Preview Registry
    # ==========================================================================
    # Simultaneous preview calls; 0 or less disables the admission limit
    PREVIEW_MAX_CONCURRENCY: int = 3
    
    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development
    
    # ==========================================================================
    # CORS Settings
    # ==========================================================================
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://localhost:8000"
    
    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def allowed_image_formats(self) -> set:
        return {fmt.strip().upper() for fmt in self.ALLOWED_IMAGE_FORMATS.split(",") if fmt.strip()}


# Global settings instance
settings = Settings()
