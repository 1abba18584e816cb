"""
Application Configuration

Centralized settings management using Pydantic Settings.
Supports environment variables and .env files.

The pipeline itself never reads settings: `Settings.pipeline_config()`
builds an immutable `PipelineConfig` that is handed to the Pipeline
constructor.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class PipelineConfig:
    """Explicit configuration for the resolve pipeline."""

    cache_root: Path
    upscaler_bin: str = "./lib/realesr/realesrgan-ncnn-vulkan"
    upscaler_model: str = "realesrgan-x4plus"
    upscale_factor: int = 4
    resize_bin: str = "convert"
    resize_force_exact: bool = True
    fetch_timeout_seconds: float = 30.0
    transform_timeout_seconds: float = 600.0
    max_source_bytes: Optional[int] = None
    max_dimension: int = 8192
    source_scheme: str = "https"


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # ==========================================================================
    # App Settings
    # ==========================================================================
    APP_NAME: str = "Upscale Proxy"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development, staging, PROD
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000

    # ==========================================================================
    # Source Validation
    # ==========================================================================
    # Comma separated, compared against the first segment of the source path
    ALLOWED_HOSTS: str = ""
    ALLOWED_EXTENSIONS: str = "jpg,jpeg,png"
    MAX_DIMENSION: int = 8192

    # ==========================================================================
    # Cache Settings
    # ==========================================================================
    CACHE_ROOT: Path = Path("./var")

    # ==========================================================================
    # Fetch Settings
    # ==========================================================================
    FETCH_TIMEOUT_SECONDS: float = 30.0
    MAX_SOURCE_BYTES: Optional[int] = 52428800  # 50MB

    # ==========================================================================
    # Transform Settings
    # ==========================================================================
    # RealESRGAN (ncnn-vulkan build)
    UPSCALER_BIN: str = "./lib/realesr/realesrgan-ncnn-vulkan"
    UPSCALER_MODEL: str = "realesrgan-x4plus"
    UPSCALE_FACTOR: int = 4

    # ImageMagick
    RESIZE_BIN: str = "convert"
    RESIZE_FORCE_EXACT: bool = True

    TRANSFORM_TIMEOUT_SECONDS: float = 600.0

    # Pillow based transform for development without GPU or external tools
    SIMULATE_TRANSFORM: bool = False

    # ==========================================================================
    # Logging Settings
    # ==========================================================================
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT_JSON: bool = True  # JSON for production, console for development

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @property
    def allowed_hosts(self) -> List[str]:
        return [h.strip() for h in self.ALLOWED_HOSTS.split(",") if h.strip()]

    @property
    def allowed_extensions(self) -> List[str]:
        return [e.strip().lower() for e in self.ALLOWED_EXTENSIONS.split(",") if e.strip()]

    def pipeline_config(self) -> PipelineConfig:
        """Build the pipeline configuration from the current settings."""
        return PipelineConfig(
            cache_root=Path(self.CACHE_ROOT),
            upscaler_bin=self.UPSCALER_BIN,
            upscaler_model=self.UPSCALER_MODEL,
            upscale_factor=self.UPSCALE_FACTOR,
            resize_bin=self.RESIZE_BIN,
            resize_force_exact=self.RESIZE_FORCE_EXACT,
            fetch_timeout_seconds=self.FETCH_TIMEOUT_SECONDS,
            transform_timeout_seconds=self.TRANSFORM_TIMEOUT_SECONDS,
            max_source_bytes=self.MAX_SOURCE_BYTES,
            max_dimension=self.MAX_DIMENSION,
        )


# Global settings instance
settings = Settings()
