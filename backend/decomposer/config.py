"""Application configuration from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    anthropic_api_key: str = ""
    google_api_key: str = ""
    decomposer_env: str = "development"
    decomposer_log_level: str = "debug"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000"]

    # Model routing (planning, critique, detection, text reading)
    model_cheap: str = "claude-haiku-4-5-20251001"
    model_mid: str = "claude-sonnet-4-5-20250929"
    model_frontier: str = "claude-sonnet-4-5-20250929"

    # Image generation (cleaner stage)
    model_image_fast: str = "gemini-2.5-flash-image"
    model_image_pro: str = "gemini-3-pro-image-preview"
    pro_image_entitled: bool = False

    # Extraction loop policy
    parallel_count: int = 3
    max_attempts: int = 4
    max_stage_retries: int = 2
    qa_pass_threshold: int = 85

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
